"""
Provider registry — central dispatch for all provider operations.

The registry is the single point of provider management: registration,
lookup, mock mode, fallback chains, and the guarantee that provider
exceptions never reach the engine. The engine never talks to providers
directly — always through the registry.
"""

from __future__ import annotations

import logging
from typing import Any

from converge.core.models.outcome import (
    ApplyResult,
    Attempt,
    ErrorKind,
    OutcomeStatus,
    QueryState,
)
from converge.core.models.resource import Resource, ResourceKind
from converge.providers.base import Provider, ProviderContext
from converge.providers.mock import MockProvider

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Central registry and dispatcher for providers.

    Features:
        - Register/unregister providers by resource kind
        - Mock mode: every kind served by a MockProvider
        - Query/apply with ordered fallbacks, each try recorded
        - Provider availability status
    """

    def __init__(self, mock_mode: bool = False):
        self._providers: dict[ResourceKind, Provider] = {}
        self._mock_mode = mock_mode
        self._mocks: dict[ResourceKind, MockProvider] = {}

    @property
    def mock_mode(self) -> bool:
        return self._mock_mode

    def set_mock_mode(self, enabled: bool) -> None:
        self._mock_mode = enabled

    def register(self, provider: Provider) -> None:
        """Register a provider for its kind."""
        kind = provider.kind
        if kind in self._providers:
            logger.warning("Overwriting existing provider: %s", kind)
        self._providers[kind] = provider
        logger.debug("Registered provider: %s", kind)

    def unregister(self, kind: ResourceKind) -> None:
        self._providers.pop(kind, None)

    def get(self, kind: ResourceKind) -> Provider | None:
        """Look up the provider serving ``kind`` (mock in mock mode)."""
        if self._mock_mode:
            if kind not in self._mocks:
                self._mocks[kind] = MockProvider(kind=kind)
            return self._mocks[kind]
        return self._providers.get(kind)

    def list_providers(self) -> list[str]:
        return [k.value for k in self._providers]

    def provider_status(self) -> dict[str, dict[str, Any]]:
        """Availability of every registered provider."""
        status = {}
        for kind, provider in self._providers.items():
            try:
                available = provider.is_available()
            except Exception:
                available = False
            status[kind.value] = {
                "kind": kind.value,
                "available": available,
                "type": provider.__class__.__name__,
            }
        return status

    # ── Validation ──────────────────────────────────────────────

    def validate(self, resource: Resource) -> list[str]:
        """Validate a resource and its fallbacks. Returns error strings."""
        errors: list[str] = []
        candidates = [resource] + [resource.with_spec(f.kind, f.spec) for f in resource.fallbacks]
        for candidate in candidates:
            provider = self.get(candidate.kind)
            if provider is None:
                errors.append(f"{resource.id}: no provider registered for '{candidate.kind}'")
                continue
            try:
                ok, message = provider.validate(ProviderContext(resource=candidate))
            except Exception as e:
                ok, message = False, f"validation error: {e}"
            if not ok:
                errors.append(f"{resource.id} ({candidate.kind}): {message}")
        return errors

    # ── Query ───────────────────────────────────────────────────

    def query(self, context: ProviderContext) -> QueryState:
        """Query the primary provider, then fallbacks.

        Satisfied through any of them counts as satisfied, so a resource
        converged by a fallback stays converged on the next run.
        """
        primary = self._query_one(context)
        if primary == QueryState.SATISFIED:
            return primary

        for fb_context in self._fallback_contexts(context):
            if self._query_one(fb_context) == QueryState.SATISFIED:
                logger.debug("%s satisfied via fallback %s", context.resource_id, fb_context.resource.kind)
                return QueryState.SATISFIED

        return primary

    def _query_one(self, context: ProviderContext) -> QueryState:
        provider = self.get(context.resource.kind)
        if provider is None:
            return QueryState.UNKNOWN
        try:
            return provider.query(context)
        except Exception as e:
            # Providers should never raise, but defense in depth
            logger.error("Provider %s raised during query of %s: %s", context.resource.kind, context.resource_id, e)
            return QueryState.UNKNOWN

    # ── Apply ───────────────────────────────────────────────────

    def apply(self, context: ProviderContext) -> ApplyResult:
        """Apply through the primary provider, then each fallback in order.

        Returns an ApplyResult (never raises). When the resource has
        fallbacks, every provider tried is listed in ``attempts``.
        """
        fallbacks = self._fallback_contexts(context)
        result = self._apply_one(context)
        if result.ok or not fallbacks:
            if fallbacks:
                result.attempts = [_attempt(context, result)]
            return result

        attempts = [_attempt(context, result)]
        for fb_context in fallbacks:
            kind = fb_context.resource.kind
            logger.info("%s: %s failed, trying fallback %s", context.resource_id, attempts[-1].provider, kind)

            if self._query_one(fb_context) == QueryState.SATISFIED:
                attempts.append(
                    Attempt(provider=kind.value, status=OutcomeStatus.ALREADY_SATISFIED)
                )
                return ApplyResult.success(
                    f"already satisfied via fallback {kind}", provider=kind.value, attempts=attempts
                )

            result = self._apply_one(fb_context)
            attempts.append(_attempt(fb_context, result))
            if result.ok:
                return ApplyResult.success(
                    result.detail or f"applied via fallback {kind}",
                    provider=kind.value,
                    attempts=attempts,
                    metadata=result.metadata,
                )

        detail = "; ".join(f"{a.provider}: {a.detail}" for a in attempts)
        return ApplyResult.failure(
            attempts[-1].error_kind or ErrorKind.EXTERNAL_TOOL_FAILED,
            f"all providers failed ({detail})",
            attempts=attempts,
        )

    def _apply_one(self, context: ProviderContext) -> ApplyResult:
        kind = context.resource.kind
        provider = self.get(kind)
        if provider is None:
            return ApplyResult.failure(
                ErrorKind.EXTERNAL_TOOL_FAILED,
                f"No provider registered for '{kind}'",
                provider=kind.value,
            )

        try:
            is_valid, error_msg = provider.validate(context)
        except Exception as e:
            is_valid, error_msg = False, str(e)
        if not is_valid:
            return ApplyResult.failure(
                ErrorKind.EXTERNAL_TOOL_FAILED,
                f"Validation failed: {error_msg}",
                provider=kind.value,
            )

        try:
            result = provider.apply(context)
        except Exception as e:
            # Providers should never raise, but defense in depth
            logger.error("Provider %s raised during apply of %s: %s", kind, context.resource_id, e)
            result = ApplyResult.failure(ErrorKind.EXTERNAL_TOOL_FAILED, f"Unexpected error: {e}")

        if not result.provider:
            result.provider = kind.value
        return result

    def _fallback_contexts(self, context: ProviderContext) -> list[ProviderContext]:
        resource = context.resource
        return [
            context.model_copy(update={"resource": resource.with_spec(f.kind, f.spec)})
            for f in resource.fallbacks
        ]


def _attempt(context: ProviderContext, result: ApplyResult) -> Attempt:
    return Attempt(
        provider=context.resource.kind.value,
        status=OutcomeStatus.APPLIED if result.ok else OutcomeStatus.FAILED,
        error_kind=result.error_kind,
        detail=result.detail,
    )
