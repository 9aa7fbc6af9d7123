"""
Provider base — the contract between engine and the machine.

This defines the abstract interface every provider implements. The
engine only talks to providers through this protocol (via the
registry), never directly to dnf, flatpak, gsettings or the network.

Every provider answers two questions about a resource:
    query  — is the machine already in the desired state? (no side effects)
    apply  — make it so. Safe to call when already satisfied.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from pydantic import BaseModel, ConfigDict

from converge.core.models.outcome import ApplyResult, QueryState
from converge.core.models.resource import Resource, ResourceKind

DEFAULT_TIMEOUT = 600


class ProviderContext(BaseModel):
    """Everything a provider needs to act on one resource."""

    model_config = ConfigDict(frozen=True)

    resource: Resource
    timeout: int = DEFAULT_TIMEOUT
    dry_run: bool = False
    scratch_dir: str | None = None

    @property
    def spec(self) -> dict:
        return self.resource.spec

    @property
    def resource_id(self) -> str:
        return self.resource.id

    def use_sudo(self, default: bool = False) -> bool:
        """Whether commands for this resource run through sudo."""
        if self.resource.sudo is None:
            return default
        return self.resource.sudo


class Provider(ABC):
    """Abstract base class for all providers.

    Providers inspect and mutate external state. They NEVER raise:
    ``query`` falls back to UNKNOWN and ``apply`` captures failures in
    the ApplyResult.

    To create a new provider:
        1. Subclass Provider
        2. Implement kind, is_available, validate, query, apply
        3. Register it in the ProviderRegistry
    """

    @property
    @abstractmethod
    def kind(self) -> ResourceKind:
        """The resource kind this provider handles."""

    @abstractmethod
    def is_available(self) -> bool:
        """Check if the underlying tool exists. Fast, never raises."""

    @abstractmethod
    def validate(self, context: ProviderContext) -> tuple[bool, str]:
        """Check the resource spec.

        Returns:
            (is_valid, error_message). error_message is empty if valid.
        """

    @abstractmethod
    def query(self, context: ProviderContext) -> QueryState:
        """Inspect the machine without changing it."""

    @abstractmethod
    def apply(self, context: ProviderContext) -> ApplyResult:
        """Converge the machine to the desired state.

        MUST never raise. Re-running on a satisfied machine is a no-op
        or a harmless repeat, never destructive.
        """

    def describe(self, context: ProviderContext) -> str:
        """Short human description of what apply would do."""
        return f"{self.kind} {context.resource_id}"

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} kind={self.kind!r}>"


def require_keys(context: ProviderContext, *keys: str) -> tuple[bool, str]:
    """Validate that the resource spec carries non-empty ``keys``."""
    for key in keys:
        value = context.spec.get(key)
        if value is None or value == "":
            return False, f"Missing required spec key: '{key}'"
    return True, ""
