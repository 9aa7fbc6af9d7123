"""
Service provider — systemd unit enablement.
"""

from __future__ import annotations

import logging

from converge.core.models.outcome import ApplyResult, QueryState
from converge.core.models.resource import ResourceKind
from converge.providers.base import Provider, ProviderContext, require_keys
from converge.providers.shell.command import (
    failure_result,
    run_command,
    success_result,
    tool_available,
)

logger = logging.getLogger(__name__)

_ENABLED_STATES = {"enabled", "enabled-runtime"}
_DISABLED_STATES = {"disabled", "masked", "masked-runtime", "linked", "linked-runtime"}
# Enablement fixed by the unit itself; systemctl enable/disable is a no-op.
_FIXED_STATES = {"static", "indirect", "generated", "alias", "transient"}


class ServiceProvider(Provider):
    """Enable or disable systemd units.

    Resource spec:
        unit (str): Unit name, e.g. ``NetworkManager-wait-online.service``.
        enabled (bool): Desired state (default: True).
        user (bool): Operate on the user manager (default: system, with sudo).

    Units whose state is static, indirect, generated, alias or transient
    cannot be switched either way and count as satisfied.
    """

    @property
    def kind(self) -> ResourceKind:
        return ResourceKind.SERVICE

    def is_available(self) -> bool:
        return tool_available("systemctl")

    def validate(self, context: ProviderContext) -> tuple[bool, str]:
        return require_keys(context, "unit")

    def _base(self, context: ProviderContext) -> list[str]:
        return ["systemctl", "--user"] if context.spec.get("user") else ["systemctl"]

    def query(self, context: ProviderContext) -> QueryState:
        result = run_command(
            [*self._base(context), "is-enabled", context.spec["unit"]],
            timeout=min(context.timeout, 30),
        )
        if result.missing or result.timed_out:
            return QueryState.UNKNOWN
        state = result.stdout.strip().splitlines()[0] if result.stdout.strip() else ""
        want_enabled = context.spec.get("enabled", True)
        if state in _FIXED_STATES:
            logger.debug("%s: unit is %s, nothing to enable or disable", context.resource_id, state)
            return QueryState.SATISFIED
        if state in _ENABLED_STATES:
            return QueryState.SATISFIED if want_enabled else QueryState.UNSATISFIED
        if state in _DISABLED_STATES:
            return QueryState.UNSATISFIED if want_enabled else QueryState.SATISFIED
        return QueryState.UNKNOWN

    def apply(self, context: ProviderContext) -> ApplyResult:
        verb = "enable" if context.spec.get("enabled", True) else "disable"
        unit = context.spec["unit"]
        user = bool(context.spec.get("user"))
        result = run_command(
            [*self._base(context), verb, unit],
            sudo=context.use_sudo(default=not user),
            timeout=context.timeout,
        )
        action = f"systemctl {verb} {unit}"
        if not result.ok:
            return failure_result(result, action)
        return success_result(result, f"{action} ok")
