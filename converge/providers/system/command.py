"""
Command provider — a guarded shell command.

The escape hatch for steps with no dedicated provider (hostnamectl,
``flatpak override``, ``spicetify apply``). A guard is mandatory so the
resource stays idempotent: ``creates`` (path that exists once done)
and/or ``check`` (shell snippet exiting 0 once done).
"""

from __future__ import annotations

import logging
from pathlib import Path

from converge.core.models.outcome import ApplyResult, QueryState
from converge.core.models.resource import ResourceKind
from converge.providers.base import Provider, ProviderContext, require_keys
from converge.providers.shell.command import (
    failure_result,
    run_command,
    shell_command,
    success_result,
)

logger = logging.getLogger(__name__)


def paths_exist(creates: str | list[str]) -> bool:
    """True if any of the ``creates`` paths exists."""
    candidates = [creates] if isinstance(creates, str) else list(creates)
    return any(Path(p).expanduser().exists() for p in candidates)


class CommandProvider(Provider):
    """Run a shell snippet unless its guard says it's done.

    Resource spec:
        run (str): Shell snippet to execute.
        check (str): Shell snippet; exit 0 means satisfied.
        creates (str | list[str]): Satisfied if any path exists.
        env (dict): Extra environment variables.
        cwd (str): Working directory.
    """

    @property
    def kind(self) -> ResourceKind:
        return ResourceKind.COMMAND

    def is_available(self) -> bool:
        return True

    def validate(self, context: ProviderContext) -> tuple[bool, str]:
        ok, msg = require_keys(context, "run")
        if not ok:
            return ok, msg
        if not context.spec.get("check") and not context.spec.get("creates"):
            return False, "A command needs a 'check' or 'creates' guard"
        return True, ""

    def query(self, context: ProviderContext) -> QueryState:
        spec = context.spec
        if spec.get("creates") and paths_exist(spec["creates"]):
            return QueryState.SATISFIED
        if spec.get("check"):
            result = run_command(
                shell_command(spec["check"]),
                sudo=context.use_sudo(default=False),
                timeout=min(context.timeout, 60),
                env=spec.get("env"),
            )
            if result.missing or result.timed_out:
                return QueryState.UNKNOWN
            return QueryState.SATISFIED if result.ok else QueryState.UNSATISFIED
        return QueryState.UNSATISFIED

    def apply(self, context: ProviderContext) -> ApplyResult:
        spec = context.spec
        cwd = str(Path(spec["cwd"]).expanduser()) if spec.get("cwd") else None
        logger.info("%s: running %s", context.resource_id, spec["run"])
        result = run_command(
            shell_command(spec["run"]),
            sudo=context.use_sudo(default=False),
            timeout=context.timeout,
            env=spec.get("env"),
            cwd=cwd,
        )
        if not result.ok:
            return failure_result(result, "command")
        return success_result(result, result.stdout.strip().splitlines()[-1] if result.stdout.strip() else "command ok")
