"""
Package provider — RPM packages and groups through dnf.

Queries use ``rpm -q`` (fast, no repo metadata); applies use dnf.
Swaps (``replaces``) cover the "ffmpeg-free → ffmpeg" style of
change: the resource is satisfied only when the new package is
installed AND the replaced one is gone. ``state: absent`` inverts the
query and removes the package with ``dnf remove``.
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


class PackageProvider(Provider):
    """Install RPM packages and package groups.

    Resource spec:
        name (str): Package (or group id when ``group``).
        source (str): Install from this URL/path instead of ``name``
            (e.g. an rpmfusion release RPM). ``name`` is still queried.
        group (bool): Treat ``name`` as a dnf group (default: False).
        replaces (str): Package swapped out in favour of ``name``.
        state (str): ``present`` (default) or ``absent``.
        allow_erasing (bool): Pass ``--allowerasing`` (default: True for swaps).

    ``sudo`` defaults to True.
    """

    def __init__(self, dnf: str = "dnf"):
        self._dnf = dnf

    @property
    def kind(self) -> ResourceKind:
        return ResourceKind.PACKAGE

    def is_available(self) -> bool:
        return tool_available(self._dnf) and tool_available("rpm")

    def validate(self, context: ProviderContext) -> tuple[bool, str]:
        ok, msg = require_keys(context, "name")
        if not ok:
            return ok, msg
        spec = context.spec
        if spec.get("group") and spec.get("replaces"):
            return False, "'replaces' cannot be combined with 'group'"
        state = spec.get("state", "present")
        if state not in ("present", "absent"):
            return False, f"Invalid state: {state!r} (expected present or absent)"
        if state == "absent" and (spec.get("group") or spec.get("replaces") or spec.get("source")):
            return False, "'state: absent' cannot be combined with group, replaces or source"
        return True, ""

    # ── Query ───────────────────────────────────────────────────

    def query(self, context: ProviderContext) -> QueryState:
        spec = context.spec
        if spec.get("group"):
            return self._query_group(context)

        installed = self._rpm_installed(spec["name"], context.timeout)
        if installed is None:
            return QueryState.UNKNOWN
        if spec.get("state") == "absent":
            return QueryState.UNSATISFIED if installed else QueryState.SATISFIED
        if not installed:
            return QueryState.UNSATISFIED

        replaces = spec.get("replaces")
        if replaces:
            old_present = self._rpm_installed(replaces, context.timeout)
            if old_present is None:
                return QueryState.UNKNOWN
            if old_present:
                return QueryState.UNSATISFIED
        return QueryState.SATISFIED

    def _rpm_installed(self, name: str, timeout: int) -> bool | None:
        """True/False when rpm answers, None when it can't be asked."""
        result = run_command(["rpm", "-q", "--quiet", name], timeout=min(timeout, 60))
        if result.missing or result.timed_out:
            return None
        return result.ok

    def _query_group(self, context: ProviderContext) -> QueryState:
        result = run_command(
            [self._dnf, "group", "list", "--installed", "--hidden"],
            timeout=min(context.timeout, 120),
        )
        if not result.ok:
            return QueryState.UNKNOWN
        name = context.spec["name"].lower()
        for line in result.stdout.lower().splitlines():
            if name in line.split() or line.strip() == name:
                return QueryState.SATISFIED
        return QueryState.UNSATISFIED

    # ── Apply ───────────────────────────────────────────────────

    def apply(self, context: ProviderContext) -> ApplyResult:
        spec = context.spec
        name = spec["name"]
        sudo = context.use_sudo(default=True)

        if spec.get("state") == "absent":
            cmd = [self._dnf, "remove", "-y", name]
            action = f"dnf remove {name}"
        elif spec.get("group"):
            cmd = [self._dnf, "group", "install", "-y", name]
            action = f"dnf group install {name}"
        elif spec.get("replaces") and self._rpm_installed(spec["replaces"], context.timeout):
            cmd = [self._dnf, "swap", "-y", spec["replaces"], name]
            if spec.get("allow_erasing", True):
                cmd.append("--allowerasing")
            action = f"dnf swap {spec['replaces']} → {name}"
        else:
            target = spec.get("source") or name
            cmd = [self._dnf, "install", "-y", target]
            if spec.get("allow_erasing"):
                cmd.append("--allowerasing")
            action = f"dnf install {name}"

        logger.info("%s: %s", context.resource_id, action)
        result = run_command(cmd, sudo=sudo, timeout=context.timeout)
        if not result.ok:
            return failure_result(result, action)
        return success_result(result, f"{action} ok")

    def describe(self, context: ProviderContext) -> str:
        verb = "remove" if context.spec.get("state") == "absent" else "install"
        return f"{verb} package {context.spec.get('name', '?')}"
