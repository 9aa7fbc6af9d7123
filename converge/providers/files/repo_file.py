"""
RepoFile provider — a file with exact content, or no file at all.

Typical use: ``/etc/yum.repos.d/*.repo`` definitions, but any text
file works. The file is satisfied only when its content matches
byte for byte. With ``state: absent`` it is satisfied when the path
does not exist, and apply removes it (after a backup).
"""

from __future__ import annotations

import logging
from pathlib import Path

from converge.core.models.outcome import ApplyResult, ErrorKind, QueryState
from converge.core.models.resource import ResourceKind
from converge.providers.base import Provider, ProviderContext, require_keys
from converge.providers.files.atomic import (
    FileOpError,
    atomic_write,
    backup_file,
    read_current,
    remove_file,
)

logger = logging.getLogger(__name__)

STATES = ("present", "absent")


def parse_mode(value: str | int | None) -> int | None:
    """Accept ``"0644"``, ``"644"`` or ``0o644``."""
    if value is None or value == "":
        return None
    if isinstance(value, int):
        return value
    return int(str(value), 8)


class RepoFileProvider(Provider):
    """Ensure a file has exactly the given content.

    Resource spec:
        path (str): Target path (``~`` expanded).
        content (str): Desired content (not used when absent).
        state (str): ``present`` (default) or ``absent``.
        mode (str): Octal permissions, e.g. ``"0644"`` (default: keep/0644).
        backup (bool): Back up an existing file first (default: True).
    """

    @property
    def kind(self) -> ResourceKind:
        return ResourceKind.REPO_FILE

    def is_available(self) -> bool:
        return True

    def validate(self, context: ProviderContext) -> tuple[bool, str]:
        ok, msg = require_keys(context, "path")
        if not ok:
            return ok, msg
        state = context.spec.get("state", "present")
        if state not in STATES:
            return False, f"Invalid state: {state!r} (expected present or absent)"
        if state == "absent":
            return True, ""
        if not isinstance(context.spec.get("content"), str):
            return False, "Missing required spec key: 'content'"
        try:
            parse_mode(context.spec.get("mode"))
        except ValueError:
            return False, f"Invalid mode: {context.spec.get('mode')!r}"
        return True, ""

    def _path(self, context: ProviderContext) -> Path:
        return Path(context.spec["path"]).expanduser()

    def _absent(self, context: ProviderContext) -> bool:
        return context.spec.get("state", "present") == "absent"

    def query(self, context: ProviderContext) -> QueryState:
        path = self._path(context)
        if self._absent(context):
            return QueryState.UNSATISFIED if path.is_symlink() or path.exists() else QueryState.SATISFIED
        try:
            current = read_current(path)
        except OSError as e:
            logger.debug("Cannot read %s: %s", path, e)
            return QueryState.UNKNOWN
        if current is None:
            return QueryState.UNSATISFIED
        return QueryState.SATISFIED if current == context.spec["content"] else QueryState.UNSATISFIED

    def apply(self, context: ProviderContext) -> ApplyResult:
        path = self._path(context)
        sudo = context.use_sudo(default=False)
        removing = self._absent(context)
        try:
            backup = None
            if context.spec.get("backup", True):
                backup = backup_file(path, sudo=sudo, timeout=context.timeout)
            if removing:
                remove_file(path, sudo=sudo, timeout=context.timeout)
            else:
                atomic_write(
                    path,
                    context.spec["content"],
                    mode=parse_mode(context.spec.get("mode")),
                    sudo=sudo,
                    timeout=context.timeout,
                )
        except FileOpError as e:
            return ApplyResult.failure(e.error_kind, e.detail)
        except ValueError as e:
            return ApplyResult.failure(ErrorKind.EXTERNAL_TOOL_FAILED, str(e))

        detail = f"{'removed' if removing else 'wrote'} {path}"
        if backup:
            detail += f" (backup: {backup})"
        return ApplyResult.success(detail, metadata={"path": str(path), "backup": str(backup) if backup else None})

    def describe(self, context: ProviderContext) -> str:
        verb = "remove" if self._absent(context) else "write"
        return f"{verb} {context.spec.get('path', '?')}"
