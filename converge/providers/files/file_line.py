"""
FileLine provider — one line in an existing config file.

Covers edits like ``max_parallel_downloads=10`` in ``dnf.conf`` or
``ZSH_THEME="darkblood"`` in ``.zshrc``: lines matching ``regexp`` are
replaced by ``line`` (first match kept, later matches dropped); if
nothing matches, ``line`` is appended.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path

from converge.core.models.outcome import ApplyResult, ErrorKind, QueryState
from converge.core.models.resource import ResourceKind
from converge.providers.base import Provider, ProviderContext, require_keys
from converge.providers.files.atomic import FileOpError, atomic_write, backup_file, read_current

logger = logging.getLogger(__name__)


def ensure_line(content: str, line: str, regexp: str | None) -> str:
    """Return ``content`` with ``line`` present exactly once where it belongs.

    The content's line ending (CRLF or LF) is kept.
    """
    newline = "\r\n" if "\r\n" in content else "\n"
    lines = content.splitlines()
    pattern = re.compile(regexp) if regexp else None

    result: list[str] = []
    placed = False
    for existing in lines:
        matches = existing == line or (pattern is not None and pattern.search(existing))
        if matches:
            if not placed:
                result.append(line)
                placed = True
            continue
        result.append(existing)

    if not placed:
        result.append(line)
    return newline.join(result) + newline


class FileLineProvider(Provider):
    """Ensure a line is present in a file.

    Resource spec:
        path (str): Target file (``~`` expanded). Created if missing.
        line (str): The exact line.
        regexp (str): Lines matching this are replaced by ``line``.
    """

    @property
    def kind(self) -> ResourceKind:
        return ResourceKind.FILE_LINE

    def is_available(self) -> bool:
        return True

    def validate(self, context: ProviderContext) -> tuple[bool, str]:
        ok, msg = require_keys(context, "path", "line")
        if not ok:
            return ok, msg
        if "\n" in context.spec["line"]:
            return False, "'line' must be a single line"
        regexp = context.spec.get("regexp")
        if regexp:
            try:
                re.compile(regexp)
            except re.error as e:
                return False, f"Invalid regexp: {e}"
        return True, ""

    def query(self, context: ProviderContext) -> QueryState:
        path = Path(context.spec["path"]).expanduser()
        try:
            current = read_current(path)
        except OSError:
            return QueryState.UNKNOWN
        if current is None:
            return QueryState.UNSATISFIED
        desired = ensure_line(current, context.spec["line"], context.spec.get("regexp"))
        return QueryState.SATISFIED if desired == _normalized(current) else QueryState.UNSATISFIED

    def apply(self, context: ProviderContext) -> ApplyResult:
        path = Path(context.spec["path"]).expanduser()
        sudo = context.use_sudo(default=False)
        try:
            current = read_current(path) or ""
            desired = ensure_line(current, context.spec["line"], context.spec.get("regexp"))
            backup = backup_file(path, sudo=sudo, timeout=context.timeout)
            atomic_write(path, desired, sudo=sudo, timeout=context.timeout)
        except FileOpError as e:
            return ApplyResult.failure(e.error_kind, e.detail)
        except PermissionError as e:
            return ApplyResult.failure(ErrorKind.PERMISSION_DENIED, f"cannot read {path}: {e}")

        return ApplyResult.success(
            f"set line in {path}",
            metadata={"path": str(path), "backup": str(backup) if backup else None},
        )


def _normalized(content: str) -> str:
    if content.endswith("\n"):
        return content
    return content + ("\r\n" if "\r\n" in content else "\n")
