"""
GSetting provider — GNOME settings through the ``gsettings`` CLI.

YAML strings are always sent as GVariant strings, so ``"1"`` sets
``'1'`` and never the number 1. Values that need other GVariant text
(``uint32 300``, tuples, typed empty arrays) set ``raw: true`` and are
passed through verbatim. Both sides are compared after parsing, so
``uint32 300`` read back equals a raw ``uint32 300``.

Without a desktop session gsettings either fails or silently falls
back to the in-memory backend; both count as "store unavailable":
query answers UNKNOWN and apply fails with EXTERNAL_TOOL_FAILED.
"""

from __future__ import annotations

import ast
import logging
import re
from typing import Any

from converge.core.models.outcome import ApplyResult, ErrorKind, QueryState
from converge.core.models.resource import ResourceKind
from converge.providers.base import Provider, ProviderContext, require_keys
from converge.providers.shell.command import (
    CommandResult,
    failure_result,
    run_command,
    success_result,
    tool_available,
)

logger = logging.getLogger(__name__)

_TYPE_PREFIX = re.compile(r"^(@\w+|u?int(16|32|64)|byte|double|handle|objectpath|signature)\s+")
_MEMORY_BACKEND = "memory' gsettings backend"


def to_gvariant(value: Any) -> str:
    """Render a YAML value as GVariant text for ``gsettings set``."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, (list, tuple)):
        return "[" + ", ".join(to_gvariant(v) for v in value) + "]"
    text = str(value)
    return "'" + text.replace("\\", "\\\\").replace("'", "\\'") + "'"


def parse_gvariant(text: str) -> Any:
    """Best-effort parse of gsettings output into a Python value."""
    text = _TYPE_PREFIX.sub("", text.strip())
    if text in ("true", "false"):
        return text == "true"
    try:
        return ast.literal_eval(text)
    except (ValueError, SyntaxError):
        return text


def _session_missing(result: CommandResult) -> bool:
    return _MEMORY_BACKEND in result.stderr.lower()


class GSettingProvider(Provider):
    """Set GNOME settings.

    Resource spec:
        schema (str): e.g. ``org.gnome.desktop.interface``.
        key (str): e.g. ``gtk-theme``.
        value: Desired value (string, number, bool or list).
        path (str): Path for relocatable schemas
            (custom keybindings).
        merge (bool): For string arrays, only ensure the listed items
            are present, keeping existing ones (default: False).
        raw (bool): ``value`` is GVariant text, passed through unquoted
            (default: False).
    """

    @property
    def kind(self) -> ResourceKind:
        return ResourceKind.GSETTING

    def is_available(self) -> bool:
        return tool_available("gsettings")

    def validate(self, context: ProviderContext) -> tuple[bool, str]:
        ok, msg = require_keys(context, "schema", "key")
        if not ok:
            return ok, msg
        if "value" not in context.spec:
            return False, "Missing required spec key: 'value'"
        if context.spec.get("merge") and not isinstance(context.spec["value"], list):
            return False, "'merge' requires a list value"
        if context.spec.get("raw") and not isinstance(context.spec["value"], str):
            return False, "'raw' requires a string value"
        if context.spec.get("raw") and context.spec.get("merge"):
            return False, "'raw' cannot be combined with 'merge'"
        return True, ""

    def _schema(self, context: ProviderContext) -> str:
        path = context.spec.get("path")
        schema = context.spec["schema"]
        return f"{schema}:{path}" if path else schema

    def _read(self, context: ProviderContext) -> Any | None:
        """Current value, or None when the store can't be read."""
        result = run_command(
            ["gsettings", "get", self._schema(context), context.spec["key"]],
            timeout=min(context.timeout, 30),
        )
        if not result.ok or _session_missing(result):
            logger.debug("gsettings get failed for %s: %s", context.resource_id, result.diagnostic)
            return None
        return parse_gvariant(result.stdout)

    def _desired(self, context: ProviderContext, current: Any | None) -> Any:
        value = context.spec["value"]
        if context.spec.get("merge") and isinstance(current, list):
            return current + [v for v in value if v not in current]
        return value

    def _rendered(self, context: ProviderContext, current: Any | None = None) -> str:
        if context.spec.get("raw"):
            return context.spec["value"]
        return to_gvariant(self._desired(context, current))

    def query(self, context: ProviderContext) -> QueryState:
        current = self._read(context)
        if current is None:
            return QueryState.UNKNOWN
        value = context.spec["value"]
        if context.spec.get("merge"):
            if not isinstance(current, list):
                return QueryState.UNSATISFIED
            return QueryState.SATISFIED if all(v in current for v in value) else QueryState.UNSATISFIED
        desired = parse_gvariant(self._rendered(context))
        return QueryState.SATISFIED if current == desired else QueryState.UNSATISFIED

    def apply(self, context: ProviderContext) -> ApplyResult:
        if not self.is_available():
            return ApplyResult.failure(ErrorKind.EXTERNAL_TOOL_FAILED, "gsettings is not available")

        current = self._read(context) if context.spec.get("merge") else None
        rendered = self._rendered(context, current)
        key = context.spec["key"]
        action = f"gsettings set {self._schema(context)} {key}"

        result = run_command(
            ["gsettings", "set", self._schema(context), key, rendered],
            sudo=context.use_sudo(default=False),
            timeout=min(context.timeout, 30),
        )
        if _session_missing(result):
            return ApplyResult.failure(
                ErrorKind.EXTERNAL_TOOL_FAILED,
                f"{action} failed: no desktop session (memory backend)",
            )
        if not result.ok:
            failure = failure_result(result, action)
            if failure.error_kind != ErrorKind.NOT_FOUND:
                failure.error_kind = ErrorKind.EXTERNAL_TOOL_FAILED
            return failure
        return success_result(result, f"{key} = {rendered}")

    def describe(self, context: ProviderContext) -> str:
        return f"set {context.spec.get('schema', '?')} {context.spec.get('key', '?')}"
