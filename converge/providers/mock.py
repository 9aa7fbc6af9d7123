"""
Mock provider — universal test double for all provider operations.

Simulates a machine without touching it: resources start unsatisfied,
a successful apply makes them satisfied, so a second run over the same
plan reports everything as already satisfied. Failures, unknown states
and delays are configurable per resource id.
"""

from __future__ import annotations

import threading
import time

from converge.core.models.outcome import ApplyResult, ErrorKind, QueryState
from converge.core.models.resource import ResourceKind
from converge.providers.base import Provider, ProviderContext


class MockProvider(Provider):
    """Universal mock provider for testing.

    By default every apply succeeds and flips the resource to satisfied.
    """

    def __init__(
        self,
        kind: ResourceKind = ResourceKind.PACKAGE,
        available: bool = True,
        satisfied: set[str] | None = None,
    ):
        self._kind = kind
        self._available = available
        self._satisfied: set[str] = set(satisfied or ())
        self._unknown: set[str] = set()
        self._failures: dict[str, ApplyResult] = {}
        self._delays: dict[str, float] = {}
        self._lock = threading.Lock()
        self.calls: list[tuple[str, str]] = []       # (operation, resource_id)

    @property
    def kind(self) -> ResourceKind:
        return self._kind

    @property
    def call_count(self) -> int:
        return len(self.calls)

    def applied_ids(self) -> list[str]:
        return [rid for op, rid in self.calls if op == "apply"]

    def queried_ids(self) -> list[str]:
        return [rid for op, rid in self.calls if op == "query"]

    def is_available(self) -> bool:
        return self._available

    def set_satisfied(self, resource_id: str, satisfied: bool = True) -> None:
        """Mark a resource as already in (or out of) its desired state."""
        if satisfied:
            self._satisfied.add(resource_id)
        else:
            self._satisfied.discard(resource_id)

    def set_unknown(self, resource_id: str) -> None:
        """Make query report UNKNOWN for a resource."""
        self._unknown.add(resource_id)

    def set_failure(
        self,
        resource_id: str,
        error_kind: ErrorKind = ErrorKind.EXTERNAL_TOOL_FAILED,
        detail: str = "Mock failure",
    ) -> None:
        """Configure a resource's apply to fail."""
        self._failures[resource_id] = ApplyResult.failure(error_kind, detail)

    def clear_failure(self, resource_id: str) -> None:
        self._failures.pop(resource_id, None)

    def set_delay(self, resource_id: str, seconds: float) -> None:
        """Make apply block for a while (concurrency tests)."""
        self._delays[resource_id] = seconds

    def validate(self, context: ProviderContext) -> tuple[bool, str]:
        return True, ""

    def query(self, context: ProviderContext) -> QueryState:
        rid = context.resource_id
        with self._lock:
            self.calls.append(("query", rid))
        if rid in self._unknown:
            return QueryState.UNKNOWN
        if rid in self._satisfied:
            return QueryState.SATISFIED
        return QueryState.UNSATISFIED

    def apply(self, context: ProviderContext) -> ApplyResult:
        rid = context.resource_id
        with self._lock:
            self.calls.append(("apply", rid))
        delay = self._delays.get(rid)
        if delay:
            time.sleep(delay)
        if rid in self._failures:
            return self._failures[rid].model_copy(deep=True)
        with self._lock:
            self._satisfied.add(rid)
        return ApplyResult.success(f"[mock] {self._kind}:{rid} applied")

    def reset(self) -> None:
        """Clear call log, state and configured responses."""
        self.calls.clear()
        self._satisfied.clear()
        self._unknown.clear()
        self._failures.clear()
        self._delays.clear()
