"""
Outcome models — the execution contract between engine and providers.

Providers answer ``query`` with a QueryState and ``apply`` with an
ApplyResult. The engine turns those into exactly one Outcome per
resource per run. Providers never raise: failures travel as data.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def _now_iso() -> str:
    """Current UTC time as ISO string."""
    return datetime.now(UTC).isoformat()


class QueryState(StrEnum):
    """Observed state of a resource on the machine."""

    SATISFIED = "satisfied"
    UNSATISFIED = "unsatisfied"
    UNKNOWN = "unknown"        # could not tell; the engine applies anyway


class ErrorKind(StrEnum):
    """Why an apply failed."""

    NOT_FOUND = "not_found"
    PERMISSION_DENIED = "permission_denied"
    NETWORK_UNAVAILABLE = "network_unavailable"
    EXTERNAL_TOOL_FAILED = "external_tool_failed"
    TIMEOUT = "timeout"


class OutcomeStatus(StrEnum):
    """Final status of one resource in one run."""

    ALREADY_SATISFIED = "already_satisfied"
    APPLIED = "applied"
    FAILED = "failed"
    SKIPPED = "skipped"


class SkipReason(StrEnum):
    """Why a resource was not attempted."""

    DEPENDENCY_FAILED = "dependency_failed"
    CANCELLED = "cancelled"
    ABORTED = "aborted"        # fail-fast after an earlier failure
    DRY_RUN = "dry_run"


class Attempt(BaseModel):
    """One provider tried for a resource (primary or fallback)."""

    model_config = ConfigDict(frozen=True)

    provider: str
    status: OutcomeStatus
    error_kind: ErrorKind | None = None
    detail: str = ""


class ApplyResult(BaseModel):
    """Result of a provider's apply.

    Like a receipt: the provider fills it in and returns it, it never
    raises. ``attempts`` is filled by the registry when fallbacks ran.
    """

    ok: bool = True
    error_kind: ErrorKind | None = None
    detail: str = ""
    provider: str = ""
    attempts: list[Attempt] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def failed(self) -> bool:
        return not self.ok

    @classmethod
    def success(cls, detail: str = "", **kwargs: Any) -> ApplyResult:
        """Create a success result."""
        return cls(ok=True, detail=detail, **kwargs)

    @classmethod
    def failure(cls, error_kind: ErrorKind, detail: str, **kwargs: Any) -> ApplyResult:
        """Create a failure result."""
        return cls(ok=False, error_kind=error_kind, detail=detail, **kwargs)


class Outcome(BaseModel):
    """The recorded result of one resource in one run.

    Written once by the engine, never modified afterwards.
    """

    model_config = ConfigDict(frozen=True)

    run_id: str = ""
    resource_id: str
    kind: str = ""
    status: OutcomeStatus

    error_kind: ErrorKind | None = None
    skip_reason: SkipReason | None = None
    detail: str | None = None
    attempts: tuple[Attempt, ...] = ()

    started_at: str = Field(default_factory=_now_iso)
    ended_at: str = Field(default_factory=_now_iso)
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        """Whether the resource ended in its desired state."""
        return self.status in (OutcomeStatus.ALREADY_SATISFIED, OutcomeStatus.APPLIED)

    @property
    def failed(self) -> bool:
        return self.status == OutcomeStatus.FAILED

    @property
    def skipped(self) -> bool:
        return self.status == OutcomeStatus.SKIPPED

    @property
    def blocks_dependents(self) -> bool:
        """Whether dependents of this resource must not be attempted."""
        if self.failed:
            return True
        return self.skipped and self.skip_reason != SkipReason.DRY_RUN

    @property
    def marker(self) -> str:
        return {
            OutcomeStatus.ALREADY_SATISFIED: "=",
            OutcomeStatus.APPLIED: "✓",
            OutcomeStatus.FAILED: "✗",
            OutcomeStatus.SKIPPED: "⊘",
        }[self.status]
