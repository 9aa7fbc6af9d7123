"""
RunSummary — derived view of a ledger, never stored.

Distinguishes "nothing to do", "converged with N applied" and
"converged with N failed" so repeated runs show convergence.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from converge.core.models.outcome import Outcome, OutcomeStatus, SkipReason


@dataclass
class FailedResource:
    """A failed resource and why."""

    resource_id: str
    kind: str
    error_kind: str
    detail: str

    def to_dict(self) -> dict[str, str]:
        return {
            "resource_id": self.resource_id,
            "kind": self.kind,
            "error_kind": self.error_kind,
            "detail": self.detail,
        }


@dataclass
class RunSummary:
    """Counts by status plus failure details for one run."""

    run_id: str = ""
    counts: dict[str, int] = field(
        default_factory=lambda: {s.value: 0 for s in OutcomeStatus}
    )
    failed: list[FailedResource] = field(default_factory=list)
    skipped: dict[str, str] = field(default_factory=dict)   # id → reason
    cancelled: bool = False

    @classmethod
    def from_outcomes(cls, outcomes: Iterable[Outcome], run_id: str = "") -> RunSummary:
        summary = cls(run_id=run_id)
        for o in outcomes:
            summary.counts[o.status.value] += 1
            if o.failed:
                summary.failed.append(
                    FailedResource(
                        resource_id=o.resource_id,
                        kind=o.kind,
                        error_kind=o.error_kind.value if o.error_kind else "",
                        detail=o.detail or "",
                    )
                )
            elif o.skipped:
                reason = o.skip_reason.value if o.skip_reason else ""
                summary.skipped[o.resource_id] = reason
                if o.skip_reason == SkipReason.CANCELLED:
                    summary.cancelled = True
        return summary

    @property
    def total(self) -> int:
        return sum(self.counts.values())

    @property
    def applied(self) -> int:
        return self.counts[OutcomeStatus.APPLIED.value]

    @property
    def already_satisfied(self) -> int:
        return self.counts[OutcomeStatus.ALREADY_SATISFIED.value]

    @property
    def failed_count(self) -> int:
        return self.counts[OutcomeStatus.FAILED.value]

    @property
    def skipped_count(self) -> int:
        return self.counts[OutcomeStatus.SKIPPED.value]

    @property
    def verdict(self) -> str:
        """One of: nothing_to_do, converged, failed, cancelled."""
        if self.cancelled:
            return "cancelled"
        if self.failed_count:
            return "failed"
        if self.applied or self.skipped_count:
            return "converged"
        return "nothing_to_do"

    @property
    def headline(self) -> str:
        if self.cancelled:
            return f"cancelled with {self.skipped_count} not attempted"
        if self.failed_count:
            return f"converged with {self.failed_count} failed"
        if self.applied:
            return f"converged with {self.applied} applied"
        if self.skipped_count:
            return f"converged with {self.skipped_count} skipped"
        return "nothing to do"

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "verdict": self.verdict,
            "headline": self.headline,
            "total": self.total,
            "counts": dict(self.counts),
            "failed": [f.to_dict() for f in self.failed],
            "skipped": dict(self.skipped),
        }
