"""
Engine executor — the central convergence loop.

The engine takes a Plan, orders it, drives every resource through the
provider registry, and records exactly one Outcome per resource in the
ledger.

Flow:
    plan → order (Kahn) → per resource: gate → query → apply → record

Gating happens before any provider call: a resource whose dependency
failed (or was itself blocked) is skipped, as is everything left once
the run is cancelled or aborted by fail-fast. With concurrency > 1 the
plan runs layer by layer on a thread pool; outcomes are always recorded
on the driving thread, so a resource's outcome is in the ledger before
any of its dependents start.
"""

from __future__ import annotations

import logging
import time
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import UTC, datetime

from converge.core.engine.cancel import CancelToken
from converge.core.engine.dag import compute_layers, topological_order
from converge.core.models.outcome import (
    ErrorKind,
    Outcome,
    OutcomeStatus,
    QueryState,
    SkipReason,
)
from converge.core.models.plan import Plan
from converge.core.models.resource import Resource
from converge.core.models.settings import RunSettings
from converge.core.models.summary import RunSummary
from converge.core.persistence.ledger import Ledger, LedgerStore
from converge.providers.base import ProviderContext
from converge.providers.registry import ProviderRegistry

logger = logging.getLogger(__name__)


@dataclass
class RunReport:
    """Result of executing a plan."""

    run_id: str = ""
    plan_name: str = ""
    dry_run: bool = False
    order: list[str] = field(default_factory=list)
    outcomes: list[Outcome] = field(default_factory=list)

    @property
    def summary(self) -> RunSummary:
        return RunSummary.from_outcomes(self.outcomes, run_id=self.run_id)

    @property
    def all_ok(self) -> bool:
        return self.summary.failed_count == 0

    def get(self, resource_id: str) -> Outcome | None:
        for outcome in self.outcomes:
            if outcome.resource_id == resource_id:
                return outcome
        return None

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "plan": self.plan_name,
            "dry_run": self.dry_run,
            "order": list(self.order),
            "summary": self.summary.to_dict(),
            "outcomes": [o.model_dump(mode="json") for o in self.outcomes],
        }


def generate_run_id() -> str:
    """Generate a unique run ID."""
    now = datetime.now(UTC).strftime("%Y%m%d-%H%M%S")
    short = uuid.uuid4().hex[:6]
    return f"run-{now}-{short}"


def execute_plan(
    plan: Plan,
    registry: ProviderRegistry,
    settings: RunSettings | None = None,
    store: LedgerStore | None = None,
    cancel: CancelToken | None = None,
    run_id: str | None = None,
) -> RunReport:
    """Converge every resource in a plan.

    Args:
        plan: The validated plan.
        registry: Provider registry for dispatch.
        settings: Concurrency, timeout, fail-fast and dry-run policy.
        store: Optional ledger store; each outcome is persisted as recorded.
        cancel: Optional cancellation token, checked between resources.
        run_id: Explicit run id (generated when omitted).

    Returns:
        RunReport with one outcome per resource.

    Raises:
        CyclicDependencyError: If the plan has a cycle. Raised before any
            provider is invoked; nothing is recorded.
        LedgerError: If an outcome cannot be persisted.
    """
    settings = settings or RunSettings()
    run_id = run_id or generate_run_id()

    ordered = topological_order(plan.resources)

    ledger = Ledger(run_id, store=store)
    run = _PlanRun(registry, settings, ledger, cancel)

    logger.info(
        "Run %s: %d resource(s), concurrency=%d%s",
        run_id, len(ordered), settings.concurrency,
        " (dry run)" if settings.dry_run else "",
    )

    try:
        if settings.concurrency <= 1:
            for resource in ordered:
                run.step(resource)
        else:
            for layer in compute_layers(plan.resources):
                run.step_layer(layer)
    finally:
        ledger.close()

    report = RunReport(
        run_id=run_id,
        plan_name=plan.name,
        dry_run=settings.dry_run,
        order=[r.id for r in ordered],
        outcomes=list(ledger.outcomes),
    )
    logger.info("Run %s: %s", run_id, report.summary.headline)
    return report


class _PlanRun:
    """Mutable state of one run: the ledger plus the abort flag."""

    def __init__(
        self,
        registry: ProviderRegistry,
        settings: RunSettings,
        ledger: Ledger,
        cancel: CancelToken | None,
    ):
        self.registry = registry
        self.settings = settings
        self.ledger = ledger
        self.cancel = cancel
        self.aborted_by: str | None = None

    # ── Driving thread ──────────────────────────────────────────

    def step(self, resource: Resource) -> None:
        """Gate, converge and record one resource."""
        outcome = self.gate(resource) or self.converge(resource)
        self.record(outcome)

    def step_layer(self, layer: list[Resource]) -> None:
        """Converge a layer of mutually independent resources."""
        pending = []
        for resource in layer:
            skipped = self.gate(resource)
            if skipped is not None:
                self.record(skipped)
            else:
                pending.append(resource)

        if len(pending) <= 1:
            for resource in pending:
                self.step(resource)
            return

        workers = min(self.settings.concurrency, len(pending))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="converge") as pool:
            futures = [pool.submit(self.queued, r) for r in pending]
            for future in as_completed(futures):
                self.record(future.result())

    def record(self, outcome: Outcome) -> None:
        self.ledger.record(outcome)

        suffix = ""
        if outcome.skip_reason:
            suffix = f" ({outcome.skip_reason})"
        elif outcome.error_kind:
            suffix = f" ({outcome.error_kind}: {outcome.detail})"
        log = logger.warning if outcome.failed else logger.info
        log("%s %s:%s → %s%s", outcome.marker, outcome.kind, outcome.resource_id, outcome.status, suffix)

        if outcome.failed and self.settings.fail_fast and self.aborted_by is None:
            self.aborted_by = outcome.resource_id
            logger.warning("Fail-fast: aborting run after '%s' failed", outcome.resource_id)

    def gate(self, resource: Resource) -> Outcome | None:
        """Skip outcome for a resource that must not be attempted, else None."""
        if self.cancel is not None and self.cancel.cancelled:
            return _skipped(resource, SkipReason.CANCELLED, self.cancel.reason or "run cancelled")
        if self.aborted_by is not None:
            return _skipped(resource, SkipReason.ABORTED, f"run aborted after '{self.aborted_by}' failed")

        for dep in resource.depends_on:
            dep_outcome = self.ledger.get(dep)
            if dep_outcome is not None and dep_outcome.blocks_dependents:
                return _skipped(
                    resource,
                    SkipReason.DEPENDENCY_FAILED,
                    f"dependency '{dep}' {dep_outcome.status}",
                )
        return None

    # ── Worker threads ──────────────────────────────────────────

    def queued(self, resource: Resource) -> Outcome:
        """Pool task: re-check cancellation/abort before starting."""
        if self.cancel is not None and self.cancel.cancelled:
            return _skipped(resource, SkipReason.CANCELLED, self.cancel.reason or "run cancelled")
        if self.aborted_by is not None:
            return _skipped(resource, SkipReason.ABORTED, f"run aborted after '{self.aborted_by}' failed")
        return self.converge(resource)

    def converge(self, resource: Resource) -> Outcome:
        """Query, then apply when needed. Never raises."""
        started_at = datetime.now(UTC).isoformat()
        t0 = time.monotonic()

        def finish(status: OutcomeStatus, **kwargs) -> Outcome:
            return Outcome(
                run_id=self.ledger.run_id,
                resource_id=resource.id,
                kind=resource.kind.value,
                status=status,
                started_at=started_at,
                ended_at=datetime.now(UTC).isoformat(),
                duration_ms=int((time.monotonic() - t0) * 1000),
                **kwargs,
            )

        try:
            context = ProviderContext(
                resource=resource,
                timeout=resource.timeout or self.settings.timeout,
                dry_run=self.settings.dry_run,
                scratch_dir=self.settings.scratch_dir,
            )

            state = self.registry.query(context)
            if state == QueryState.SATISFIED:
                return finish(OutcomeStatus.ALREADY_SATISFIED)

            if self.settings.dry_run:
                return finish(
                    OutcomeStatus.SKIPPED,
                    skip_reason=SkipReason.DRY_RUN,
                    detail=f"would apply (state: {state})",
                )

            result = self.registry.apply(context)
        except Exception as e:
            logger.exception("Unexpected engine error on '%s'", resource.id)
            return finish(
                OutcomeStatus.FAILED,
                error_kind=ErrorKind.EXTERNAL_TOOL_FAILED,
                detail=f"internal error: {e}",
            )

        if result.ok:
            return finish(
                OutcomeStatus.APPLIED,
                detail=result.detail or None,
                attempts=tuple(result.attempts),
            )
        return finish(
            OutcomeStatus.FAILED,
            error_kind=result.error_kind or ErrorKind.EXTERNAL_TOOL_FAILED,
            detail=result.detail,
            attempts=tuple(result.attempts),
        )


def _skipped(resource: Resource, reason: SkipReason, detail: str) -> Outcome:
    now = datetime.now(UTC).isoformat()
    return Outcome(
        resource_id=resource.id,
        kind=resource.kind.value,
        status=OutcomeStatus.SKIPPED,
        skip_reason=reason,
        detail=detail,
        started_at=now,
        ended_at=now,
    )
