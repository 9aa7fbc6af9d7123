"""
Apply use case — converge the machine to a plan.

This is the top-level orchestrator: it loads the plan, narrows it to
the requested resources, sets up the provider registry, runs the
engine, and leaves the ledger behind. The full vertical slice from
user intent to recorded outcomes.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

from converge.core.config.loader import LoadedPlan, load_plan_file
from converge.core.engine.cancel import CancelToken
from converge.core.engine.executor import RunReport, execute_plan
from converge.core.errors import ConfigError, LedgerError
from converge.core.models.facts import HostFacts
from converge.core.models.plan import Plan
from converge.core.persistence.ledger import LedgerStore
from converge.providers import build_registry
from converge.providers.registry import ProviderRegistry

logger = logging.getLogger(__name__)

# Exit codes for run-level errors
EXIT_CONFIG = 2
EXIT_LEDGER = 3


@dataclass
class ApplyRunResult:
    """Result of an apply."""

    report: RunReport | None = None
    loaded: LoadedPlan | None = None
    ledger_path: Path | None = None
    selected: list[str] = field(default_factory=list)
    error: str | None = None
    exit_code: int = 0

    def to_dict(self) -> dict:
        result: dict = {}
        if self.error:
            result["error"] = self.error
            result["exit_code"] = self.exit_code
            if self.report:
                result["report"] = self.report.to_dict()
            return result

        if self.loaded:
            result["plan"] = self.loaded.plan.name
            result["plan_path"] = str(self.loaded.path) if self.loaded.path else None
            result["excluded"] = list(self.loaded.dropped)
        result["ledger"] = str(self.ledger_path) if self.ledger_path else None
        result["selected"] = list(self.selected)

        if self.report:
            result["report"] = self.report.to_dict()

        return result


def run_apply(
    plan_path: Path | None = None,
    *,
    dry_run: bool | None = None,
    mock_mode: bool = False,
    concurrency: int | None = None,
    timeout: int | None = None,
    fail_fast: bool | None = None,
    only: Sequence[str] = (),
    retry_failed: bool = False,
    ledger_path: Path | None = None,
    registry: ProviderRegistry | None = None,
    cancel: CancelToken | None = None,
    facts: HostFacts | None = None,
) -> ApplyRunResult:
    """Converge the machine to the plan.

    Arguments left as None keep the value from the plan's ``settings:``.

    Args:
        plan_path: Explicit plan file. None = discover.
        dry_run: Query only; report what would change.
        mock_mode: Serve every kind with a MockProvider.
        concurrency: Max resources converged at once.
        timeout: Default per-resource timeout in seconds.
        fail_fast: Stop attempting resources after the first failure.
        only: Restrict to these ids (plus their dependencies).
        retry_failed: Restrict to what failed or was skipped last run.
        ledger_path: Override the ledger file.
        registry: Pre-configured provider registry.
        cancel: Cancellation token (the CLI wires SIGINT to it).
        facts: Host facts to use instead of detecting them.

    Returns:
        ApplyRunResult. ``error``/``exit_code`` are set for run-level
        failures; per-resource failures live in the report.
    """
    result = ApplyRunResult()

    # ── Load plan ───────────────────────────────────────────────
    try:
        loaded = load_plan_file(plan_path, facts=facts)
    except ConfigError as e:
        result.error = str(e)
        result.exit_code = EXIT_CONFIG
        return result
    result.loaded = loaded

    # ── Effective settings ──────────────────────────────────────
    overrides = {
        "dry_run": dry_run,
        "concurrency": concurrency,
        "timeout": timeout,
        "fail_fast": fail_fast,
        "ledger": str(ledger_path) if ledger_path else None,
    }
    settings = loaded.settings.model_copy(
        update={k: v for k, v in overrides.items() if v is not None}
    )
    store = LedgerStore(Path(settings.ledger))
    result.ledger_path = store.path

    # ── Select resources ────────────────────────────────────────
    plan = loaded.plan
    try:
        if retry_failed:
            plan = _retry_subset(plan, store)
        if only:
            plan = plan.subset(only)
    except ConfigError as e:
        result.error = str(e)
        result.exit_code = EXIT_CONFIG
        return result
    except LedgerError as e:
        result.error = str(e)
        result.exit_code = EXIT_LEDGER
        return result
    result.selected = plan.ids

    # ── Set up provider registry ────────────────────────────────
    if registry is None:
        registry = build_registry(mock_mode=mock_mode)

    # ── Execute ─────────────────────────────────────────────────
    try:
        result.report = execute_plan(
            plan=plan,
            registry=registry,
            settings=settings,
            store=store,
            cancel=cancel,
        )
    except ConfigError as e:
        result.error = str(e)
        result.exit_code = EXIT_CONFIG
    except LedgerError as e:
        result.error = str(e)
        result.exit_code = EXIT_LEDGER

    return result


def _retry_subset(plan: Plan, store: LedgerStore) -> Plan:
    """Resources that failed or were skipped in the last run, with dependencies."""
    last = store.last_run()
    if last is None:
        logger.info("No previous run in %s; nothing to retry", store.path)
        return plan.subset([])

    wanted = [rid for rid in last.unconverged_ids() if plan.get(rid) is not None]
    missing = set(last.unconverged_ids()) - set(wanted)
    if missing:
        logger.info("Not retrying ids no longer in the plan: %s", ", ".join(sorted(missing)))
    logger.info("Retrying %d resource(s) from run %s", len(wanted), last.run_id)
    return plan.subset(wanted)
