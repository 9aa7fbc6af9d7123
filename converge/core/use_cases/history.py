"""
History use case — recent runs read back from the ledger.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from converge.core.config.loader import find_plan_file, load_settings
from converge.core.errors import ConfigError, LedgerError
from converge.core.models.settings import DEFAULT_LEDGER_PATH
from converge.core.persistence.ledger import LedgerStore, RunRecord


@dataclass
class HistoryResult:
    """Recent runs, newest last."""

    ledger_path: Path | None = None
    runs: list[RunRecord] = field(default_factory=list)
    error: str | None = None

    def to_dict(self) -> dict:
        if self.error:
            return {"error": self.error}
        return {
            "ledger": str(self.ledger_path) if self.ledger_path else None,
            "runs": [
                {
                    "run_id": run.run_id,
                    "started_at": run.started_at,
                    "ended_at": run.ended_at,
                    "summary": run.summary.to_dict(),
                }
                for run in self.runs
            ],
        }


def get_history(
    ledger_path: Path | None = None,
    plan_path: Path | None = None,
    limit: int = 10,
) -> HistoryResult:
    """Read recent runs.

    The ledger location comes from ``ledger_path``, else the plan's
    ``settings.ledger``, else the default.
    """
    result = HistoryResult()

    if ledger_path is None:
        try:
            path = plan_path or find_plan_file()
            ledger = load_settings(path).ledger if path and path.is_file() else DEFAULT_LEDGER_PATH
        except ConfigError as e:
            result.error = str(e)
            return result
        ledger_path = Path(ledger)

    store = LedgerStore(ledger_path)
    result.ledger_path = store.path
    try:
        result.runs = store.recent_runs(limit)
    except LedgerError as e:
        result.error = str(e)
    return result
