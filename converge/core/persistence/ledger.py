"""
Ledger — the append-only record of a run's outcomes.

``Ledger`` is the in-run object owned by the engine: one Outcome per
resource, appended in the order they complete, never modified.
``LedgerStore`` persists outcomes as NDJSON (one JSON object per
line, each tagged with its run id), appending and fsyncing each
record as it is written so an outcome is durable before any dependent
resource starts.

Later runs read the store for history and for ``--retry-failed``.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path

from converge.core.errors import LedgerError
from converge.core.models.outcome import Outcome
from converge.core.models.summary import RunSummary

logger = logging.getLogger(__name__)


class LedgerStore:
    """Append-only NDJSON ledger file.

    The file is created if it doesn't exist. Write failures raise
    LedgerError; corrupt lines are skipped on read.
    """

    def __init__(self, path: Path):
        self._path = Path(path).expanduser()

    @property
    def path(self) -> Path:
        return self._path

    def append(self, outcome: Outcome) -> None:
        """Durably append one outcome.

        Raises:
            LedgerError: If the record cannot be written.
        """
        line = json.dumps(outcome.model_dump(mode="json"), ensure_ascii=False) + "\n"
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("a", encoding="utf-8") as f:
                f.write(line)
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            raise LedgerError(f"Cannot write ledger {self._path}: {e}") from e
        logger.debug("Ledger record written: %s/%s", outcome.run_id, outcome.resource_id)

    def read_all(self) -> list[Outcome]:
        """All recorded outcomes, oldest first."""
        if not self._path.is_file():
            return []

        outcomes = []
        try:
            with self._path.open("r", encoding="utf-8") as f:
                for line_num, line in enumerate(f, start=1):
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        outcomes.append(Outcome.model_validate(json.loads(line)))
                    except (json.JSONDecodeError, ValueError) as e:
                        logger.warning("Skipping corrupt ledger entry at line %d: %s", line_num, e)
        except OSError as e:
            raise LedgerError(f"Cannot read ledger {self._path}: {e}") from e

        return outcomes

    def runs(self) -> list[RunRecord]:
        """Outcomes grouped by run, oldest run first."""
        grouped: dict[str, RunRecord] = {}
        for outcome in self.read_all():
            record = grouped.get(outcome.run_id)
            if record is None:
                record = grouped[outcome.run_id] = RunRecord(run_id=outcome.run_id)
            record.outcomes.append(outcome)
        return list(grouped.values())

    def recent_runs(self, n: int = 10) -> list[RunRecord]:
        return self.runs()[-n:]

    def last_run(self) -> RunRecord | None:
        runs = self.runs()
        return runs[-1] if runs else None

    def entry_count(self) -> int:
        """Count records without parsing them."""
        if not self._path.is_file():
            return 0
        try:
            with self._path.open("r", encoding="utf-8") as f:
                return sum(1 for line in f if line.strip())
        except OSError:
            return 0


@dataclass
class RunRecord:
    """One past run as read back from the store."""

    run_id: str
    outcomes: list[Outcome] = field(default_factory=list)

    @property
    def started_at(self) -> str:
        return min((o.started_at for o in self.outcomes), default="")

    @property
    def ended_at(self) -> str:
        return max((o.ended_at for o in self.outcomes), default="")

    @property
    def summary(self) -> RunSummary:
        return RunSummary.from_outcomes(self.outcomes, run_id=self.run_id)

    def unconverged_ids(self) -> list[str]:
        """Resources that failed or were skipped in this run."""
        return [o.resource_id for o in self.outcomes if o.failed or o.skipped]


class Ledger:
    """The outcomes of one run, append-only.

    Owned by the engine while the run is in progress; closed and handed
    to the reporting layer afterwards.
    """

    def __init__(self, run_id: str, store: LedgerStore | None = None):
        self.run_id = run_id
        self._store = store
        self._outcomes: list[Outcome] = []
        self._index: dict[str, Outcome] = {}
        self._closed = False

    def record(self, outcome: Outcome) -> None:
        """Append one outcome (and persist it when a store is attached).

        Raises:
            LedgerError: On a second outcome for the same resource, a
                write after close, or a persistence failure.
        """
        if self._closed:
            raise LedgerError("Ledger is closed")
        if outcome.resource_id in self._index:
            raise LedgerError(f"Outcome for '{outcome.resource_id}' already recorded")
        if outcome.run_id != self.run_id:
            outcome = outcome.model_copy(update={"run_id": self.run_id})

        if self._store is not None:
            self._store.append(outcome)
        self._outcomes.append(outcome)
        self._index[outcome.resource_id] = outcome

    def close(self) -> None:
        self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def outcomes(self) -> tuple[Outcome, ...]:
        return tuple(self._outcomes)

    def get(self, resource_id: str) -> Outcome | None:
        return self._index.get(resource_id)

    def statuses(self) -> dict[str, str]:
        """resource id → status value."""
        return {o.resource_id: o.status.value for o in self._outcomes}

    def summary(self) -> RunSummary:
        return RunSummary.from_outcomes(self._outcomes, run_id=self.run_id)

    def __len__(self) -> int:
        return len(self._outcomes)

    def __iter__(self) -> Iterator[Outcome]:
        return iter(self._outcomes)
