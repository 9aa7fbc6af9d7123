"""
Run-level errors.

Per-resource failures are never exceptions: they are recorded as
Outcomes in the ledger. Only the errors below abort a run.
"""

from __future__ import annotations


class ConfigError(Exception):
    """Raised when the plan file is missing, unreadable, or invalid."""


class PlanError(ConfigError):
    """Raised when the resource list violates plan invariants.

    Duplicate ids, dependencies on unknown ids, self-dependencies.
    """

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors) or "Invalid plan")


class CyclicDependencyError(PlanError):
    """Raised when no valid topological order exists.

    Always raised before any provider is invoked.
    """

    def __init__(self, members: list[str]):
        self.members = list(members)
        super().__init__(
            [f"Dependency cycle detected among: {', '.join(self.members)}"]
        )


class LedgerError(Exception):
    """Raised when outcomes cannot be durably recorded."""
