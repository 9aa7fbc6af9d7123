"""
Plan model — the ordered, immutable list of resources for a run.

Built once from configuration via ``Plan.from_resources``, which
enforces the structural invariants (unique ids, resolvable
dependencies). Cycle detection happens when the engine orders the
plan, before any provider runs.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence

from pydantic import BaseModel, ConfigDict

from converge.core.engine.dag import dependency_closure, validate_graph
from converge.core.errors import PlanError
from converge.core.models.resource import Resource


class Plan(BaseModel):
    """Ordered collection of Resources. Never mutated during a run."""

    model_config = ConfigDict(frozen=True)

    name: str = ""
    resources: tuple[Resource, ...] = ()

    @classmethod
    def from_resources(cls, resources: Sequence[Resource], name: str = "") -> Plan:
        """Build a validated plan.

        Raises:
            PlanError: On duplicate ids, self-dependencies or unknown
                dependency references.
        """
        errors = validate_graph(resources)
        if errors:
            raise PlanError(errors)
        return cls(name=name, resources=tuple(resources))

    def __len__(self) -> int:
        return len(self.resources)

    @property
    def ids(self) -> list[str]:
        return [r.id for r in self.resources]

    def get(self, resource_id: str) -> Resource | None:
        """Look up a resource by id."""
        for r in self.resources:
            if r.id == resource_id:
                return r
        return None

    def subset(self, ids: Iterable[str]) -> Plan:
        """Plan restricted to ``ids`` and their transitive dependencies.

        Unknown ids are rejected so a typo never silently selects nothing.
        """
        wanted = list(ids)
        unknown = [i for i in wanted if self.get(i) is None]
        if unknown:
            raise PlanError([f"Unknown resource id: {i}" for i in unknown])
        keep = dependency_closure(self.resources, wanted)
        return Plan(name=self.name, resources=tuple(r for r in self.resources if r.id in keep))
