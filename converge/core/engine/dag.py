"""
Dependency graph utilities (pure).

Validation, deterministic topological ordering, layering for
concurrent execution, and dependency closure. No I/O.

Ordering is Kahn's algorithm with ties broken by plan declaration
order, so the same plan always runs in the same order.
"""

from __future__ import annotations

import heapq
from collections.abc import Iterable, Sequence
from typing import TYPE_CHECKING

from converge.core.errors import CyclicDependencyError, PlanError

if TYPE_CHECKING:
    from converge.core.models.resource import Resource


def validate_graph(resources: Sequence[Resource]) -> list[str]:
    """Validate resource ids and dependency references.

    Checks for:
    - Duplicate resource ids
    - Self-dependencies
    - References to ids not present in the plan

    Cycles are reported by ``topological_order``.

    Returns:
        List of error strings (empty = valid).
    """
    errors: list[str] = []
    ids = {r.id for r in resources}

    seen: set[str] = set()
    for r in resources:
        if r.id in seen:
            errors.append(f"Duplicate resource id: {r.id}")
        seen.add(r.id)

    for r in resources:
        for dep in r.depends_on:
            if dep == r.id:
                errors.append(f"Resource '{r.id}' depends on itself")
            elif dep not in ids:
                errors.append(f"Resource '{r.id}' depends on unknown resource '{dep}'")

    return errors


def topological_order(resources: Sequence[Resource]) -> list[Resource]:
    """Order resources so every dependency precedes its dependents.

    Among resources whose dependencies are all placed, the one declared
    first goes first.

    Raises:
        PlanError: If the graph references unknown ids.
        CyclicDependencyError: If no valid order exists.
    """
    errors = validate_graph(resources)
    if errors:
        raise PlanError(errors)

    index = {r.id: i for i, r in enumerate(resources)}
    in_degree = {r.id: len(r.depends_on) for r in resources}
    dependents: dict[str, list[str]] = {r.id: [] for r in resources}
    for r in resources:
        for dep in r.depends_on:
            dependents[dep].append(r.id)

    ready = [index[rid] for rid, deg in in_degree.items() if deg == 0]
    heapq.heapify(ready)

    ordered: list[Resource] = []
    while ready:
        resource = resources[heapq.heappop(ready)]
        ordered.append(resource)
        for successor in dependents[resource.id]:
            in_degree[successor] -= 1
            if in_degree[successor] == 0:
                heapq.heappush(ready, index[successor])

    if len(ordered) < len(resources):
        placed = {r.id for r in ordered}
        raise CyclicDependencyError([r.id for r in resources if r.id not in placed])

    return ordered


def compute_layers(resources: Sequence[Resource]) -> list[list[Resource]]:
    """Group resources into layers for concurrent execution.

    A resource's layer is one past the deepest layer of its
    dependencies, so no two resources in a layer are connected and
    every dependency sits in an earlier layer. Within a layer,
    declaration order is preserved.
    """
    ordered = topological_order(resources)
    depth: dict[str, int] = {}
    for r in ordered:
        depth[r.id] = 1 + max((depth[d] for d in r.depends_on), default=-1)

    layers: list[list[Resource]] = [[] for _ in range(max(depth.values(), default=-1) + 1)]
    for r in resources:
        layers[depth[r.id]].append(r)
    return layers


def dependency_closure(resources: Sequence[Resource], ids: Iterable[str]) -> set[str]:
    """Return ``ids`` plus everything they transitively depend on."""
    by_id = {r.id: r for r in resources}
    closure: set[str] = set()
    stack = [i for i in ids if i in by_id]
    while stack:
        rid = stack.pop()
        if rid in closure:
            continue
        closure.add(rid)
        stack.extend(d for d in by_id[rid].depends_on if d in by_id)
    return closure
