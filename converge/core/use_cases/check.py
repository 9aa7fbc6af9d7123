"""
Check use case — validate a plan without touching the machine.

Loads the plan, validates every resource spec against its provider,
orders the graph (reporting cycles), and reports which providers are
missing their tools.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from converge.core.config.loader import LoadedPlan, load_plan_file
from converge.core.engine.dag import compute_layers, topological_order
from converge.core.errors import ConfigError
from converge.core.models.facts import HostFacts
from converge.providers import build_registry
from converge.providers.registry import ProviderRegistry


@dataclass
class CheckResult:
    """Result of plan validation."""

    loaded: LoadedPlan | None = None
    order: list[str] = field(default_factory=list)
    layers: list[list[str]] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return self.loaded is not None and not self.errors

    def to_dict(self) -> dict:
        plan = self.loaded.plan if self.loaded else None
        return {
            "valid": self.valid,
            "plan_path": str(self.loaded.path) if self.loaded and self.loaded.path else None,
            "plan": plan.name if plan else None,
            "resource_count": len(plan) if plan else 0,
            "excluded": list(self.loaded.dropped) if self.loaded else [],
            "order": self.order,
            "layers": self.layers,
            "errors": self.errors,
            "warnings": self.warnings,
        }


def check_plan(
    plan_path: Path | None = None,
    registry: ProviderRegistry | None = None,
    facts: HostFacts | None = None,
) -> CheckResult:
    """Validate a plan and report issues.

    Args:
        plan_path: Explicit plan file. None = discover.
        registry: Provider registry (default: the real providers).
        facts: Host facts to use instead of detecting them.

    Returns:
        CheckResult with validation status and any issues.
    """
    result = CheckResult()

    try:
        loaded = load_plan_file(plan_path, facts=facts)
    except ConfigError as e:
        result.errors.append(str(e))
        return result
    result.loaded = loaded

    try:
        ordered = topological_order(loaded.plan.resources)
        result.order = [r.id for r in ordered]
        result.layers = [[r.id for r in layer] for layer in compute_layers(loaded.plan.resources)]
    except ConfigError as e:
        result.errors.append(str(e))

    if registry is None:
        registry = build_registry()

    for resource in loaded.plan.resources:
        result.errors.extend(registry.validate(resource))

    if not loaded.plan.resources:
        result.warnings.append("Plan has no resources for this host.")

    status = registry.provider_status()
    used = {r.kind.value for r in loaded.plan.resources}
    for resource in loaded.plan.resources:
        used.update(f.kind.value for f in resource.fallbacks)
    for kind in sorted(used):
        info = status.get(kind)
        if info is not None and not info["available"]:
            result.warnings.append(f"Provider '{kind}' unavailable: its tool is not installed")

    return result
