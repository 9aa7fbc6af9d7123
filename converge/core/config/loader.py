"""
Configuration loader — reads a plan file into domain models.

This is the primary entry point for loading a plan. It reads YAML,
validates against Pydantic schemas, resolves host facts (``when:``
filters and ``${var}`` placeholders), and returns a validated Plan
together with the run settings declared in the file.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from string import Template
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError

from converge.core.errors import ConfigError, PlanError
from converge.core.models.facts import HostFacts
from converge.core.models.plan import Plan
from converge.core.models.resource import Resource, ResourceKind
from converge.core.models.settings import RunSettings

logger = logging.getLogger(__name__)

__all__ = [
    "ConfigError",
    "LoadedPlan",
    "PlanFile",
    "find_plan_file",
    "load_plan_file",
    "load_settings",
]

# Default plan filename
PLAN_FILE = "converge.yml"
ENV_PLAN = "CONVERGE_PLAN"
USER_PLAN = Path("~/.config/converge") / PLAN_FILE


class PlanFile(BaseModel):
    """Raw plan file schema, before facts are applied."""

    version: int = 1
    name: str = ""
    settings: RunSettings = Field(default_factory=RunSettings)
    variables: dict[str, str] = Field(default_factory=dict)
    resources: list[Any] = Field(default_factory=list)


@dataclass
class LoadedPlan:
    """A plan ready to run, plus what went into it."""

    plan: Plan
    settings: RunSettings
    facts: HostFacts
    path: Path | None = None
    dropped: list[str] = field(default_factory=list)   # ids excluded by `when`


def find_plan_file(start_dir: Path | None = None) -> Path | None:
    """Locate the plan file.

    Search order: ``$CONVERGE_PLAN``, then ``converge.yml`` in the
    start directory and each parent, then the per-user plan in
    ``~/.config/converge/``.

    Args:
        start_dir: Directory to start searching from (default: cwd).

    Returns:
        Path to the plan file, or None if not found.
    """
    env_path = os.environ.get(ENV_PLAN)
    if env_path:
        return Path(env_path).expanduser()

    current = (start_dir or Path.cwd()).resolve()
    for _ in range(20):  # safety limit
        candidate = current / PLAN_FILE
        if candidate.is_file():
            return candidate
        parent = current.parent
        if parent == current:
            break  # filesystem root
        current = parent

    user_plan = USER_PLAN.expanduser()
    if user_plan.is_file():
        return user_plan

    return None


def load_plan_file(
    path: Path | None = None,
    facts: HostFacts | None = None,
    detect: Callable[[], HostFacts] | None = None,
) -> LoadedPlan:
    """Load, resolve and validate a plan file.

    Args:
        path: Explicit path to the plan. If None, ``find_plan_file``.
        facts: Host facts to resolve against. If None, detected.
        detect: Detection function (default: inspect this machine).

    Returns:
        LoadedPlan with a validated Plan.

    Raises:
        ConfigError: If the file is missing, unreadable or not YAML.
        PlanError: If resources are invalid or the graph is broken.
    """
    if path is None:
        path = find_plan_file()

    if path is None:
        raise ConfigError(
            f"No {PLAN_FILE} found. Create one, set ${ENV_PLAN}, or pass --plan."
        )

    if not path.is_file():
        raise ConfigError(f"Plan file not found: {path}")

    logger.debug("Loading plan from %s", path)

    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e

    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"Expected a YAML mapping in {path}, got {type(data).__name__}")

    if facts is None:
        if detect is None:
            from converge.core.detection.host import detect_host_facts

            detect = detect_host_facts
        facts = detect()

    loaded = build_plan(data, facts, default_name=path.stem)
    loaded.path = path

    logger.info(
        "Loaded plan '%s' with %d resources (%d excluded by host facts)",
        loaded.plan.name, len(loaded.plan), len(loaded.dropped),
    )
    return loaded


def build_plan(data: Mapping[str, Any], facts: HostFacts, default_name: str = "") -> LoadedPlan:
    """Turn parsed plan data into a LoadedPlan.

    Raises:
        ConfigError: If the top-level structure is invalid.
        PlanError: If resources are invalid or the graph is broken.
    """
    try:
        plan_file = PlanFile.model_validate(dict(data))
    except ValidationError as e:
        raise ConfigError(f"Invalid plan configuration: {e}") from e

    variables = facts.as_variables()
    for name, value in plan_file.variables.items():
        variables[name] = expand(value, variables)

    resources: list[Resource] = []
    errors: list[str] = []
    for position, entry in enumerate(plan_file.resources, start=1):
        if not isinstance(entry, dict):
            errors.append(f"resources[{position}]: expected a mapping")
            continue
        label = entry.get("id") or f"resources[{position}]"
        entry = dict(entry)
        entry["spec"] = expand(entry.get("spec") or {}, variables)
        if entry.get("fallbacks"):
            entry["fallbacks"] = [
                {**fb, "spec": expand(fb.get("spec") or {}, variables)} if isinstance(fb, dict) else fb
                for fb in entry["fallbacks"]
            ]
        try:
            resource = Resource.model_validate(entry)
        except ValidationError as e:
            errors.extend(_validation_messages(label, e))
            continue

        unknown_facts = sorted(set(resource.when) - set(variables))
        if unknown_facts:
            errors.append(f"Resource '{resource.id}': unknown fact(s) in when: {', '.join(unknown_facts)}")
            continue

        resources.append(_with_shell_version(resource, facts))

    if errors:
        raise PlanError(errors)

    kept, dropped = apply_when(resources, variables)
    plan = Plan.from_resources(kept, name=plan_file.name or default_name)
    return LoadedPlan(plan=plan, settings=plan_file.settings, facts=facts, dropped=dropped)


def expand(value: Any, variables: Mapping[str, str]) -> Any:
    """Expand ``${name}`` placeholders in every string of a nested value.

    Unknown placeholders are left as they are.
    """
    if isinstance(value, str):
        return Template(value).safe_substitute(variables)
    if isinstance(value, dict):
        return {k: expand(v, variables) for k, v in value.items()}
    if isinstance(value, list):
        return [expand(v, variables) for v in value]
    return value


def when_matches(resource: Resource, variables: Mapping[str, str]) -> bool:
    """Whether every ``when`` condition holds (case-insensitive)."""
    return all(
        str(variables.get(fact, "")).lower() == str(expected).lower()
        for fact, expected in resource.when.items()
    )


def apply_when(
    resources: list[Resource],
    variables: Mapping[str, str],
) -> tuple[list[Resource], list[str]]:
    """Drop resources whose ``when`` does not hold; remove edges to them.

    Returns:
        (kept resources, dropped ids)
    """
    dropped = [r.id for r in resources if not when_matches(r, variables)]
    if not dropped:
        return resources, []

    gone = set(dropped)
    for rid in dropped:
        logger.info("Excluding '%s': host facts do not match its `when`", rid)

    kept = []
    for r in resources:
        if r.id in gone:
            continue
        if any(d in gone for d in r.depends_on):
            r = r.model_copy(update={"depends_on": tuple(d for d in r.depends_on if d not in gone)})
        kept.append(r)
    return kept, dropped


def _with_shell_version(resource: Resource, facts: HostFacts) -> Resource:
    """Fill the detected GNOME Shell version into extension resources."""
    if resource.kind != ResourceKind.GNOME_EXTENSION or "shell_version" in resource.spec:
        return resource
    return resource.model_copy(update={"spec": {**resource.spec, "shell_version": facts.shell_version}})


def _validation_messages(label: str, error: ValidationError) -> list[str]:
    messages = []
    for item in error.errors():
        loc = ".".join(str(part) for part in item.get("loc", ()))
        where = f"{label}.{loc}" if loc else label
        messages.append(f"Resource '{where}': {item.get('msg', 'invalid')}")
    return messages


def load_settings(path: Path) -> RunSettings:
    """Read only the ``settings:`` block (no host detection).

    Raises:
        ConfigError: If the file cannot be read or is invalid.
    """
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Expected a YAML mapping in {path}, got {type(data).__name__}")

    try:
        return RunSettings.model_validate(data.get("settings") or {})
    except ValidationError as e:
        raise ConfigError(f"Invalid settings in {path}: {e}") from e
