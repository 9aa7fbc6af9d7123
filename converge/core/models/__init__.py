"""
Domain models — pydantic types for plans, resources and outcomes.

All models are re-exported here for convenient access:

    from converge.core.models import Plan, Resource, Outcome, RunSummary
"""

from converge.core.models.facts import CpuVendor, HostFacts
from converge.core.models.outcome import (
    ApplyResult,
    Attempt,
    ErrorKind,
    Outcome,
    OutcomeStatus,
    QueryState,
    SkipReason,
)
from converge.core.models.plan import Plan
from converge.core.models.resource import Fallback, Resource, ResourceKind
from converge.core.models.settings import RunSettings
from converge.core.models.summary import FailedResource, RunSummary

__all__ = [
    # facts.py
    "CpuVendor",
    "HostFacts",
    # outcome.py
    "ApplyResult",
    "Attempt",
    "ErrorKind",
    "Outcome",
    "OutcomeStatus",
    "QueryState",
    "SkipReason",
    # plan.py
    "Plan",
    # resource.py
    "Fallback",
    "Resource",
    "ResourceKind",
    # settings.py
    "RunSettings",
    # summary.py
    "FailedResource",
    "RunSummary",
]
