"""
RunSettings — engine policy for one run.

Read from the plan file's ``settings:`` block and overridden by CLI
flags.
"""

from __future__ import annotations

from pydantic import BaseModel, Field

DEFAULT_LEDGER_PATH = "~/.local/state/converge/ledger.ndjson"


class RunSettings(BaseModel):
    """How the engine drives a plan."""

    concurrency: int = Field(default=1, ge=1)        # 1 = sequential
    timeout: int = Field(default=600, ge=1)          # per resource, seconds
    fail_fast: bool = False
    dry_run: bool = False
    ledger: str = DEFAULT_LEDGER_PATH
    scratch_dir: str | None = None
