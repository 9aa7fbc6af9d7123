"""
Scratch paths — temporary working directories with guaranteed cleanup.

Downloads, clones and extension zips land in a fresh directory that is
removed when the ``with`` block exits, on success, failure or
exception alike.
"""

from __future__ import annotations

import logging
import shutil
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

logger = logging.getLogger(__name__)


@contextmanager
def scratch_path(scratch_dir: str | None = None, prefix: str = "converge-") -> Iterator[Path]:
    """Yield a fresh directory under ``scratch_dir`` (default: system temp)."""
    base = None
    if scratch_dir:
        base = Path(scratch_dir).expanduser()
        base.mkdir(parents=True, exist_ok=True)

    workdir = Path(tempfile.mkdtemp(prefix=prefix, dir=base))
    logger.debug("Scratch directory: %s", workdir)
    try:
        yield workdir
    finally:
        shutil.rmtree(workdir, ignore_errors=True)
        if workdir.exists():
            logger.warning("Scratch directory not fully removed: %s", workdir)
