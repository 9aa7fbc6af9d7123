"""
File helpers — timestamped backup and atomic replace.

Writes never leave a half-written target: content goes to a temp file
in the target's directory and is renamed into place. Any pre-existing
file is first copied to ``PATH.bak.YYYYMMDD_HHMMSS``; a second backup
in the same second gets a ``.N`` suffix, never overwriting an earlier one.

When the resource asks for sudo (and we are not root) the same steps
run through ``sudo -n cp``/``install``/``mv``.
"""

from __future__ import annotations

import itertools
import logging
import os
import shutil
import tempfile
import time
from collections.abc import Iterator
from pathlib import Path

from converge.core.models.outcome import ErrorKind
from converge.providers.shell.command import classify_failure, run_command

logger = logging.getLogger(__name__)

DEFAULT_MODE = 0o644


class FileOpError(Exception):
    """A file operation failed; carries the ErrorKind for the outcome."""

    def __init__(self, error_kind: ErrorKind, detail: str):
        self.error_kind = error_kind
        self.detail = detail
        super().__init__(detail)


def _needs_sudo(sudo: bool) -> bool:
    return sudo and os.geteuid() != 0


def read_current(path: Path) -> str | None:
    """Current content of ``path``, or None if it does not exist.

    Line endings are returned untranslated.

    Raises:
        PermissionError: If the file exists but cannot be read.
    """
    if not path.exists():
        return None
    with open(path, encoding="utf-8", newline="") as f:
        return f.read()


def _backup_candidates(path: Path) -> Iterator[Path]:
    stem = f"{path.name}.bak.{time.strftime('%Y%m%d_%H%M%S')}"
    yield path.with_name(stem)
    for n in itertools.count(1):
        yield path.with_name(f"{stem}.{n}")


def _reserve_backup(path: Path) -> Path:
    """Create an empty backup file under a name nobody has used yet."""
    for candidate in _backup_candidates(path):
        try:
            fd = os.open(candidate, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        except FileExistsError:
            continue
        os.close(fd)
        return candidate


def backup_file(path: Path, *, sudo: bool = False, timeout: int = 60) -> Path | None:
    """Copy ``path`` to a timestamped sibling before it is replaced.

    Returns:
        The backup path, or None if there was nothing to back up.

    Raises:
        FileOpError: If the copy fails.
    """
    if not path.exists():
        return None

    if _needs_sudo(sudo):
        backup = next(c for c in _backup_candidates(path) if not c.exists())
        result = run_command(["cp", "-p", "--no-clobber", str(path), str(backup)], sudo=True, timeout=timeout)
        if not result.ok:
            raise FileOpError(classify_failure(result), f"backup of {path} failed: {result.diagnostic}")
    else:
        try:
            backup = _reserve_backup(path)
            shutil.copy2(path, backup)
        except PermissionError as e:
            raise FileOpError(ErrorKind.PERMISSION_DENIED, f"backup of {path} failed: {e}") from e
        except OSError as e:
            raise FileOpError(ErrorKind.EXTERNAL_TOOL_FAILED, f"backup of {path} failed: {e}") from e

    logger.info("Backed up %s → %s", path, backup)
    return backup


def remove_file(path: Path, *, sudo: bool = False, timeout: int = 60) -> None:
    """Delete ``path``; a missing file is not an error.

    Raises:
        FileOpError: If the file exists and cannot be removed.
    """
    if _needs_sudo(sudo):
        result = run_command(["rm", "-f", str(path)], sudo=True, timeout=timeout)
        if not result.ok:
            raise FileOpError(classify_failure(result), f"cannot remove {path}: {result.diagnostic}")
        return

    try:
        path.unlink(missing_ok=True)
    except PermissionError as e:
        raise FileOpError(ErrorKind.PERMISSION_DENIED, f"cannot remove {path}: {e}") from e
    except OSError as e:
        raise FileOpError(ErrorKind.EXTERNAL_TOOL_FAILED, f"cannot remove {path}: {e}") from e
    logger.debug("Removed %s", path)


def atomic_write(
    path: Path,
    content: str,
    *,
    mode: int | None = None,
    sudo: bool = False,
    timeout: int = 60,
) -> None:
    """Replace ``path`` with ``content`` atomically.

    Mode defaults to the existing file's mode, else 0644.

    Raises:
        FileOpError: If any step fails. The target is left untouched.
    """
    if mode is None:
        mode = (path.stat().st_mode & 0o7777) if path.exists() else DEFAULT_MODE

    if _needs_sudo(sudo):
        _atomic_write_sudo(path, content, mode, timeout)
        return

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    except PermissionError as e:
        raise FileOpError(ErrorKind.PERMISSION_DENIED, f"cannot write {path}: {e}") from e
    except OSError as e:
        raise FileOpError(ErrorKind.EXTERNAL_TOOL_FAILED, f"cannot write {path}: {e}") from e

    tmp = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
            f.write(content)
        os.chmod(tmp, mode)
        os.replace(tmp, path)
        logger.debug("Wrote %s (%d bytes)", path, len(content))
    except PermissionError as e:
        tmp.unlink(missing_ok=True)
        raise FileOpError(ErrorKind.PERMISSION_DENIED, f"cannot write {path}: {e}") from e
    except OSError as e:
        tmp.unlink(missing_ok=True)
        raise FileOpError(ErrorKind.EXTERNAL_TOOL_FAILED, f"cannot write {path}: {e}") from e


def _atomic_write_sudo(path: Path, content: str, mode: int, timeout: int) -> None:
    """Stage as the current user, then install + rename as root."""
    fd, staged_name = tempfile.mkstemp(prefix="converge-", suffix=".tmp")
    staged = Path(staged_name)
    sibling = path.with_name(f".{path.name}.converge-tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
            f.write(content)

        steps = [
            ["install", "-D", "-m", f"{mode:o}", str(staged), str(sibling)],
            ["mv", "-f", str(sibling), str(path)],
        ]
        for cmd in steps:
            result = run_command(cmd, sudo=True, timeout=timeout)
            if not result.ok:
                run_command(["rm", "-f", str(sibling)], sudo=True, timeout=timeout)
                raise FileOpError(classify_failure(result), f"cannot write {path}: {result.diagnostic}")
    finally:
        staged.unlink(missing_ok=True)


def install_file(
    src: Path,
    dest: Path,
    *,
    mode: int = 0o755,
    sudo: bool = False,
    timeout: int = 60,
) -> None:
    """Copy a staged file into place atomically with ``mode``.

    Raises:
        FileOpError: If the copy fails.
    """
    if _needs_sudo(sudo):
        sibling = dest.with_name(f".{dest.name}.converge-tmp")
        for cmd in (
            ["install", "-D", "-m", f"{mode:o}", str(src), str(sibling)],
            ["mv", "-f", str(sibling), str(dest)],
        ):
            result = run_command(cmd, sudo=True, timeout=timeout)
            if not result.ok:
                run_command(["rm", "-f", str(sibling)], sudo=True, timeout=timeout)
                raise FileOpError(classify_failure(result), f"cannot install {dest}: {result.diagnostic}")
        return

    try:
        dest.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=dest.parent, prefix=f".{dest.name}.", suffix=".tmp")
        os.close(fd)
    except PermissionError as e:
        raise FileOpError(ErrorKind.PERMISSION_DENIED, f"cannot install {dest}: {e}") from e
    except OSError as e:
        raise FileOpError(ErrorKind.EXTERNAL_TOOL_FAILED, f"cannot install {dest}: {e}") from e

    tmp = Path(tmp_name)
    try:
        shutil.copyfile(src, tmp)
        os.chmod(tmp, mode)
        os.replace(tmp, dest)
    except PermissionError as e:
        tmp.unlink(missing_ok=True)
        raise FileOpError(ErrorKind.PERMISSION_DENIED, f"cannot install {dest}: {e}") from e
    except OSError as e:
        tmp.unlink(missing_ok=True)
        raise FileOpError(ErrorKind.EXTERNAL_TOOL_FAILED, f"cannot install {dest}: {e}") from e
