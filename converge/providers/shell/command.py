"""
Shell command runner — the SINGLE PLACE where subprocess.run is called.

Every provider that shells out (dnf, rpm, flatpak, gsettings,
systemctl, git, gnome-extensions, guarded commands) goes through
``run_command``. Sudo handling, timeouts, missing binaries and the
classification of diagnostic output into ErrorKinds are centralised
here.

Sudo is non-interactive (``sudo -n``): run converge from a shell that
already holds sudo credentials, or as root. A password prompt shows up
as PERMISSION_DENIED rather than hanging the run.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import subprocess
import time
from dataclasses import dataclass, field

from converge.core.models.outcome import ApplyResult, ErrorKind

logger = logging.getLogger(__name__)

# How much diagnostic output is kept in a failure detail
_DETAIL_MAX_LINES = 20

# ── Failure classification patterns ─────────────────────────────

_PERMISSION_PATTERNS = (
    r"a password is required",
    r"a terminal is required",
    r"not in the sudoers",
    r"permission denied",
    r"operation not permitted",
    r"must be run as root",
    r"superuser privileges",
    r"access denied",
)

_NOT_FOUND_PATTERNS = (
    r"no match for argument",
    r"unable to find a match",
    r"no package .* available",
    r"nothing matches",
    r"no remote refs found",
    r"error: .* not found",
    r"repository .* not found",
    r"no such schema",
    r"no such key",
    r"unit .* does not exist",
    r"unit file .* does not exist",
    r"\b404\b",
)

_NETWORK_PATTERNS = (
    r"could not resolve host",
    r"temporary failure in name resolution",
    r"failed to download metadata",
    r"curl error",
    r"network is unreachable",
    r"could not connect",
    r"connection refused",
    r"connection timed out",
    r"unable to access",
)


@dataclass
class CommandResult:
    """Outcome of one subprocess invocation."""

    command: list[str] = field(default_factory=list)
    returncode: int | None = None
    stdout: str = ""
    stderr: str = ""
    elapsed_ms: int = 0
    timed_out: bool = False
    missing: bool = False           # binary not found

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def diagnostic(self) -> str:
        """Captured output worth showing on failure, trimmed."""
        text = self.stderr.strip() or self.stdout.strip()
        lines = text.splitlines()
        if len(lines) > _DETAIL_MAX_LINES:
            lines = lines[-_DETAIL_MAX_LINES:]
        return "\n".join(lines)


def run_command(
    cmd: list[str],
    *,
    sudo: bool = False,
    timeout: int = 120,
    env: dict[str, str] | None = None,
    cwd: str | None = None,
    input_text: str | None = None,
) -> CommandResult:
    """Run a command and capture its output. Never raises.

    Args:
        cmd: Command list. Shell strings go through ``shell_command``.
        sudo: Prefix with ``sudo -n`` unless already root.
        timeout: Seconds before the command is killed.
        env: Extra environment variables (passed through sudo too).
        cwd: Working directory.
        input_text: Data for stdin.

    Returns:
        CommandResult. ``timed_out`` / ``missing`` flag the non-exit
        failures.
    """
    full_env = os.environ.copy()
    if env:
        for key, value in env.items():
            full_env[key] = os.path.expandvars(str(value))

    if sudo and os.geteuid() != 0:
        prefix = ["sudo", "-n"]
        if env:
            prefix += ["env", *[f"{k}={full_env[k]}" for k in env]]
        cmd = prefix + list(cmd)

    logger.debug("Executing: %s (timeout=%ss)", " ".join(cmd), timeout)
    start = time.monotonic()
    try:
        proc = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=timeout,
            env=full_env,
            cwd=cwd,
            input=input_text,
        )
    except subprocess.TimeoutExpired:
        logger.warning("Command timed out after %ss: %s", timeout, " ".join(cmd))
        return CommandResult(
            command=list(cmd),
            stderr=f"Command timed out after {timeout}s",
            elapsed_ms=int((time.monotonic() - start) * 1000),
            timed_out=True,
        )
    except FileNotFoundError:
        return CommandResult(
            command=list(cmd),
            stderr=f"Command not found: {cmd[0]}",
            missing=True,
        )
    except OSError as e:
        return CommandResult(command=list(cmd), returncode=-1, stderr=f"Command execution error: {e}")

    elapsed_ms = int((time.monotonic() - start) * 1000)
    if proc.returncode != 0:
        logger.debug("Command exited %d: %s", proc.returncode, proc.stderr.strip()[:200])
    return CommandResult(
        command=list(cmd),
        returncode=proc.returncode,
        stdout=proc.stdout,
        stderr=proc.stderr,
        elapsed_ms=elapsed_ms,
    )


def shell_command(script: str) -> list[str]:
    """Wrap a shell snippet for ``run_command``."""
    return ["sh", "-c", script]


def tool_available(binary: str) -> bool:
    return shutil.which(binary) is not None


def classify_failure(result: CommandResult) -> ErrorKind:
    """Map a failed command to an ErrorKind from its diagnostic output."""
    if result.timed_out:
        return ErrorKind.TIMEOUT
    if result.missing:
        return ErrorKind.EXTERNAL_TOOL_FAILED

    text = f"{result.stderr}\n{result.stdout}".lower()
    for patterns, kind in (
        (_PERMISSION_PATTERNS, ErrorKind.PERMISSION_DENIED),
        (_NETWORK_PATTERNS, ErrorKind.NETWORK_UNAVAILABLE),
        (_NOT_FOUND_PATTERNS, ErrorKind.NOT_FOUND),
    ):
        if any(re.search(p, text) for p in patterns):
            return kind
    return ErrorKind.EXTERNAL_TOOL_FAILED


def failure_result(result: CommandResult, action: str) -> ApplyResult:
    """Build a failed ApplyResult from a failed command."""
    kind = classify_failure(result)
    if result.returncode is not None and not result.timed_out:
        summary = f"{action} failed (exit {result.returncode})"
    else:
        summary = f"{action} failed"
    detail = result.diagnostic
    return ApplyResult.failure(
        kind,
        f"{summary}: {detail}" if detail else summary,
        metadata={"command": result.command, "return_code": result.returncode},
    )


def success_result(result: CommandResult, detail: str) -> ApplyResult:
    return ApplyResult.success(
        detail,
        metadata={"command": result.command, "elapsed_ms": result.elapsed_ms},
    )
