"""
GitCheckout provider — clone a repository, optionally run its installer.

Two shapes:
    dest            persistent checkout (e.g. zsh plugins)
    run + creates   clone into scratch, run an install script, discard
                    (e.g. icon themes shipping an ``install.sh``)

An existing directory that is not a checkout of ``repo`` is never
touched.
"""

from __future__ import annotations

import logging
from pathlib import Path

from converge.core.models.outcome import ApplyResult, ErrorKind, QueryState
from converge.core.models.resource import ResourceKind
from converge.providers.base import Provider, ProviderContext, require_keys
from converge.providers.remote.scratch import scratch_path
from converge.providers.shell.command import (
    CommandResult,
    failure_result,
    run_command,
    shell_command,
    tool_available,
)
from converge.providers.system.command import paths_exist

logger = logging.getLogger(__name__)


def _normalize_url(url: str) -> str:
    url = url.strip().rstrip("/")
    return url[:-4] if url.endswith(".git") else url


class GitCheckoutProvider(Provider):
    """Git checkouts.

    Resource spec:
        repo (str): Clone URL.
        dest (str): Checkout directory (``~`` expanded).
        branch (str): Branch or tag to clone.
        depth (int): Shallow clone depth (default: 1).
        run (str): Shell snippet run inside the checkout after cloning.
        creates (str | list[str]): Satisfied if any path exists
            (required when there is no ``dest``).
    """

    @property
    def kind(self) -> ResourceKind:
        return ResourceKind.GIT_CHECKOUT

    def is_available(self) -> bool:
        return tool_available("git")

    def validate(self, context: ProviderContext) -> tuple[bool, str]:
        ok, msg = require_keys(context, "repo")
        if not ok:
            return ok, msg
        spec = context.spec
        if not spec.get("dest") and not (spec.get("run") and spec.get("creates")):
            return False, "A checkout needs a 'dest', or 'run' with a 'creates' guard"
        depth = spec.get("depth", 1)
        if not isinstance(depth, int) or depth < 0:
            return False, f"Invalid depth: {depth!r}"
        return True, ""

    def query(self, context: ProviderContext) -> QueryState:
        spec = context.spec
        if spec.get("creates"):
            return QueryState.SATISFIED if paths_exist(spec["creates"]) else QueryState.UNSATISFIED

        dest = Path(spec["dest"]).expanduser()
        if not dest.exists():
            return QueryState.UNSATISFIED
        origin = self._origin(dest, context.timeout)
        if origin is None:
            return QueryState.UNKNOWN if not self.is_available() else QueryState.UNSATISFIED
        return QueryState.SATISFIED if origin == _normalize_url(spec["repo"]) else QueryState.UNSATISFIED

    def apply(self, context: ProviderContext) -> ApplyResult:
        spec = context.spec
        if not spec.get("dest"):
            with scratch_path(context.scratch_dir) as workdir:
                return self._clone_and_run(context, workdir / "checkout")

        dest = Path(spec["dest"]).expanduser()
        if dest.exists() and any(dest.iterdir()):
            origin = self._origin(dest, context.timeout)
            if origin != _normalize_url(spec["repo"]):
                return ApplyResult.failure(
                    ErrorKind.EXTERNAL_TOOL_FAILED,
                    f"{dest} exists and is not a checkout of {spec['repo']}; refusing to overwrite",
                )
            if not spec.get("run"):
                return ApplyResult.success(f"{dest} already cloned")
            return self._run(context, dest, "already cloned")

        return self._clone_and_run(context, dest)

    # ── Helpers ─────────────────────────────────────────────────

    def _clone_and_run(self, context: ProviderContext, dest: Path) -> ApplyResult:
        spec = context.spec
        dest.parent.mkdir(parents=True, exist_ok=True)
        result = self._git(self._clone_args(spec, dest), None, context.timeout)
        if not result.ok:
            return failure_result(result, f"git clone {spec['repo']}")
        if spec.get("run"):
            return self._run(context, dest, "cloned")
        return ApplyResult.success(f"cloned {spec['repo']} → {dest}")

    def _run(self, context: ProviderContext, checkout: Path, prefix: str) -> ApplyResult:
        result = run_command(
            shell_command(context.spec["run"]),
            sudo=context.use_sudo(default=False),
            timeout=context.timeout,
            cwd=str(checkout),
        )
        if not result.ok:
            return failure_result(result, "post-clone command")
        return ApplyResult.success(f"{prefix}, ran post-clone command")

    def _clone_args(self, spec: dict, dest: Path) -> list[str]:
        args = ["clone"]
        depth = spec.get("depth", 1)
        if depth:
            args += ["--depth", str(depth)]
        if spec.get("branch"):
            args += ["--branch", spec["branch"]]
        return args + [spec["repo"], str(dest)]

    def _origin(self, dest: Path, timeout: int) -> str | None:
        if not (dest / ".git").exists():
            return None
        result = self._git(["remote", "get-url", "origin"], str(dest), min(timeout, 30))
        if not result.ok:
            return None
        return _normalize_url(result.stdout)

    def _git(self, args: list[str], cwd: str | None, timeout: int) -> CommandResult:
        """Run a git command (never prompts for credentials)."""
        return run_command(
            ["git", *args],
            cwd=cwd,
            timeout=timeout,
            env={"GIT_TERMINAL_PROMPT": "0"},
        )
