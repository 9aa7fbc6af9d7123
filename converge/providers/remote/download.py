"""
Download provider — fetch a file, then install it and/or run it.

Covers single-binary installs (download to ``/usr/bin/x``, chmod +x)
and vendor install scripts (download, run with ``sh {path}``). The
download always lands in a scratch directory that is removed
afterwards.
"""

from __future__ import annotations

import hashlib
import logging
import shutil
from pathlib import Path
from urllib.parse import urlparse

from converge.core.models.outcome import ApplyResult, ErrorKind, QueryState
from converge.core.models.resource import ResourceKind
from converge.providers.base import Provider, ProviderContext, require_keys
from converge.providers.files.atomic import FileOpError, install_file
from converge.providers.files.repo_file import parse_mode
from converge.providers.remote import http
from converge.providers.remote.scratch import scratch_path
from converge.providers.shell.command import failure_result, run_command, shell_command
from converge.providers.system.command import paths_exist

logger = logging.getLogger(__name__)


def verify_checksum(path: Path, expected: str) -> bool:
    """Verify a file checksum. Format: ``algo:hex`` (sha256, sha1, md5)."""
    algo, expected_hash = expected.split(":", 1)
    h = hashlib.new(algo)
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            h.update(chunk)
    return h.hexdigest() == expected_hash.lower()


class DownloadProvider(Provider):
    """Download a file and install or run it.

    Resource spec:
        url (str): What to fetch.
        dest (str): Install the file here (``~`` expanded).
        mode (str): Octal mode for ``dest`` (default: ``"0755"``).
        checksum (str): ``sha256:<hex>`` to verify before use.
        run (str): Shell snippet run after download; ``{path}`` is the
            downloaded file.
        env (dict): Extra environment for ``run``.
        binary (str): Satisfied if this executable is on PATH.
        creates (str | list[str]): Satisfied if any path exists.

    Either ``dest`` or ``run`` is required; ``run`` without ``dest``
    needs a ``binary`` or ``creates`` guard.
    """

    def __init__(self, downloader=None):
        self._download = downloader or http.download

    @property
    def kind(self) -> ResourceKind:
        return ResourceKind.DOWNLOAD

    def is_available(self) -> bool:
        return True

    def validate(self, context: ProviderContext) -> tuple[bool, str]:
        ok, msg = require_keys(context, "url")
        if not ok:
            return ok, msg
        spec = context.spec
        if not spec.get("dest") and not spec.get("run"):
            return False, "A download needs a 'dest' or a 'run' command"
        if not spec.get("dest") and not (spec.get("binary") or spec.get("creates")):
            return False, "A run-only download needs a 'binary' or 'creates' guard"
        checksum = spec.get("checksum")
        if checksum:
            algo = checksum.split(":", 1)[0]
            if ":" not in checksum or algo not in hashlib.algorithms_available:
                return False, f"Invalid checksum {checksum!r}; expected 'algo:hex'"
        try:
            parse_mode(spec.get("mode"))
        except ValueError:
            return False, f"Invalid mode: {spec.get('mode')!r}"
        return True, ""

    def query(self, context: ProviderContext) -> QueryState:
        spec = context.spec
        if spec.get("binary"):
            return QueryState.SATISFIED if shutil.which(spec["binary"]) else QueryState.UNSATISFIED
        if spec.get("creates"):
            return QueryState.SATISFIED if paths_exist(spec["creates"]) else QueryState.UNSATISFIED

        dest = Path(spec["dest"]).expanduser()
        if not dest.is_file():
            return QueryState.UNSATISFIED
        if spec.get("checksum"):
            try:
                return QueryState.SATISFIED if verify_checksum(dest, spec["checksum"]) else QueryState.UNSATISFIED
            except OSError:
                return QueryState.UNKNOWN
        return QueryState.SATISFIED

    def apply(self, context: ProviderContext) -> ApplyResult:
        spec = context.spec
        url = spec["url"]
        sudo = context.use_sudo(default=False)

        with scratch_path(context.scratch_dir) as workdir:
            target = workdir / (Path(urlparse(url).path).name or "download")
            try:
                size = self._download(url, target, timeout=context.timeout)
            except http.RemoteError as e:
                return ApplyResult.failure(e.error_kind, f"download failed: {e.detail}")

            if spec.get("checksum") and not verify_checksum(target, spec["checksum"]):
                return ApplyResult.failure(ErrorKind.EXTERNAL_TOOL_FAILED, f"checksum mismatch for {url}")

            steps: list[str] = [f"downloaded {size} bytes"]

            if spec.get("dest"):
                dest = Path(spec["dest"]).expanduser()
                try:
                    install_file(
                        target,
                        dest,
                        mode=parse_mode(spec.get("mode")) or 0o755,
                        sudo=sudo,
                        timeout=context.timeout,
                    )
                except FileOpError as e:
                    return ApplyResult.failure(e.error_kind, e.detail)
                steps.append(f"installed {dest}")

            if spec.get("run"):
                script = spec["run"].replace("{path}", str(target))
                logger.info("%s: running %s", context.resource_id, script)
                result = run_command(
                    shell_command(script),
                    sudo=sudo,
                    timeout=context.timeout,
                    env=spec.get("env"),
                    cwd=str(workdir),
                )
                if not result.ok:
                    return failure_result(result, "install script")
                steps.append("ran install script")

        return ApplyResult.success(", ".join(steps), metadata={"url": url})

    def describe(self, context: ProviderContext) -> str:
        return f"download {context.spec.get('url', '?')}"
