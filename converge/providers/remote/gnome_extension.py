"""
GnomeExtension provider — install GNOME Shell extensions from
extensions.gnome.org for the running shell version.

Apply is a linear pipeline:
    1. lookup    search term → numeric extension id
    2. resolve   id + shell version → download location
    3. download  zip into a scratch directory
    4. install   ``gnome-extensions install --force``, then enable
    5. cleanup   scratch removed on every path (``finally``)

Missing data at steps 1–4 is NOT_FOUND naming the step; network
problems are NETWORK_UNAVAILABLE. One attempt per run, no retries.

Enabling goes through the ``org.gnome.shell enabled-extensions`` key
so it takes effect even before the shell has loaded the new
extension.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any
from urllib.parse import quote, urljoin

from converge.core.models.outcome import ApplyResult, ErrorKind, QueryState
from converge.core.models.resource import ResourceKind
from converge.providers.base import Provider, ProviderContext, require_keys
from converge.providers.remote import http
from converge.providers.remote.scratch import scratch_path
from converge.providers.settings.gsetting import parse_gvariant, to_gvariant
from converge.providers.shell.command import (
    CommandResult,
    failure_result,
    run_command,
    tool_available,
)

logger = logging.getLogger(__name__)

EXTENSIONS_SITE = "https://extensions.gnome.org"

_EXTENSION_DIRS = (
    "~/.local/share/gnome-shell/extensions",
    "/usr/share/gnome-shell/extensions",
)


def find_extension_id(data: Any, uuid: str, name: str | None = None) -> int | None:
    """Pick the numeric id of ``uuid`` (or ``name``) from a search response."""
    if not isinstance(data, dict):
        return None
    extensions = [ext for ext in data.get("extensions") or [] if isinstance(ext, dict)]
    for ext in extensions:
        if ext.get("uuid") == uuid and _pk(ext) is not None:
            return _pk(ext)
    if name:
        for ext in extensions:
            if str(ext.get("name", "")).lower() == name.lower() and _pk(ext) is not None:
                return _pk(ext)
    return None


def _pk(ext: dict) -> int | None:
    """Numeric id of a search entry; None when missing or malformed."""
    try:
        return int(ext["pk"])
    except (KeyError, TypeError, ValueError):
        return None


class GnomeExtensionProvider(Provider):
    """Install and enable GNOME Shell extensions.

    Resource spec:
        uuid (str): Extension uuid, e.g. ``dash-to-dock@micxgx.gmail.com``.
        name (str): Search term / display name (default: uuid).
        shell_version (str): GNOME Shell major version; filled from host
            facts when the plan is built.
        enable (bool): Enable after install (default: True).
    """

    def __init__(
        self,
        fetch_json: Callable[..., Any] | None = None,
        downloader: Callable[..., int] | None = None,
        runner: Callable[..., CommandResult] | None = None,
        site: str = EXTENSIONS_SITE,
    ):
        self._fetch_json = fetch_json or http.fetch_json
        self._download = downloader or http.download
        self._run = runner or run_command
        self._site = site.rstrip("/")

    @property
    def kind(self) -> ResourceKind:
        return ResourceKind.GNOME_EXTENSION

    def is_available(self) -> bool:
        return tool_available("gnome-extensions")

    def validate(self, context: ProviderContext) -> tuple[bool, str]:
        return require_keys(context, "uuid")

    # ── Query ───────────────────────────────────────────────────

    def query(self, context: ProviderContext) -> QueryState:
        uuid = context.spec["uuid"]
        installed = any((Path(d).expanduser() / uuid).is_dir() for d in _EXTENSION_DIRS)
        if not installed:
            return QueryState.UNSATISFIED
        if not context.spec.get("enable", True):
            return QueryState.SATISFIED

        enabled = self._enabled_extensions(context.timeout)
        if enabled is None:
            return QueryState.UNKNOWN
        return QueryState.SATISFIED if uuid in enabled else QueryState.UNSATISFIED

    def _enabled_extensions(self, timeout: int) -> list[str] | None:
        result = self._run(
            ["gsettings", "get", "org.gnome.shell", "enabled-extensions"],
            timeout=min(timeout, 30),
        )
        if not result.ok:
            return None
        value = parse_gvariant(result.stdout)
        return value if isinstance(value, list) else None

    # ── Apply ───────────────────────────────────────────────────

    def apply(self, context: ProviderContext) -> ApplyResult:
        spec = context.spec
        uuid = spec["uuid"]
        shell_version = str(spec.get("shell_version") or "")
        if not shell_version:
            return ApplyResult.failure(
                ErrorKind.NOT_FOUND, "step 2 (resolve): GNOME Shell version not detected"
            )

        with scratch_path(context.scratch_dir) as workdir:
            # 1. lookup
            term = spec.get("name") or uuid
            try:
                found = self._fetch_json(
                    f"{self._site}/extension-query/?search={quote(term)}",
                    timeout=context.timeout,
                )
            except http.RemoteError as e:
                return ApplyResult.failure(e.error_kind, f"step 1 (lookup): {e.detail}")
            ext_id = find_extension_id(found, uuid, spec.get("name"))
            if ext_id is None:
                return ApplyResult.failure(
                    ErrorKind.NOT_FOUND, f"step 1 (lookup): no extension matching '{term}'"
                )

            # 2. resolve
            try:
                info = self._fetch_json(
                    f"{self._site}/extension-info/?pk={ext_id}&shell_version={quote(shell_version)}",
                    timeout=context.timeout,
                )
            except http.RemoteError as e:
                if e.error_kind == ErrorKind.NOT_FOUND:
                    return ApplyResult.failure(
                        ErrorKind.NOT_FOUND,
                        f"step 2 (resolve): no release of {uuid} for GNOME Shell {shell_version}",
                    )
                return ApplyResult.failure(e.error_kind, f"step 2 (resolve): {e.detail}")
            download_path = info.get("download_url") if isinstance(info, dict) else None
            if not download_path:
                return ApplyResult.failure(
                    ErrorKind.NOT_FOUND,
                    f"step 2 (resolve): no release of {uuid} for GNOME Shell {shell_version}",
                )

            # 3. download
            archive = workdir / f"{uuid}.zip"
            try:
                self._download(urljoin(self._site + "/", download_path), archive, timeout=context.timeout)
            except http.RemoteError as e:
                kind = ErrorKind.NOT_FOUND if e.error_kind == ErrorKind.NOT_FOUND else e.error_kind
                return ApplyResult.failure(kind, f"step 3 (download): {e.detail}")
            if not archive.is_file() or archive.stat().st_size == 0:
                return ApplyResult.failure(ErrorKind.NOT_FOUND, "step 3 (download): empty archive")

            # 4. install
            result = self._run(
                ["gnome-extensions", "install", "--force", str(archive)],
                timeout=context.timeout,
            )
            if not result.ok:
                return failure_result(result, "step 4 (install)")

        if spec.get("enable", True):
            enabled = self._enable(uuid, context.timeout)
            if not enabled.ok:
                return enabled
            return ApplyResult.success(f"installed and enabled {uuid} (id {ext_id})", metadata={"id": ext_id})
        return ApplyResult.success(f"installed {uuid} (id {ext_id})", metadata={"id": ext_id})

    def _enable(self, uuid: str, timeout: int) -> ApplyResult:
        current = self._enabled_extensions(timeout)
        if current is None:
            return ApplyResult.failure(
                ErrorKind.EXTERNAL_TOOL_FAILED, f"installed {uuid} but cannot read enabled-extensions"
            )
        if uuid in current:
            return ApplyResult.success(f"{uuid} already enabled")
        result = self._run(
            ["gsettings", "set", "org.gnome.shell", "enabled-extensions", to_gvariant(current + [uuid])],
            timeout=min(timeout, 30),
        )
        if not result.ok:
            failure = failure_result(result, f"enable {uuid}")
            failure.error_kind = ErrorKind.EXTERNAL_TOOL_FAILED
            return failure
        return ApplyResult.success(f"enabled {uuid}")

    def describe(self, context: ProviderContext) -> str:
        return f"install extension {context.spec.get('uuid', '?')}"
