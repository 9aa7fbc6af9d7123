"""
Flatpak providers — applications and remotes.
"""

from __future__ import annotations

import logging

from converge.core.models.outcome import ApplyResult, QueryState
from converge.core.models.resource import ResourceKind
from converge.providers.base import Provider, ProviderContext, require_keys
from converge.providers.shell.command import (
    failure_result,
    run_command,
    success_result,
    tool_available,
)

logger = logging.getLogger(__name__)


def _scope(context: ProviderContext) -> str:
    return "--user" if context.spec.get("user") else "--system"


class FlatpakAppProvider(Provider):
    """Install Flatpak applications.

    Resource spec:
        app_id (str): Application id, e.g. ``org.mozilla.firefox``.
        remote (str): Remote to install from (default: ``flathub``).
        user (bool): Per-user installation (default: system).
    """

    @property
    def kind(self) -> ResourceKind:
        return ResourceKind.FLATPAK_APP

    def is_available(self) -> bool:
        return tool_available("flatpak")

    def validate(self, context: ProviderContext) -> tuple[bool, str]:
        return require_keys(context, "app_id")

    def query(self, context: ProviderContext) -> QueryState:
        result = run_command(
            ["flatpak", "info", _scope(context), context.spec["app_id"]],
            timeout=min(context.timeout, 60),
        )
        if result.missing or result.timed_out:
            return QueryState.UNKNOWN
        return QueryState.SATISFIED if result.ok else QueryState.UNSATISFIED

    def apply(self, context: ProviderContext) -> ApplyResult:
        app_id = context.spec["app_id"]
        remote = context.spec.get("remote", "flathub")
        action = f"flatpak install {remote} {app_id}"
        logger.info("%s: %s", context.resource_id, action)
        result = run_command(
            ["flatpak", "install", "-y", "--noninteractive", _scope(context), remote, app_id],
            sudo=context.use_sudo(default=False),
            timeout=context.timeout,
        )
        if not result.ok:
            return failure_result(result, action)
        return success_result(result, f"{action} ok")

    def describe(self, context: ProviderContext) -> str:
        return f"install flatpak {context.spec.get('app_id', '?')}"


class FlatpakRemoteProvider(Provider):
    """Configure Flatpak remotes.

    Resource spec:
        name (str): Remote name, e.g. ``flathub``.
        url (str): ``.flatpakrepo`` URL.
        user (bool): Per-user remote (default: system).
    """

    @property
    def kind(self) -> ResourceKind:
        return ResourceKind.FLATPAK_REMOTE

    def is_available(self) -> bool:
        return tool_available("flatpak")

    def validate(self, context: ProviderContext) -> tuple[bool, str]:
        return require_keys(context, "name", "url")

    def query(self, context: ProviderContext) -> QueryState:
        result = run_command(
            ["flatpak", "remote-list", _scope(context), "--columns=name"],
            timeout=min(context.timeout, 60),
        )
        if not result.ok:
            return QueryState.UNKNOWN
        names = {line.strip() for line in result.stdout.splitlines()}
        return QueryState.SATISFIED if context.spec["name"] in names else QueryState.UNSATISFIED

    def apply(self, context: ProviderContext) -> ApplyResult:
        name, url = context.spec["name"], context.spec["url"]
        action = f"flatpak remote-add {name}"
        result = run_command(
            ["flatpak", "remote-add", "--if-not-exists", _scope(context), name, url],
            sudo=context.use_sudo(default=False),
            timeout=context.timeout,
        )
        if not result.ok:
            return failure_result(result, action)
        return success_result(result, f"{action} ok")
