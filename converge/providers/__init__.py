"""Providers — bindings between resource kinds and the machine.

Public re-exports for convenient access.
"""

from converge.providers.base import Provider, ProviderContext
from converge.providers.mock import MockProvider
from converge.providers.registry import ProviderRegistry

__all__ = [
    "MockProvider",
    "Provider",
    "ProviderContext",
    "ProviderRegistry",
    "build_registry",
]


def build_registry(mock_mode: bool = False) -> ProviderRegistry:
    """Registry with one provider per resource kind."""
    from converge.providers.files.file_line import FileLineProvider
    from converge.providers.files.repo_file import RepoFileProvider
    from converge.providers.packages.dnf import PackageProvider
    from converge.providers.packages.flatpak import FlatpakAppProvider, FlatpakRemoteProvider
    from converge.providers.remote.download import DownloadProvider
    from converge.providers.remote.gnome_extension import GnomeExtensionProvider
    from converge.providers.settings.gsetting import GSettingProvider
    from converge.providers.system.command import CommandProvider
    from converge.providers.system.service import ServiceProvider
    from converge.providers.vcs.git import GitCheckoutProvider

    registry = ProviderRegistry(mock_mode=mock_mode)
    registry.register(PackageProvider())
    registry.register(RepoFileProvider())
    registry.register(FileLineProvider())
    registry.register(FlatpakAppProvider())
    registry.register(FlatpakRemoteProvider())
    registry.register(GSettingProvider())
    registry.register(ServiceProvider())
    registry.register(CommandProvider())
    registry.register(GitCheckoutProvider())
    registry.register(DownloadProvider())
    registry.register(GnomeExtensionProvider())
    return registry
