"""
Shared test fixtures and configuration.
"""

import textwrap
from pathlib import Path

import pytest

from converge.core.models import CpuVendor, HostFacts
from converge.providers.registry import ProviderRegistry


@pytest.fixture
def facts() -> HostFacts:
    """A Fedora 42 Intel machine with GNOME Shell 48."""
    return HostFacts(
        cpu_vendor=CpuVendor.INTEL,
        os_id="fedora",
        os_release="42",
        shell_version="48",
        home="/home/tester",
        user="tester",
    )


@pytest.fixture
def mock_registry() -> ProviderRegistry:
    """Registry serving every kind with a MockProvider."""
    return ProviderRegistry(mock_mode=True)


@pytest.fixture
def write_plan(tmp_path: Path):
    """Write a plan file into tmp_path and return its path."""

    def _write(body: str, name: str = "converge.yml") -> Path:
        path = tmp_path / name
        path.write_text(textwrap.dedent(body), encoding="utf-8")
        return path

    return _write
