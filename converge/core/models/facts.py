"""
Host facts — properties of the machine, detected once per plan.

Plans branch on these (``when: {cpu_vendor: amd}``) and interpolate
them (``${os_release}``) at construction time. Providers never
re-detect them.
"""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, ConfigDict


class CpuVendor(StrEnum):
    INTEL = "intel"
    AMD = "amd"
    UNKNOWN = "unknown"


class HostFacts(BaseModel):
    """Detected host properties."""

    model_config = ConfigDict(frozen=True)

    cpu_vendor: CpuVendor = CpuVendor.UNKNOWN
    os_id: str = ""
    os_release: str = ""            # e.g. "42" on Fedora 42
    shell_version: str = ""         # GNOME Shell major version, "" if none
    home: str = ""
    user: str = ""

    def as_variables(self) -> dict[str, str]:
        """Facts as ``${name}`` substitution variables."""
        return {
            "cpu_vendor": self.cpu_vendor.value,
            "os_id": self.os_id,
            "os_release": self.os_release,
            "shell_version": self.shell_version,
            "home": self.home,
            "user": self.user,
        }
