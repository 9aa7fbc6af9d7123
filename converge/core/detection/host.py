"""
Host detection — discover the facts a plan branches on.

Runs once per plan load. Every check tolerates a missing tool or file
and falls back to an empty/unknown value; detection never fails a run.
"""

from __future__ import annotations

import getpass
import logging
import re
from pathlib import Path

from converge.core.models.facts import CpuVendor, HostFacts
from converge.providers.shell.command import run_command

logger = logging.getLogger(__name__)

CPUINFO_PATH = Path("/proc/cpuinfo")
OS_RELEASE_PATHS = (Path("/etc/os-release"), Path("/usr/lib/os-release"))

# vendor_id / "Vendor ID" strings → CpuVendor
_VENDOR_IDS = {
    "genuineintel": CpuVendor.INTEL,
    "authenticamd": CpuVendor.AMD,
}


def parse_cpu_vendor(text: str) -> CpuVendor:
    """Find the CPU vendor in /proc/cpuinfo or ``lscpu`` output."""
    match = re.search(r"^\s*(?:vendor_id|Vendor ID)\s*:\s*(\S+)", text, re.MULTILINE)
    if not match:
        return CpuVendor.UNKNOWN
    return _VENDOR_IDS.get(match.group(1).lower(), CpuVendor.UNKNOWN)


def detect_cpu_vendor(cpuinfo_path: Path | None = None) -> CpuVendor:
    try:
        vendor = parse_cpu_vendor((cpuinfo_path or CPUINFO_PATH).read_text(encoding="utf-8", errors="replace"))
    except OSError:
        vendor = CpuVendor.UNKNOWN

    if vendor == CpuVendor.UNKNOWN:
        result = run_command(["lscpu"], timeout=10)
        if result.ok:
            vendor = parse_cpu_vendor(result.stdout)

    logger.debug("CPU vendor: %s", vendor)
    return vendor


def parse_os_release(text: str) -> dict[str, str]:
    """Parse os-release KEY=value lines (values may be quoted)."""
    fields: dict[str, str] = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        fields[key.strip()] = value.strip().strip("\"'")
    return fields


def detect_os_release(paths: tuple[Path, ...] | None = None) -> tuple[str, str]:
    """Return (os_id, version_id), empty strings when unknown."""
    for path in paths or OS_RELEASE_PATHS:
        try:
            fields = parse_os_release(path.read_text(encoding="utf-8"))
        except OSError:
            continue
        return fields.get("ID", ""), fields.get("VERSION_ID", "")
    return "", ""


def parse_shell_version(text: str) -> str:
    """Major version from ``gnome-shell --version`` ("GNOME Shell 46.2" → "46")."""
    match = re.search(r"GNOME Shell\s+(\d+)", text)
    return match.group(1) if match else ""


def detect_shell_version() -> str:
    result = run_command(["gnome-shell", "--version"], timeout=10)
    if not result.ok:
        logger.debug("GNOME Shell not detected: %s", result.diagnostic)
        return ""
    return parse_shell_version(result.stdout)


def detect_host_facts() -> HostFacts:
    """Detect facts about the running machine."""
    os_id, os_release = detect_os_release()
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = ""

    facts = HostFacts(
        cpu_vendor=detect_cpu_vendor(),
        os_id=os_id,
        os_release=os_release,
        shell_version=detect_shell_version(),
        home=str(Path.home()),
        user=user,
    )
    logger.info(
        "Host: %s %s, cpu=%s, gnome-shell=%s",
        facts.os_id or "?", facts.os_release or "?",
        facts.cpu_vendor, facts.shell_version or "none",
    )
    return facts
