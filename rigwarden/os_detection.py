"""
RigWarden OS / environment detection
Which platform we are on, what the CPU can do, and the environment profile
used for the flightsheet's compatibility-only adjustments.
"""

import logging
import os
import platform
import re
import threading

from rigwarden.errors import ProbeFailure
from rigwarden.models import EnvironmentProfile, SystemType
from rigwarden.shell import CommandRunner

logger = logging.getLogger(__name__)

TERMUX_MARKER = "/data/data/com.termux/files/usr/bin/termux-info"
RASPI_MARKER = "/usr/bin/raspi-config"


def detect_os(runner):
    if runner.exists(TERMUX_MARKER):
        return SystemType.termux
    if runner.exists(RASPI_MARKER):
        return SystemType.raspberry_pi
    if platform.system().lower() == "linux":
        return SystemType.linux
    return SystemType.unknown


def is_mobile_constrained(runner):
    """Termux / Android, judged from the environment the agent was started in."""
    prefix = runner.env("PREFIX", "") or ""
    return bool(
        "termux" in prefix
        or runner.env("TERMUX_VERSION")
        or runner.env("ANDROID_DATA")
        or runner.env("ANDROID_ROOT")
    )


def is_64bit(runner):
    try:
        arch = runner.output("uname -m")
    except ProbeFailure:
        arch = platform.machine()
    if arch in ("aarch64", "arm64", "x86_64", "amd64"):
        return True
    try:
        return runner.output("getconf LONG_BIT") == "64"
    except ProbeFailure:
        return False


def cpu_info(runner):
    """Architecture, model, core count and AES / PMULL support."""
    info = {
        "architecture": "64-bit" if is_64bit(runner) else "32-bit",
        "model": "Unknown",
        "cores": 0,
        "aesSupport": False,
        "pmullSupport": False,
    }
    try:
        text = runner.output("lscpu")
        lower = text.lower()
        cores = re.search(r"^cpu\(s\):\s+(\d+)", lower, re.M)
        if cores:
            info["cores"] = int(cores.group(1))
        model = re.search(r"^model name:\s+(.+)$", text, re.M | re.I)
        if model:
            info["model"] = model.group(1).strip()
    except ProbeFailure as e:
        logger.debug(f"[OS] lscpu failed, trying /proc/cpuinfo: {e}")
        try:
            lower = runner.read_file("/proc/cpuinfo").lower()
        except ProbeFailure:
            lower = ""
    info["aesSupport"] = bool(re.search(r"\baes\b", lower))
    info["pmullSupport"] = "pmull" in lower
    if not info["cores"]:
        info["cores"] = os.cpu_count() or 0
    return info


def total_memory_bytes(runner):
    try:
        meminfo = runner.read_file("/proc/meminfo")
    except ProbeFailure:
        return 0
    match = re.search(r"^MemTotal:\s+(\d+)\s*kB", meminfo, re.M)
    return int(match.group(1)) * 1024 if match else 0


def has_root(runner, mobile):
    if mobile:
        return runner.succeeds("command -v su")
    return hasattr(os, "geteuid") and os.geteuid() == 0


def has_huge_pages(runner):
    try:
        return "hugepage" in runner.read_file("/proc/meminfo").lower()
    except ProbeFailure:
        return False


class EnvironmentDetector:
    """Computes the EnvironmentProfile once and keeps it for the process lifetime."""

    def __init__(self, runner=None):
        self.runner = runner or CommandRunner()
        self._profile = None
        self._lock = threading.Lock()

    def profile(self) -> EnvironmentProfile:
        with self._lock:
            if self._profile is None:
                self._profile = self._detect()
                logger.info(f"[OS] {self._profile.summary()}")
            return self._profile

    def _detect(self):
        mobile = is_mobile_constrained(self.runner)
        return EnvironmentProfile(
            is_mobile_constrained=mobile,
            is_linux=platform.system().lower() == "linux",
            total_memory=total_memory_bytes(self.runner),
            cpu_cores=os.cpu_count() or 1,
            has_root=has_root(self.runner, mobile),
            has_huge_page_support=has_huge_pages(self.runner),
            architecture=platform.machine() or "unknown",
        )
