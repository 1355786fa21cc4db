"""
RigWarden Device info probes
Brand/model, OS version, per-core CPU metadata, temperature, memory,
storage and uptime. Every reader degrades to a static value on its own.
"""

import logging
import os
import platform
import re
import shutil

from rigwarden.config import VCGENCMD_PATH
from rigwarden.errors import ProbeFailure
from rigwarden.models import CpuCore, DeviceInfo, SystemType
from rigwarden.shell import CommandRunner

logger = logging.getLogger(__name__)

DEVICETREE_MODEL = "/sys/firmware/devicetree/base/model"
THERMAL_ZONE = "/sys/class/thermal/thermal_zone0/temp"


def _first_float(pattern, text):
    match = re.search(pattern, text)
    return float(match.group(1)) if match else None


def parse_lscpu_cores(text):
    """Expand lscpu's per-cluster groups into one CpuCore per core.

    big.LITTLE SoCs report several ``Model name:`` blocks, each with its own
    MHz range and ``Core(s) per socket:`` count.
    """
    groups = []
    current = None
    for line in text.splitlines():
        key, _, value = line.strip().partition(":")
        value = value.strip()
        if key == "Model name":
            current = {"model": value, "max": 0.0, "min": 0.0, "cores": 0}
            groups.append(current)
        elif current is None:
            continue
        elif key == "CPU max MHz":
            current["max"] = float(value or 0)
        elif key == "CPU min MHz":
            current["min"] = float(value or 0)
        elif key == "Core(s) per socket":
            current["cores"] = int(value or 0)

    cores = []
    for group in groups:
        for _ in range(group["cores"]):
            cores.append(CpuCore(
                model=group["model"], core_id=len(cores),
                max_mhz=group["max"], min_mhz=group["min"],
            ))
    return cores


def parse_cpuinfo_cores(text):
    cores = []
    model = "Unknown CPU"
    for block in text.strip().split("\n\n"):
        fields = {}
        for line in block.splitlines():
            key, _, value = line.partition(":")
            fields[key.strip().lower()] = value.strip()
        if "processor" not in fields:
            continue
        model = fields.get("model name") or fields.get("hardware") or model
        mhz = float(fields.get("cpu mhz") or 0)
        cores.append(CpuCore(
            model=model, core_id=int(fields["processor"]),
            max_mhz=mhz, min_mhz=round(mhz * 0.3),
        ))
    return cores


class HardwareProbe:
    """Reads device metadata for one system type."""

    def __init__(self, runner=None, system_type=SystemType.linux):
        self.runner = runner or CommandRunner()
        self.system_type = system_type

    @property
    def is_termux(self):
        return self.system_type == SystemType.termux

    def _su_fallback(self, cmd):
        try:
            out = self.runner.output(cmd)
            if out:
                return out
        except ProbeFailure:
            pass
        try:
            return self.runner.output(f'su -c "{cmd}"') or "Unknown"
        except ProbeFailure:
            return "Unknown"

    # ── Identity ────────────────────────────────────────────

    def brand(self):
        if self.is_termux:
            return self._su_fallback("getprop ro.product.brand")
        try:
            if self.runner.exists(DEVICETREE_MODEL):
                model = self.runner.read_file(DEVICETREE_MODEL).strip("\x00\n ")
                return model.split()[0].upper() if model else "Unknown"
            return self.runner.output("lsb_release -si")
        except ProbeFailure as e:
            logger.debug(f"[HW] Brand lookup failed: {e}")
            return "Unknown"

    def model(self):
        if self.is_termux:
            return self._su_fallback("getprop ro.product.model")
        try:
            if self.runner.exists(DEVICETREE_MODEL):
                model = self.runner.read_file(DEVICETREE_MODEL).strip("\x00\n ")
                return " ".join(model.split()[1:3]).upper() or "Unknown"
        except ProbeFailure as e:
            logger.debug(f"[HW] Model lookup failed: {e}")
        return platform.machine().upper() or "Unknown"

    def os_version(self):
        if self.is_termux:
            release = self._su_fallback("getprop ro.build.version.release")
            sdk = self._su_fallback("getprop ro.build.version.sdk")
            return f"Android {release} (API {sdk})"
        try:
            for line in self.runner.read_file("/etc/os-release").splitlines():
                if line.startswith("PRETTY_NAME="):
                    return line.split("=", 1)[1].strip().strip('"')
        except ProbeFailure:
            pass
        return platform.version() or "Unknown"

    # ── CPU ─────────────────────────────────────────────────

    def cpu_cores(self):
        try:
            cores = parse_lscpu_cores(self.runner.output("lscpu"))
            if cores:
                return cores
        except (ProbeFailure, ValueError) as e:
            logger.debug(f"[HW] lscpu parse failed: {e}")
        try:
            cores = parse_cpuinfo_cores(self.runner.read_file("/proc/cpuinfo"))
            if cores:
                return cores
        except (ProbeFailure, ValueError) as e:
            logger.debug(f"[HW] /proc/cpuinfo parse failed: {e}")
        return [CpuCore(core_id=i) for i in range(os.cpu_count() or 0)]

    def cpu_count(self):
        try:
            match = re.search(r"^CPU\(s\):\s+(\d+)", self.runner.output("lscpu"), re.M)
            if match:
                return int(match.group(1))
        except ProbeFailure:
            pass
        return os.cpu_count() or 0

    def cpu_temperature(self):
        if self.system_type == SystemType.raspberry_pi:
            temp = self._vcgencmd_temperature(root=False)
            if temp is not None:
                return temp
        elif self.is_termux:
            temp = self._vcgencmd_temperature(root=True)
            if temp is not None:
                return temp
            try:
                raw = self.runner.output(f'su -c "cat {THERMAL_ZONE}"')
                return int(raw) / 1000
            except (ProbeFailure, ValueError):
                pass
        return self._linux_temperature()

    def _vcgencmd_temperature(self, root):
        if not self.runner.exists(VCGENCMD_PATH):
            return None
        cmd = f"{VCGENCMD_PATH} measure_temp"
        if root:
            cmd = f'su -c "{cmd}"'
        try:
            return _first_float(r"temp=([\d.]+)", self.runner.output(cmd))
        except ProbeFailure:
            return None

    def _linux_temperature(self):
        try:
            if self.runner.exists(THERMAL_ZONE):
                return int(self.runner.read_file(THERMAL_ZONE).strip()) / 1000
        except (ProbeFailure, ValueError):
            pass
        try:
            return _first_float(r"(\d+\.\d+)", self.runner.output("acpi -t")) or 0.0
        except ProbeFailure:
            return 0.0

    # ── Memory / storage / uptime ───────────────────────────

    def memory(self):
        """(total, free) in bytes."""
        try:
            meminfo = self.runner.read_file("/proc/meminfo")
        except ProbeFailure:
            return 0, 0
        values = {}
        for line in meminfo.splitlines():
            match = re.match(r"^(\w+):\s+(\d+)\s*kB", line)
            if match:
                values[match.group(1)] = int(match.group(2)) * 1024
        free = values.get("MemAvailable", values.get("MemFree", 0))
        return values.get("MemTotal", 0), free

    def storage(self, path="/"):
        """(total, free) in bytes."""
        try:
            usage = shutil.disk_usage(path)
        except OSError as e:
            logger.debug(f"[HW] disk_usage failed: {e}")
            return 0, 0
        return usage.total, usage.free

    def system_uptime(self):
        try:
            return int(float(self.runner.read_file("/proc/uptime").split()[0]))
        except (ProbeFailure, ValueError, IndexError):
            return 0

    # ── Termux extras ───────────────────────────────────────

    def adb_enabled(self):
        if not self.is_termux:
            return False
        try:
            lines = self.runner.output("adb devices").splitlines()[1:]
        except ProbeFailure:
            return False
        return any(line.strip() for line in lines)

    def su_available(self):
        if not self.is_termux:
            return False
        try:
            return "rooted" in self.runner.output('su -c "echo rooted" 2>/dev/null')
        except ProbeFailure:
            return False

    # ── Aggregate ───────────────────────────────────────────

    def device_info(self) -> DeviceInfo:
        total_mem, free_mem = self.memory()
        total_disk, free_disk = self.storage()
        cores = self.cpu_cores()
        return DeviceInfo(
            hw_brand=self.brand(),
            hw_model=self.model(),
            architecture=platform.machine() or "unknown",
            os=self.os_version(),
            cpu_count=self.cpu_count() or len(cores),
            cpu_model=tuple(cores),
            cpu_temperature=self.cpu_temperature(),
            total_memory=total_mem,
            free_memory=free_mem,
            total_storage=total_disk,
            free_storage=free_disk,
            adb_enabled=self.adb_enabled(),
            su_available=self.su_available(),
            system_uptime=self.system_uptime(),
        )
