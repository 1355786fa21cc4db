"""
RigWarden Battery / power probes
"""

import json
import logging
import re

from rigwarden.config import VCGENCMD_PATH
from rigwarden.errors import ProbeFailure
from rigwarden.models import BatteryInfo, SystemType
from rigwarden.shell import CommandRunner

logger = logging.getLogger(__name__)

UNDER_VOLTAGE_BIT = 0x1


def parse_termux_battery(text):
    data = json.loads(text)
    return BatteryInfo(
        health=data.get("health") or "UNKNOWN",
        percentage=data.get("percentage") or 0,
        plugged=data.get("plugged") or "UNKNOWN",
        status=data.get("status") or "UNKNOWN",
        temperature=data.get("temperature") or 0.0,
        current=data.get("current") or 0,
    )


def parse_acpi_battery(text):
    """``Battery 0: Discharging, 87%, 02:11:09 remaining`` → BatteryInfo, or None."""
    match = re.search(r"Battery \d+: ([\w ]+?), (\d+)%", text)
    if not match:
        return None
    state = match.group(1).strip()
    temp = re.search(r"(-?[\d.]+)\s*°?\s*C\b", text[match.end():])
    return BatteryInfo(
        health="GOOD",
        percentage=int(match.group(2)),
        plugged="AC" if "Charging" in state or state == "Full" else "BATTERY",
        status=state.upper().replace(" ", "_"),
        temperature=float(temp.group(1)) if temp else 0.0,
        current=0,
    )


def parse_throttled(text):
    """``throttled=0x50005`` → True if under-voltage is active now."""
    match = re.search(r"0x([0-9a-fA-F]+)", text)
    if not match:
        raise ValueError(f"unexpected get_throttled output: {text!r}")
    return bool(int(match.group(1), 16) & UNDER_VOLTAGE_BIT)


class BatteryProbe:

    def __init__(self, runner=None, system_type=SystemType.linux):
        self.runner = runner or CommandRunner()
        self.system_type = system_type

    def battery_info(self) -> BatteryInfo:
        """Raises ProbeFailure when no battery source answers; the pipeline falls back."""
        if self.system_type == SystemType.termux:
            try:
                return parse_termux_battery(self.runner.output("termux-battery-status"))
            except ValueError as e:
                raise ProbeFailure("termux-battery-status", str(e))
        if self.system_type == SystemType.raspberry_pi:
            return self._raspberry_pi()
        info = parse_acpi_battery(self.runner.output("acpi -b"))
        if info is None:
            raise ProbeFailure("acpi -b", "no battery reported")
        return info

    def _raspberry_pi(self):
        cmd = f"{VCGENCMD_PATH} get_throttled" if self.runner.exists(VCGENCMD_PATH) \
            else "vcgencmd get_throttled"
        try:
            under_voltage = parse_throttled(self.runner.output(cmd))
        except ValueError as e:
            raise ProbeFailure(cmd, str(e))
        state = "UNDER_VOLTAGE" if under_voltage else "GOOD"
        return BatteryInfo(
            health=state,
            percentage=100,
            plugged="AC",
            status="UNDER_VOLTAGE" if under_voltage else "CHARGING",
            temperature=0.0,
            current=0,
        )
