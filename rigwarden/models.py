"""
RigWarden Data Models
Pydantic v2 models for rig config, schedules and telemetry snapshots.
Field names are snake_case in Python and camelCase on disk / over HTTP.
"""

import re
from enum import Enum
from typing import Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")
_DAY_ALIASES = {day[:3]: day for day in WEEKDAYS}
_HHMM = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")


def normalize_day(value):
    """'Mon', 'monday', 'MONDAY' → 'monday'. Raises ValueError on anything else."""
    day = str(value).strip().lower()
    if day in WEEKDAYS:
        return day
    full = _DAY_ALIASES.get(day[:3])
    if full and full.startswith(day):
        return full
    raise ValueError(f"unknown weekday: {value!r}")


def normalize_hhmm(value):
    """'8:00' → '08:00'. Raises ValueError if not a valid 24h clock time."""
    match = _HHMM.match(str(value).strip())
    if not match:
        raise ValueError(f"invalid HH:MM time: {value!r}")
    return f"{int(match.group(1)):02d}:{match.group(2)}"


def _normalize_days(days):
    if days is None:
        return ()
    if isinstance(days, str):
        days = [days]
    if not isinstance(days, (list, tuple, set)):
        raise ValueError(f"days must be a list, got {type(days).__name__}")
    seen = {normalize_day(d) for d in days}
    return tuple(d for d in WEEKDAYS if d in seen)


# ── Enums ────────────────────────────────────────────────

class MinerState(str, Enum):
    stopped = "stopped"
    running = "running"
    manually_stopped = "manually_stopped"


class RunIntent(str, Enum):
    should_run = "should_run"
    should_not_run = "should_not_run"


class SystemType(str, Enum):
    termux = "termux"
    raspberry_pi = "raspberry-pi"
    linux = "linux"
    unknown = "unknown"


class ActionCommand(str, Enum):
    restart_miner = "restart_miner"
    stop_mining = "stop_mining"
    start_mining = "start_mining"
    reload_config = "reload_config"
    restart_device = "restart_device"
    update_software = "update_software"


class ActionStatus(str, Enum):
    pending = "pending"
    in_progress = "in_progress"
    completed = "completed"
    failed = "failed"


# ── Base ─────────────────────────────────────────────────

class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    def to_json_dict(self, **kwargs):
        return self.model_dump(mode="json", by_alias=True, **kwargs)


# ── Schedules ────────────────────────────────────────────

class ScheduleWindow(CamelModel):
    days: Tuple[str, ...] = ()
    start_time: str
    end_time: str

    @field_validator("days", mode="before")
    @classmethod
    def _days(cls, v):
        return _normalize_days(v)

    @field_validator("start_time", "end_time", mode="before")
    @classmethod
    def _time(cls, v):
        return normalize_hhmm(v)


class ScheduledRestart(CamelModel):
    time: str
    days: Tuple[str, ...] = ()  # empty = every day

    @field_validator("days", mode="before")
    @classmethod
    def _days(cls, v):
        return _normalize_days(v)

    @field_validator("time", mode="before")
    @classmethod
    def _time(cls, v):
        return normalize_hhmm(v)


class MiningSchedule(CamelModel):
    enabled: bool = False
    windows: Tuple[ScheduleWindow, ...] = Field(default=(), alias="periods")


class Schedules(CamelModel):
    scheduled_mining: MiningSchedule = MiningSchedule()
    scheduled_restarts: Tuple[ScheduledRestart, ...] = ()

    @field_validator("scheduled_restarts", mode="before")
    @classmethod
    def _legacy_restarts(cls, v):
        # Older control-plane versions sent plain "HH:MM" strings
        if v is None:
            return ()
        if isinstance(v, str):
            v = [v]
        if not isinstance(v, (list, tuple)):
            return v
        return tuple({"time": item} if isinstance(item, str) else item for item in v)


# ── Rig Config ───────────────────────────────────────────

class Thresholds(CamelModel):
    max_cpu_temp: float = 85
    max_battery_temp: float = 45
    max_storage_usage: float = 90
    min_hashrate: float = 0
    share_ratio: float = 0.5


class RigConfig(CamelModel):
    miner_id: str = ""
    rig_id: str = ""
    name: str = "Unnamed Rig"
    miner_software: Optional[str] = None
    thresholds: Thresholds = Thresholds()
    schedules: Schedules = Schedules()


# ── Environment ──────────────────────────────────────────

class EnvironmentProfile(CamelModel):
    is_mobile_constrained: bool = False
    is_linux: bool = True
    total_memory: int = 0
    cpu_cores: int = 1
    has_root: bool = False
    has_huge_page_support: bool = False
    architecture: str = "unknown"

    def summary(self):
        return ", ".join([
            f"Environment: {'Termux' if self.is_mobile_constrained else 'Linux'}",
            f"Memory: {self.total_memory / (1024 ** 3):.1f}GB",
            f"CPU Cores: {self.cpu_cores}",
            f"Architecture: {self.architecture}",
            f"Root Access: {'Yes' if self.has_root else 'No'}",
            f"Huge Pages: {'Available' if self.has_huge_page_support else 'Not Available'}",
        ])


# ── Telemetry ────────────────────────────────────────────

class MinerSummary(CamelModel):
    name: str = "unknown"
    version: str = "unknown"
    algorithm: str = "unknown"
    hashrate: float = 0.0
    accepted_shares: int = 0
    rejected_shares: int = 0
    uptime: int = 0
    average_share_rate: float = 0.0
    solved_blocks: int = 0


class MinerSoftwareInfo(MinerSummary):
    mining_status: str = MinerState.stopped.value


class PoolStats(CamelModel):
    name: str = "unknown"
    url: str = "unknown"
    user: str = "unknown"
    accepted_shares: int = 0
    rejected_shares: int = 0
    stale_shares: int = 0
    ping: int = 0
    uptime: int = 0


class ThreadStat(CamelModel):
    core_id: int
    hashrate: float = 0.0


class CpuCore(CamelModel):
    model: str = "Unknown CPU"
    core_id: int
    max_mhz: float = Field(default=0.0, alias="maxMHz")
    min_mhz: float = Field(default=0.0, alias="minMHz")
    khs: float = 0.0


class DeviceInfo(CamelModel):
    hw_brand: str = "Unknown"
    hw_model: str = "Unknown"
    architecture: str = "unknown"
    os: str = "Unknown"
    cpu_count: int = 0
    cpu_model: Tuple[CpuCore, ...] = ()
    cpu_temperature: float = 0.0
    total_memory: int = 0
    free_memory: int = 0
    total_storage: int = 0
    free_storage: int = 0
    adb_enabled: bool = False
    su_available: bool = False
    system_uptime: int = 0


class TrafficInfo(CamelModel):
    rx_bytes: int = 0
    tx_bytes: int = 0
    rx_speed: float = 0.0
    tx_speed: float = 0.0
    timestamp: float = 0.0


class NetworkInfo(CamelModel):
    primary_ip: str = "Unknown"
    external_ip: str = "Unknown"
    gateway: str = "Unknown"
    interfaces: Tuple[str, ...] = ("Unknown",)
    ping: Dict[str, float] = Field(default_factory=dict)
    traffic: TrafficInfo = TrafficInfo()


class BatteryInfo(CamelModel):
    health: str = "UNKNOWN"
    percentage: float = 0
    plugged: str = "UNPLUGGED"
    status: str = "UNKNOWN"
    temperature: float = 0.0
    current: float = 0


class HistoryPoint(CamelModel):
    timestamp: int
    hashrate: float = 0.0


class TelemetrySnapshot(CamelModel):
    status: str = "stopped"
    miner_software: MinerSoftwareInfo = MinerSoftwareInfo()
    pool: PoolStats = PoolStats()
    device_info: DeviceInfo = DeviceInfo()
    network: NetworkInfo = NetworkInfo()
    battery: BatteryInfo = BatteryInfo()
    schedules: Schedules = Schedules()
    historical_hashrate: Tuple[HistoryPoint, ...] = ()

    def external(self):
        """Externally visible subset: everything but the raw schedule/history payload."""
        return self.to_json_dict(exclude={"schedules", "historical_hashrate"})


# ── Results ──────────────────────────────────────────────

class ReconcileResult(CamelModel):
    written: bool = False
    restart_required: bool = False


class SupervisorStatus(CamelModel):
    state: MinerState
    desired_state: RunIntent
    next_schedule_change: Optional[str] = None  # ISO-8601 local time
    manual_override: bool = False
    pid: Optional[int] = None
    miner_software: Optional[str] = None


class MinerAction(CamelModel):
    """A command queued for this rig on the control plane."""

    action_id: str = Field(alias="_id")
    command: str
    parameters: Dict[str, object] = Field(default_factory=dict)
    status: str = ActionStatus.pending.value
