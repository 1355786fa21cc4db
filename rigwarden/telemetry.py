"""
RigWarden Telemetry pipeline

One collection cycle:
  1. run every probe concurrently, each behind its own fallback
     (local probes: one attempt; miner API: 3 attempts, linear backoff)
  2. merge into a TelemetrySnapshot, joining per-core hashrate onto the
     CPU core list by core id
  3. fold the new hashrate sample into the bounded history
  4. persist snapshot + history, back up the snapshot, rotate backups
  5. push the external subset to the control plane

A cycle that blows up returns None and leaves the files on disk alone.
A failed write is logged; the in-memory result is still returned.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout

from pydantic import ValidationError

from rigwarden import storage
from rigwarden.config import (
    TELEMETRY_FILE, HISTORY_FILE, HISTORY_HORIZON, MAX_HISTORY_POINTS,
    MAX_TELEMETRY_BACKUPS, PROBE_RETRIES, PROBE_RETRY_DELAY, PROBE_TIMEOUT,
    PROBE_WORKERS,
)
from rigwarden.errors import CorruptStateError, PersistenceError
from rigwarden.models import (
    BatteryInfo, DeviceInfo, HistoryPoint, MinerSoftwareInfo, MinerState,
    MinerSummary, NetworkInfo, PoolStats, TelemetrySnapshot, TrafficInfo,
)
from rigwarden.resilience import safe_execute, with_retry

logger = logging.getLogger(__name__)


def update_history(history, point, horizon=HISTORY_HORIZON, max_points=MAX_HISTORY_POINTS):
    """Drop points older than ``horizon``, trim to ``max_points - 1``, append ``point``.

    Trimming before the append keeps the newest sample from ever being evicted.
    """
    cutoff = point.timestamp - horizon
    kept = [p for p in history if cutoff <= p.timestamp <= point.timestamp]
    kept = kept[-(max_points - 1):] if max_points > 1 else []
    kept.append(point)
    return kept


def join_core_hashrates(cores, threads):
    """Attach each core's kH/s by core id; cores the miner did not report get 0."""
    by_core = {t.core_id: t.hashrate for t in threads}
    return tuple(
        core.model_copy(update={"khs": round(by_core.get(core.core_id, 0.0) / 1000, 3)})
        for core in cores
    )


def mining_status(state, alive):
    if state == MinerState.manually_stopped:
        return "manually_stopped"
    if state == MinerState.running and alive:
        return "active"
    return "stopped"


class TelemetryPipeline:
    """Collects, persists and publishes one snapshot per cycle."""

    def __init__(self, supervisor, config_store, hardware, network, battery, miner_api,
                 api=None, telemetry_file=TELEMETRY_FILE, history_file=HISTORY_FILE,
                 horizon=HISTORY_HORIZON, max_points=MAX_HISTORY_POINTS,
                 max_backups=MAX_TELEMETRY_BACKUPS, probe_timeout=PROBE_TIMEOUT,
                 probe_retries=PROBE_RETRIES, probe_retry_delay=PROBE_RETRY_DELAY,
                 workers=PROBE_WORKERS, clock=time.time, sleep=time.sleep):
        self.supervisor = supervisor
        self.config_store = config_store
        self.hardware = hardware
        self.network = network
        self.battery = battery
        self.miner_api = miner_api
        self.api = api
        self.telemetry_file = telemetry_file
        self.history_file = history_file
        self.horizon = horizon
        self.max_points = max_points
        self.max_backups = max_backups
        self.probe_timeout = probe_timeout
        self.probe_retries = probe_retries
        self.probe_retry_delay = probe_retry_delay
        self.workers = workers
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._history = []
        self._latest = None

    # ── Startup ─────────────────────────────────────────────

    def initialize(self):
        """Validate the persisted snapshot (quarantine if corrupt) and load history."""
        snapshot = self.load_snapshot()
        history = self.load_history()
        if not history and snapshot is not None:
            history = list(snapshot.historical_hashrate)
        with self._lock:
            self._history = history
        logger.info(f"[TELEMETRY] Ready, {len(history)} history points loaded")

    def load_snapshot(self):
        try:
            raw = storage.read_json(self.telemetry_file)
            if raw is None:
                return None
            return TelemetrySnapshot.model_validate(raw)
        except (CorruptStateError, ValidationError) as e:
            logger.warning(f"[TELEMETRY] Persisted snapshot is corrupt, resetting: {e}")
            empty = TelemetrySnapshot()
            try:
                storage.quarantine(self.telemetry_file, clock=self._clock)
                storage.write_json_atomic(self.telemetry_file, empty.to_json_dict())
            except PersistenceError as pe:
                logger.error(f"[TELEMETRY] {pe}")
            return empty

    def load_history(self):
        try:
            raw = storage.read_json(self.history_file, default=[])
            if not isinstance(raw, list):
                raise CorruptStateError(self.history_file, "history is not a list")
            return [HistoryPoint.model_validate(p) for p in raw]
        except (CorruptStateError, ValidationError) as e:
            logger.warning(f"[TELEMETRY] History file invalid, starting empty: {e}")
            try:
                storage.write_json_atomic(self.history_file, [])
            except PersistenceError as pe:
                logger.error(f"[TELEMETRY] {pe}")
            return []

    # ── Read API ────────────────────────────────────────────

    def history(self):
        with self._lock:
            return [p.to_json_dict() for p in self._history]

    def latest(self):
        """Most recent external subset; runs a cycle if none exists yet."""
        with self._lock:
            latest = self._latest
        return latest if latest is not None else self.collect()

    # ── Cycle ───────────────────────────────────────────────

    def collect(self):
        try:
            snapshot = self._build_snapshot()
        except Exception as e:
            logger.error(f"[TELEMETRY] Collection cycle failed: {e}", exc_info=True)
            return None

        self._persist(snapshot)
        external = snapshot.external()
        with self._lock:
            self._history = list(snapshot.historical_hashrate)
            self._latest = external
        self._push(external)
        return external

    def _build_snapshot(self):
        started = self._clock()
        miner = self.supervisor.miner_software()
        state = self.supervisor.state
        alive = self.supervisor.is_alive()
        results = self._run_probes(miner)

        summary = results["summary"]
        device = results["device"]
        device = device.model_copy(update={
            "cpu_model": join_core_hashrates(device.cpu_model, results["threads"]),
        })

        point = HistoryPoint(timestamp=int(started), hashrate=summary.hashrate)
        with self._lock:
            history = update_history(self._history, point, self.horizon, self.max_points)

        return TelemetrySnapshot(
            status="active",
            miner_software=MinerSoftwareInfo(
                **summary.model_dump(), mining_status=mining_status(state, alive),
            ),
            pool=results["pool"],
            device_info=device,
            network=results["network"],
            battery=results["battery"],
            schedules=self.config_store.schedules,
            historical_hashrate=tuple(history),
        )

    def _probes(self, miner):
        """name → (callable, fallback). Every callable already swallows its own errors."""
        now = self._clock()
        cpu_count = self._cpu_count()

        def miner_probe(name, fn, fallback):
            if not miner:
                def unavailable():
                    logger.warning(f"[TELEMETRY] No miner software configured, {name} uses fallback")
                    return fallback
                return unavailable, fallback
            return (lambda: with_retry(
                fn, fallback, name=f"miner {name}", attempts=self.probe_retries,
                delay=self.probe_retry_delay, sleep=self._sleep,
            )), fallback

        network_fallback = NetworkInfo(traffic=TrafficInfo(timestamp=now))
        return {
            "device": (lambda: safe_execute(self.hardware.device_info, DeviceInfo(), "device info"),
                       DeviceInfo()),
            "network": (lambda: safe_execute(self.network.network_info, network_fallback, "network info"),
                        network_fallback),
            "battery": (lambda: safe_execute(self.battery.battery_info, BatteryInfo(), "battery info"),
                        BatteryInfo()),
            "summary": miner_probe("summary", lambda: self.miner_api.summary(miner), MinerSummary()),
            "pool": miner_probe("pool", lambda: self.miner_api.pool(miner), PoolStats()),
            "threads": miner_probe("threads", lambda: self.miner_api.threads(miner, cpu_count), []),
        }

    def _cpu_count(self):
        try:
            return self.hardware.cpu_count()
        except Exception as e:
            logger.warning(f"[TELEMETRY] CPU count unavailable: {e}")
            return 1

    def _run_probes(self, miner):
        probes = self._probes(miner)
        deadline = self._clock() + self.probe_timeout
        results = {}
        pool = ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="probe")
        try:
            futures = {name: pool.submit(fn) for name, (fn, _) in probes.items()}
            for name, future in futures.items():
                fallback = probes[name][1]
                remaining = max(0.0, deadline - self._clock())
                try:
                    results[name] = future.result(timeout=remaining)
                except FutureTimeout:
                    logger.error(f"[TELEMETRY] Probe {name} timed out after {self.probe_timeout}s, using fallback")
                    results[name] = fallback
                except Exception as e:
                    logger.error(f"[TELEMETRY] Probe {name} failed: {e}")
                    results[name] = fallback
        finally:
            # a hung probe keeps its worker; the cycle does not wait for it
            pool.shutdown(wait=False, cancel_futures=True)
        return results

    # ── Persistence / publish ───────────────────────────────

    def _persist(self, snapshot):
        try:
            storage.write_json_atomic(self.telemetry_file, snapshot.to_json_dict())
            storage.create_backup(self.telemetry_file, clock=self._clock)
            for removed in storage.rotate_backups(self.telemetry_file, self.max_backups):
                logger.debug(f"[TELEMETRY] Removed old backup {removed}")
        except PersistenceError as e:
            logger.error(f"[TELEMETRY] Snapshot not persisted: {e}")
        try:
            storage.write_json_atomic(
                self.history_file, [p.to_json_dict() for p in snapshot.historical_hashrate],
            )
        except PersistenceError as e:
            logger.error(f"[TELEMETRY] History not persisted: {e}")

    def _push(self, external):
        if self.api is None:
            return
        miner_id = self.config_store.miner_id
        if not miner_id:
            logger.debug("[TELEMETRY] No minerId yet, skipping push")
            return
        self.api.update_telemetry(miner_id, external)
