import json
import os
import tempfile
import threading
import time
import unittest
from types import SimpleNamespace

from rigwarden import storage
from rigwarden.errors import ProbeFailure
from rigwarden.models import (
    BatteryInfo, CpuCore, DeviceInfo, HistoryPoint, MinerState, MinerSummary,
    NetworkInfo, PoolStats, Schedules, ThreadStat,
)
from rigwarden.telemetry import TelemetryPipeline, join_core_hashrates, mining_status, update_history
from tests._fakes import FakeControlPlane, StepClock


def _boom(*args, **kwargs):
    raise ProbeFailure("probe", "unavailable")


class _Supervisor:
    def __init__(self, miner="xmrig", state=MinerState.running, alive=True):
        self.miner = miner
        self.state = state
        self.alive = alive

    def miner_software(self):
        return self.miner

    def is_alive(self):
        return self.alive


class _Hardware:
    def __init__(self, cores=4):
        self.cores = cores

    def device_info(self):
        return DeviceInfo(
            hw_brand="RASPBERRY", cpu_count=self.cores,
            cpu_model=tuple(CpuCore(model="Cortex-A72", core_id=i) for i in range(self.cores)),
        )

    def cpu_count(self):
        return self.cores


class _MinerApi:
    def __init__(self, hashrate=2.5, threads=None):
        self.hashrate = hashrate
        self._threads = threads if threads is not None else [
            ThreadStat(core_id=i, hashrate=625.0) for i in range(4)
        ]

    def summary(self, miner):
        return MinerSummary(name=miner, hashrate=self.hashrate, accepted_shares=10)

    def pool(self, miner):
        return PoolStats(name="pool.example", url="pool.example:3333")

    def threads(self, miner, cpu_count=1):
        return self._threads


class HistoryTests(unittest.TestCase):
    def test_old_points_are_dropped(self) -> None:
        history = [HistoryPoint(timestamp=t, hashrate=1.0) for t in (0, 100, 3000)]
        result = update_history(history, HistoryPoint(timestamp=3700, hashrate=2.0), horizon=3600, max_points=60)
        self.assertEqual([p.timestamp for p in result], [100, 3000, 3700])

    def test_max_points_keeps_newest(self) -> None:
        history = [HistoryPoint(timestamp=t, hashrate=1.0) for t in range(100)]
        result = update_history(history, HistoryPoint(timestamp=100, hashrate=0.0), horizon=3600, max_points=60)
        self.assertEqual(len(result), 60)
        self.assertEqual(result[-1].timestamp, 100)
        self.assertEqual(result[0].timestamp, 41)

    def test_single_point_history(self) -> None:
        history = [HistoryPoint(timestamp=1, hashrate=1.0)]
        result = update_history(history, HistoryPoint(timestamp=2, hashrate=3.0), max_points=1)
        self.assertEqual(result, [HistoryPoint(timestamp=2, hashrate=3.0)])


class JoinTests(unittest.TestCase):
    def test_hashrate_joined_by_core_id(self) -> None:
        cores = tuple(CpuCore(core_id=i) for i in range(4))
        threads = [ThreadStat(core_id=2, hashrate=1500.0), ThreadStat(core_id=0, hashrate=250.0)]
        joined = join_core_hashrates(cores, threads)
        self.assertEqual([c.khs for c in joined], [0.25, 0.0, 1.5, 0.0])
        self.assertEqual([c.core_id for c in joined], [0, 1, 2, 3])

    def test_mining_status(self) -> None:
        self.assertEqual(mining_status(MinerState.running, True), "active")
        self.assertEqual(mining_status(MinerState.running, False), "stopped")
        self.assertEqual(mining_status(MinerState.manually_stopped, False), "manually_stopped")


class TelemetryPipelineTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.dir = self._tmp.name
        self.sleeps = []
        self.api = FakeControlPlane()
        self.config_store = SimpleNamespace(schedules=Schedules(), miner_id="m-1")

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def pipeline(self, supervisor=None, hardware=None, network=None, battery=None, miner_api=None, **kwargs):
        network = network or SimpleNamespace(network_info=lambda: NetworkInfo(primary_ip="10.0.0.5"))
        battery = battery or SimpleNamespace(battery_info=lambda: BatteryInfo(percentage=80))
        kwargs.setdefault("telemetry_file", os.path.join(self.dir, "telemetry.json"))
        kwargs.setdefault("history_file", os.path.join(self.dir, "hashrate-history.json"))
        kwargs.setdefault("clock", StepClock())
        return TelemetryPipeline(
            supervisor=supervisor or _Supervisor(),
            config_store=self.config_store,
            hardware=hardware or _Hardware(),
            network=network,
            battery=battery,
            miner_api=miner_api or _MinerApi(),
            api=self.api,
            sleep=self.sleeps.append,
            **kwargs,
        )

    def test_healthy_cycle(self) -> None:
        pipeline = self.pipeline()
        pipeline.initialize()
        result = pipeline.collect()
        self.assertEqual(result["status"], "active")
        self.assertEqual(result["minerSoftware"]["hashrate"], 2.5)
        self.assertEqual(result["minerSoftware"]["miningStatus"], "active")
        self.assertEqual(result["network"]["primaryIp"], "10.0.0.5")
        self.assertEqual([c["khs"] for c in result["deviceInfo"]["cpuModel"]], [0.625] * 4)
        self.assertNotIn("schedules", result)
        self.assertNotIn("historicalHashrate", result)
        self.assertEqual(self.api.pushed, [("m-1", result)])
        self.assertEqual(pipeline.latest(), result)
        self.assertEqual(len(pipeline.history()), 1)
        with open(os.path.join(self.dir, "telemetry.json")) as f:
            self.assertEqual(len(json.load(f)["historicalHashrate"]), 1)

    def test_every_probe_failing_still_yields_snapshot(self) -> None:
        pipeline = self.pipeline(
            supervisor=_Supervisor(state=MinerState.stopped, alive=False),
            hardware=SimpleNamespace(device_info=_boom, cpu_count=_boom),
            network=SimpleNamespace(network_info=_boom),
            battery=SimpleNamespace(battery_info=_boom),
            miner_api=SimpleNamespace(summary=_boom, pool=_boom, threads=_boom),
        )
        with self.assertLogs("rigwarden", level="WARNING"):
            result = pipeline.collect()
        self.assertIsNotNone(result)
        self.assertEqual(result["minerSoftware"]["hashrate"], 0.0)
        self.assertEqual(result["minerSoftware"]["miningStatus"], "stopped")
        self.assertEqual(result["battery"]["health"], "UNKNOWN")
        self.assertEqual(result["deviceInfo"]["cpuModel"], [])
        # three miner probes, two backoff sleeps each
        self.assertEqual(sorted(self.sleeps), [1.0, 1.0, 1.0, 2.0, 2.0, 2.0])

    def test_unreachable_miner_keeps_supervisor_status(self) -> None:
        pipeline = self.pipeline(miner_api=SimpleNamespace(summary=_boom, pool=_boom, threads=_boom))
        with self.assertLogs("rigwarden.resilience", level="ERROR"):
            result = pipeline.collect()
        self.assertEqual(result["minerSoftware"]["hashrate"], 0.0)
        self.assertEqual(result["minerSoftware"]["miningStatus"], "active")
        self.assertEqual(pipeline.history()[-1]["hashrate"], 0.0)

    def test_no_miner_configured_uses_fallback_without_calls(self) -> None:
        pipeline = self.pipeline(
            supervisor=_Supervisor(miner=None, state=MinerState.stopped, alive=False),
            miner_api=SimpleNamespace(summary=_boom, pool=_boom, threads=_boom),
        )
        with self.assertLogs("rigwarden.telemetry", level="WARNING"):
            result = pipeline.collect()
        self.assertEqual(result["pool"]["name"], "unknown")
        self.assertEqual(self.sleeps, [])

    def test_backups_are_rotated(self) -> None:
        pipeline = self.pipeline(max_backups=5)
        for _ in range(8):
            pipeline.collect()
        telemetry_file = os.path.join(self.dir, "telemetry.json")
        backups = storage.list_backups(telemetry_file)
        self.assertEqual(len(backups), 5)
        with open(backups[0]) as f, open(telemetry_file) as current:
            self.assertEqual(json.load(f), json.load(current))

    def test_history_is_bounded(self) -> None:
        pipeline = self.pipeline(max_points=3)
        for _ in range(6):
            pipeline.collect()
        history = pipeline.history()
        self.assertEqual(len(history), 3)
        timestamps = [p["timestamp"] for p in history]
        self.assertEqual(timestamps, sorted(timestamps))
        with open(os.path.join(self.dir, "hashrate-history.json")) as f:
            self.assertEqual(json.load(f), history)

    def test_cycle_failure_returns_none(self) -> None:
        supervisor = _Supervisor()
        supervisor.miner_software = _boom
        pipeline = self.pipeline(supervisor=supervisor)
        with self.assertLogs("rigwarden.telemetry", level="ERROR"):
            self.assertIsNone(pipeline.collect())
        self.assertFalse(os.path.exists(os.path.join(self.dir, "telemetry.json")))
        self.assertEqual(self.api.pushed, [])

    def test_hung_data_source_falls_back_within_deadline(self) -> None:
        release = threading.Event()
        self.addCleanup(release.set)

        def hang(*args, **kwargs):
            release.wait(5)
            return DeviceInfo(hw_brand="LATE")

        hardware = _Hardware()
        hardware.device_info = hang
        miner_api = _MinerApi()
        miner_api.summary = hang
        pipeline = self.pipeline(hardware=hardware, miner_api=miner_api, probe_timeout=0.5, clock=time.time)
        started = time.monotonic()
        with self.assertLogs("rigwarden.telemetry", level="ERROR") as logs:
            result = pipeline.collect()
        self.assertLess(time.monotonic() - started, 3)
        self.assertEqual(result["deviceInfo"]["hwBrand"], "Unknown")
        self.assertEqual(result["minerSoftware"]["hashrate"], 0.0)
        self.assertEqual(result["pool"]["name"], "pool.example")
        timed_out = [r.getMessage() for r in logs.records if "timed out" in r.getMessage()]
        self.assertEqual(len(timed_out), 2)

    def test_persistence_failure_still_returns_result(self) -> None:
        blocker = os.path.join(self.dir, "blocker")
        with open(blocker, "w") as f:
            f.write("")
        pipeline = self.pipeline(
            telemetry_file=os.path.join(blocker, "telemetry.json"),
            history_file=os.path.join(blocker, "history.json"),
        )
        with self.assertLogs("rigwarden.telemetry", level="ERROR"):
            result = pipeline.collect()
        self.assertEqual(result["status"], "active")

    def test_corrupt_snapshot_is_quarantined_on_startup(self) -> None:
        telemetry_file = os.path.join(self.dir, "telemetry.json")
        with open(telemetry_file, "w") as f:
            f.write("{\"status\": ")
        pipeline = self.pipeline()
        with self.assertLogs("rigwarden", level="WARNING"):
            pipeline.initialize()
        quarantined = [n for n in os.listdir(self.dir) if n.endswith(".corrupt.bak")]
        self.assertEqual(len(quarantined), 1)
        with open(telemetry_file) as f:
            self.assertEqual(json.load(f)["status"], "stopped")

    def test_history_restored_from_disk(self) -> None:
        with open(os.path.join(self.dir, "hashrate-history.json"), "w") as f:
            json.dump([{"timestamp": 1_700_000_000 - 60, "hashrate": 1.0}], f)
        pipeline = self.pipeline()
        pipeline.initialize()
        self.assertEqual(len(pipeline.history()), 1)
        pipeline.collect()
        self.assertEqual(len(pipeline.history()), 2)

    def test_invalid_history_file_is_reset(self) -> None:
        history_file = os.path.join(self.dir, "hashrate-history.json")
        with open(history_file, "w") as f:
            json.dump({"not": "a list"}, f)
        pipeline = self.pipeline()
        with self.assertLogs("rigwarden.telemetry", level="WARNING"):
            self.assertEqual(pipeline.load_history(), [])
        with open(history_file) as f:
            self.assertEqual(json.load(f), [])


if __name__ == "__main__":
    unittest.main()
