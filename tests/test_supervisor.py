import json
import os
import signal
import stat
import subprocess
import tempfile
import time
import unittest
from datetime import datetime
from unittest import mock

from rigwarden.errors import ProcessSpawnError, ProcessTerminationError
from rigwarden.miner_manager import Supervisor
from rigwarden.models import MinerState, RunIntent
from rigwarden.rig_config import RigConfigStore
from tests._fakes import FakeControlPlane

MINER = "fakeminer"
NOW = datetime(2024, 1, 3, 9, 0)  # Wednesday


def _install_miner(apps_dir, name=MINER, script="exec sleep 60\n"):
    miner_dir = os.path.join(apps_dir, name)
    os.makedirs(miner_dir, exist_ok=True)
    exe = os.path.join(miner_dir, name)
    with open(exe, "w") as f:
        f.write("#!/bin/sh\n" + script)
    os.chmod(exe, os.stat(exe).st_mode | stat.S_IXUSR)
    with open(os.path.join(miner_dir, "config.json"), "w") as f:
        json.dump({"pools": []}, f)


class SupervisorTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        root = self._tmp.name
        self.apps_dir = os.path.join(root, "apps")
        self.config_path = os.path.join(root, "config", "config.json")
        _install_miner(self.apps_dir)
        self.api = FakeControlPlane()
        self.write_config()
        self.store = RigConfigStore(self.config_path)
        self.supervisor = Supervisor(
            self.store, api=self.api, apps_dir=self.apps_dir,
            log_file=os.path.join(root, "miner.log"), clock=lambda: NOW,
            grace_period=5, kill_wait=2,
        )

    def tearDown(self) -> None:
        self.supervisor.shutdown()
        self._tmp.cleanup()

    def write_config(self, miner=MINER, mining=None, restarts=()):
        os.makedirs(os.path.dirname(self.config_path), exist_ok=True)
        with open(self.config_path, "w") as f:
            json.dump({
                "minerId": "m-1",
                "minerSoftware": miner,
                "schedules": {
                    "scheduledMining": mining or {"enabled": False, "periods": []},
                    "scheduledRestarts": list(restarts),
                },
            }, f)
        if hasattr(self, "store"):
            self.store.load()

    def test_start_and_stop(self) -> None:
        self.assertTrue(self.supervisor.start())
        self.assertEqual(self.supervisor.state, MinerState.running)
        self.assertTrue(self.supervisor.is_alive())
        self.assertFalse(self.supervisor.start())  # already running
        self.assertTrue(self.supervisor.stop())
        self.assertEqual(self.supervisor.state, MinerState.stopped)
        self.assertFalse(self.supervisor.is_alive())
        self.assertFalse(self.supervisor.stop())

    def test_manual_stop_is_sticky(self) -> None:
        self.assertEqual(self.supervisor.evaluate_schedule(), "started")
        self.supervisor.stop(manual=True)
        self.assertEqual(self.supervisor.state, MinerState.manually_stopped)
        self.assertTrue(self.supervisor.manual_override)
        for _ in range(3):
            self.assertIsNone(self.supervisor.evaluate_schedule())
        self.assertEqual(self.supervisor.state, MinerState.manually_stopped)

        self.assertTrue(self.supervisor.start())
        self.assertFalse(self.supervisor.manual_override)
        self.assertEqual(self.supervisor.state, MinerState.running)

    def test_manual_stop_while_idle_still_suspends_schedule(self) -> None:
        self.assertFalse(self.supervisor.stop(manual=True))
        self.assertEqual(self.supervisor.state, MinerState.manually_stopped)
        self.assertIsNone(self.supervisor.evaluate_schedule())
        self.assertFalse(self.supervisor.is_alive())

    def test_schedule_stops_miner_outside_window(self) -> None:
        self.supervisor.start()
        self.write_config(mining={"enabled": True, "periods": [
            {"days": ["saturday"], "startTime": "08:00", "endTime": "18:00"},
        ]})
        self.assertEqual(self.supervisor.desired_state(), RunIntent.should_not_run)
        self.assertEqual(self.supervisor.evaluate_schedule(), "stopped")
        self.assertEqual(self.supervisor.state, MinerState.stopped)
        self.assertFalse(self.supervisor.manual_override)

    def test_schedule_starts_miner_inside_window(self) -> None:
        self.write_config(mining={"enabled": True, "periods": [
            {"days": ["wednesday"], "startTime": "08:00", "endTime": "18:00"},
        ]})
        self.assertEqual(self.supervisor.evaluate_schedule(), "started")
        self.assertTrue(self.supervisor.is_running())

    def test_restart_replaces_process(self) -> None:
        self.supervisor.start()
        first = self.supervisor.pid
        self.assertTrue(self.supervisor.restart())
        self.assertNotEqual(self.supervisor.pid, first)
        self.assertEqual(self.supervisor.state, MinerState.running)

    def test_scheduled_restart_fires_once(self) -> None:
        self.write_config(restarts=["09:00"])
        self.supervisor.start()
        first = self.supervisor.pid
        at = datetime(2024, 1, 3, 9, 0, 20)
        self.assertEqual(self.supervisor.evaluate_schedule(at), "restarted")
        self.assertNotEqual(self.supervisor.pid, first)
        self.assertIsNone(self.supervisor.evaluate_schedule(datetime(2024, 1, 3, 9, 0, 50)))

    def test_crash_is_detected_reported_and_recovered(self) -> None:
        self.supervisor.start()
        proc = self.supervisor._proc
        proc.kill()
        proc.wait(timeout=5)
        with self.assertLogs("rigwarden.miner_manager", level="WARNING"):
            self.assertTrue(self.supervisor.health_check())
        self.assertEqual(self.supervisor.crash_count, 1)
        self.assertEqual(len(self.api.errors), 1)
        miner_id, message, info = self.api.errors[0]
        self.assertEqual(miner_id, "m-1")
        self.assertTrue(info["wasRunning"])
        self.assertEqual(info["crashCount"], 1)
        self.assertTrue(info["lastCrashTime"].startswith("2024-01-03T09:00"))
        # scheduling is disabled, so the crash handler brings it straight back
        self.assertTrue(self.supervisor.is_running())
        self.assertFalse(self.supervisor.health_check())
        self.assertEqual(self.supervisor.crash_count, 0)

    def test_missing_binary_raises_spawn_error(self) -> None:
        self.write_config(miner="ghost")
        with self.assertRaises(ProcessSpawnError):
            self.supervisor.start()
        self.assertEqual(self.supervisor.state, MinerState.stopped)

    def test_spawn_error_from_schedule_is_reported_not_raised(self) -> None:
        self.write_config(miner="ghost")
        with self.assertLogs("rigwarden.miner_manager", level="ERROR"):
            self.assertIsNone(self.supervisor.evaluate_schedule())
        self.assertEqual(len(self.api.errors), 1)

    def test_miner_ignoring_sigterm_is_killed(self) -> None:
        _install_miner(self.apps_dir, "stubborn", script="trap '' TERM\n: > ready\nexec sleep 60\n")
        self.write_config(miner="stubborn")
        self.supervisor.grace_period = 0.5
        self.supervisor.start()
        ready = os.path.join(self.apps_dir, "stubborn", "ready")
        deadline = time.monotonic() + 5
        while not os.path.exists(ready) and time.monotonic() < deadline:
            time.sleep(0.05)
        proc = self.supervisor._proc
        started = time.monotonic()
        with self.assertLogs("rigwarden.miner_manager", level="WARNING") as logs:
            self.assertTrue(self.supervisor.stop())
        self.assertLess(time.monotonic() - started, 0.5 + 2 + 1)
        self.assertIn("SIGKILL", logs.output[0])
        self.assertEqual(self.supervisor.state, MinerState.stopped)
        self.assertIsNotNone(proc.poll())

    def test_process_surviving_sigkill_raises(self) -> None:
        proc = mock.Mock(pid=999999)
        proc.poll.return_value = None
        proc.wait.side_effect = subprocess.TimeoutExpired("miner", 1)
        self.supervisor._proc = proc
        self.supervisor._state = MinerState.running
        self.write_config(mining={"enabled": True, "periods": [
            {"days": ["saturday"], "startTime": "08:00", "endTime": "18:00"},
        ]})
        with mock.patch.object(Supervisor, "_signal") as send:
            with self.assertRaises(ProcessTerminationError):
                self.supervisor.stop()
            self.assertEqual(self.supervisor.state, MinerState.running)
            with self.assertLogs("rigwarden.miner_manager", level="ERROR"):
                self.assertIsNone(self.supervisor.evaluate_schedule())
        self.assertEqual(len(self.api.errors), 1)
        self.assertEqual([c.args[1] for c in send.call_args_list][:2], [signal.SIGTERM, signal.SIGKILL])
        self.supervisor._proc = None
        self.supervisor._state = MinerState.stopped

    def test_miner_software_falls_back_to_apps_dir(self) -> None:
        self.write_config(miner=None)
        self.assertEqual(self.supervisor.miner_software(), MINER)

    def test_status(self) -> None:
        status = self.supervisor.status()
        self.assertEqual(status.state, MinerState.stopped)
        self.assertEqual(status.desired_state, RunIntent.should_run)
        self.assertIsNone(status.next_schedule_change)
        self.assertEqual(status.miner_software, MINER)


if __name__ == "__main__":
    unittest.main()
