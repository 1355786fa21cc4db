"""
RigWarden Miner process supervisor

Owns the miner's OS process and its run state (stopped / running /
manually_stopped). The schedule tick and the health check both funnel
into start / stop / restart here, serialised behind one re-entrant lock.

A manual stop is sticky: schedule evaluation never starts the miner again
until someone calls start() explicitly. The flag lives in memory only.
"""

import logging
import os
import signal
import subprocess
import threading
import traceback
from datetime import datetime

from rigwarden import schedule
from rigwarden.config import (
    APPS_DIR, MINER_LOG_FILE, STOP_GRACE_PERIOD, KILL_WAIT,
    MAX_CONSECUTIVE_CRASHES, SCHEDULED_RESTART_TOLERANCE,
)
from rigwarden.errors import ProcessSpawnError, ProcessTerminationError
from rigwarden.models import MinerState, RunIntent, SupervisorStatus

logger = logging.getLogger(__name__)


class Supervisor:
    """Process lifecycle + schedule-driven state machine for one miner."""

    def __init__(self, config_store, api=None, apps_dir=APPS_DIR, log_file=MINER_LOG_FILE,
                 clock=datetime.now, grace_period=STOP_GRACE_PERIOD, kill_wait=KILL_WAIT,
                 restart_tolerance=SCHEDULED_RESTART_TOLERANCE):
        self.config_store = config_store
        self.api = api
        self.apps_dir = apps_dir
        self.log_file = log_file
        self.grace_period = grace_period
        self.kill_wait = kill_wait
        self.restart_tolerance = restart_tolerance
        self._clock = clock
        self._lock = threading.RLock()
        self._proc = None
        self._log_handle = None
        self._state = MinerState.stopped
        self._manual_override = False
        self._fired_restarts = set()
        self.crash_count = 0
        self.last_crash_time = None

    # ── Introspection ───────────────────────────────────────

    @property
    def state(self) -> MinerState:
        return self._state

    @property
    def manual_override(self) -> bool:
        return self._manual_override

    @property
    def pid(self):
        proc = self._proc
        return proc.pid if proc is not None else None

    def is_alive(self) -> bool:
        proc = self._proc
        return proc is not None and proc.poll() is None

    def is_running(self) -> bool:
        return self._state == MinerState.running and self.is_alive()

    def miner_software(self):
        """Configured miner, else the first apps/<name>/ that carries a config.json."""
        configured = self.config_store.miner_software
        if configured:
            return configured
        try:
            for name in sorted(os.listdir(self.apps_dir)):
                if os.path.isfile(os.path.join(self.apps_dir, name, "config.json")):
                    return name
        except OSError:
            pass
        return None

    def desired_state(self, now=None) -> RunIntent:
        mining = self.config_store.schedules.scheduled_mining
        return schedule.evaluate(mining, now or self._clock())

    def status(self, now=None) -> SupervisorStatus:
        now = now or self._clock()
        change = schedule.next_schedule_change(self.config_store.schedules.scheduled_mining, now)
        return SupervisorStatus(
            state=self._state,
            desired_state=self.desired_state(now),
            next_schedule_change=change.isoformat() if change else None,
            manual_override=self._manual_override,
            pid=self.pid,
            miner_software=self.miner_software(),
        )

    def schedule_status(self, now=None):
        return schedule.describe(self.config_store.schedules, now or self._clock(), self.is_running())

    # ── Transitions ─────────────────────────────────────────

    def start(self) -> bool:
        """Spawn the miner. Returns False if it was already running."""
        with self._lock:
            if self._state == MinerState.running and self.is_alive():
                return False

            miner = self.miner_software()
            if not miner:
                raise ProcessSpawnError("no miner software configured")
            miner_dir = os.path.join(self.apps_dir, miner)
            executable = os.path.join(miner_dir, miner)
            config_path = os.path.join(miner_dir, "config.json")
            if not os.path.isfile(executable):
                raise ProcessSpawnError(f"miner binary missing: {executable}")
            if not os.path.isfile(config_path):
                raise ProcessSpawnError(f"miner config missing: {config_path}")
            if not os.access(executable, os.X_OK):
                try:
                    os.chmod(executable, os.stat(executable).st_mode | 0o111)
                except OSError as e:
                    raise ProcessSpawnError(f"miner binary not executable: {e}") from e

            self._close_log()
            try:
                os.makedirs(os.path.dirname(os.path.abspath(self.log_file)), exist_ok=True)
                self._log_handle = open(self.log_file, "ab")
                self._proc = subprocess.Popen(
                    [executable, "-c", config_path],
                    cwd=miner_dir,
                    stdin=subprocess.DEVNULL,
                    stdout=self._log_handle,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                )
            except OSError as e:
                self._close_log()
                self._proc = None
                raise ProcessSpawnError(f"could not start {miner}: {e}") from e

            self._state = MinerState.running
            self._manual_override = False
            logger.info(f"[MINER] Started {miner} (pid {self._proc.pid}) with {config_path}")
            return True

    def stop(self, manual=False) -> bool:
        """Terminate the miner. Returns False if there was nothing to stop."""
        with self._lock:
            if self._state != MinerState.running:
                if manual and self._state == MinerState.stopped:
                    # a human asked for "off": keep it off even if a window opens later
                    self._manual_override = True
                    self._state = MinerState.manually_stopped
                    logger.info("[MINER] Manual stop while idle, schedule auto-start suspended")
                return False

            self._terminate()
            self._proc = None
            self._close_log()
            if manual:
                self._manual_override = True
                self._state = MinerState.manually_stopped
                logger.info("[MINER] Miner manually stopped by user")
            else:
                self._state = MinerState.stopped
                logger.info("[MINER] Miner stopped")
            return True

    def restart(self) -> bool:
        """stop(manual=False) + start() as one critical section."""
        with self._lock:
            logger.info("[MINER] Restarting miner")
            self.stop(manual=False)
            return self.start()

    def _terminate(self):
        proc = self._proc
        if proc is None or proc.poll() is not None:
            return
        self._signal(proc, signal.SIGTERM)
        try:
            proc.wait(timeout=self.grace_period)
            return
        except subprocess.TimeoutExpired:
            logger.warning(f"[MINER] pid {proc.pid} ignored SIGTERM for {self.grace_period}s, sending SIGKILL")
        self._signal(proc, signal.SIGKILL)
        try:
            proc.wait(timeout=self.kill_wait)
        except subprocess.TimeoutExpired:
            raise ProcessTerminationError(f"pid {proc.pid} survived SIGKILL")

    @staticmethod
    def _signal(proc, sig):
        try:
            os.killpg(proc.pid, sig)
        except ProcessLookupError:
            pass
        except OSError:
            proc.send_signal(sig)

    def _close_log(self):
        if self._log_handle is not None:
            try:
                self._log_handle.close()
            except OSError:
                pass
            self._log_handle = None

    # ── Timers ──────────────────────────────────────────────

    def evaluate_schedule(self, now=None):
        """One schedule tick. Returns "started", "stopped", "restarted" or None."""
        now = now or self._clock()
        with self._lock:
            try:
                if self._scheduled_restart_due(now):
                    if self._state == MinerState.running:
                        logger.info("[SCHEDULE] Scheduled restart")
                        self.restart()
                        return "restarted"
                    logger.info("[SCHEDULE] Scheduled restart skipped, miner is not running")

                intent = self.desired_state(now)
                if intent == RunIntent.should_run and self._state == MinerState.stopped \
                        and not self._manual_override:
                    logger.info("[SCHEDULE] Inside mining window, starting miner")
                    self.start()
                    return "started"
                if intent == RunIntent.should_not_run and self._state == MinerState.running:
                    logger.info("[SCHEDULE] Outside mining window, stopping miner")
                    self.stop(manual=False)
                    return "stopped"
            except (ProcessSpawnError, ProcessTerminationError) as e:
                logger.error(f"[SCHEDULE] {e}")
                self.report_error(str(e), traceback.format_exc())
            return None

    def _scheduled_restart_due(self, now):
        today = now.date().isoformat()
        self._fired_restarts = {k for k in self._fired_restarts if k[0] >= today}
        due = False
        for entry in self.config_store.schedules.scheduled_restarts:
            key = schedule.restart_due(entry, now, self.restart_tolerance)
            if key and key not in self._fired_restarts:
                self._fired_restarts.add(key)
                due = True
        return due

    def health_check(self, now=None) -> bool:
        """Detect a dead miner that should be running. Returns True on crash."""
        with self._lock:
            if self._state != MinerState.running:
                return False
            if self.is_alive():
                self.crash_count = 0
                return False

            code = self._proc.returncode if self._proc is not None else None
            self._proc = None
            self._close_log()
            self._state = MinerState.stopped
            self.crash_count += 1
            self.last_crash_time = (now or self._clock()).astimezone()
            message = f"Miner crash detected (exit {code}, crash {self.crash_count})"
            if self.crash_count >= MAX_CONSECUTIVE_CRASHES:
                logger.error(f"[MINER] {message}")
            else:
                logger.warning(f"[MINER] {message}")
            self.report_error(message, was_running=True)
            self.evaluate_schedule(now)
            return True

    # ── Reporting ───────────────────────────────────────────

    def report_error(self, message, stack="", was_running=None):
        if self.api is None:
            return
        miner_id = self.config_store.miner_id
        if not miner_id:
            logger.debug("[MINER] No minerId yet, error not reported")
            return
        self.api.log_miner_error(miner_id, message, stack, {
            "minerSoftware": self.miner_software(),
            "wasRunning": self.is_alive() if was_running is None else was_running,
            "crashCount": self.crash_count,
            "lastCrashTime": self.last_crash_time.isoformat() if self.last_crash_time else None,
            "timestamp": self._clock().astimezone().isoformat(),
        })

    def shutdown(self):
        """Stop the miner on agent exit; errors are logged, not raised."""
        with self._lock:
            try:
                self.stop(manual=False)
            except ProcessTerminationError as e:
                logger.error(f"[MINER] {e}")
