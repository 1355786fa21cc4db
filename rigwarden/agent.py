"""
RigWarden Agent entry point
Wires the config store, supervisor, reconciler, telemetry pipeline and
remote-action dispatcher, starts the timers and serves the local HTTP surface.

Usage: rigwarden [--status|--once]
"""

import json
import logging
import signal
import sys

import uvicorn

from rigwarden import __version__
from rigwarden.actions import ActionDispatcher
from rigwarden.api_client import ControlPlaneClient
from rigwarden.battery import BatteryProbe
from rigwarden.config import (
    AGENT_DISPLAY, HTTP_HOST, HTTP_PORT, LOG_FILE, LOG_LEVEL,
    SCHEDULE_INTERVAL, HEALTH_CHECK_INTERVAL, TELEMETRY_INTERVAL, ACTIONS_INTERVAL,
    SUPPORTED_MINERS,
)
from rigwarden.flightsheet import Reconciler
from rigwarden.hardware import HardwareProbe
from rigwarden.miner_api import MinerApiClient
from rigwarden.miner_manager import Supervisor
from rigwarden.network import NetworkProbe
from rigwarden.os_detection import EnvironmentDetector, cpu_info, detect_os
from rigwarden.rig_config import RigConfigStore
from rigwarden.server import create_app
from rigwarden.shell import CommandRunner
from rigwarden.telemetry import TelemetryPipeline
from rigwarden.workers import PeriodicWorker

logger = logging.getLogger("rigwarden")


def setup_logging(log_file=LOG_FILE, level=LOG_LEVEL):
    handlers = [logging.FileHandler(log_file, encoding="utf-8")]
    # Only add StreamHandler if stdout is a TTY (avoids double-logging under nohup)
    if sys.stdout.isatty():
        handlers.append(logging.StreamHandler(sys.stdout))
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        handlers=handlers,
    )


class RigAgent:
    """Owns every long-lived component of the agent."""

    def __init__(self, runner=None, api=None):
        self.runner = runner or CommandRunner()
        self.api = api or ControlPlaneClient()
        self.system_type = detect_os(self.runner)
        self.environment = EnvironmentDetector(self.runner)
        self.config_store = RigConfigStore(api=self.api)
        self.supervisor = Supervisor(self.config_store, api=self.api)
        self.reconciler = Reconciler(self.config_store, self.api, self.environment)
        self.miner_api = MinerApiClient()
        self.telemetry = TelemetryPipeline(
            supervisor=self.supervisor,
            config_store=self.config_store,
            hardware=HardwareProbe(self.runner, self.system_type),
            network=NetworkProbe(self.runner, self.system_type),
            battery=BatteryProbe(self.runner, self.system_type),
            miner_api=self.miner_api,
            api=self.api,
        )
        self.actions = ActionDispatcher(self.api, self.supervisor, self.config_store, self.miner_api)
        self.workers = [
            PeriodicWorker("schedule", self._schedule_tick, SCHEDULE_INTERVAL),
            PeriodicWorker("health-check", self.supervisor.health_check, HEALTH_CHECK_INTERVAL),
            PeriodicWorker("telemetry", self.telemetry.collect, TELEMETRY_INTERVAL),
            PeriodicWorker("actions", self.actions.check_pending, ACTIONS_INTERVAL),
        ]

    # ── Operations ───────────────────────────────────────

    def _schedule_tick(self):
        try:
            self.config_store.sync_with_api()
        finally:
            # a failed sync must not cost the rig its schedule
            self.supervisor.evaluate_schedule()

    def update_flightsheet(self):
        """Reconcile and restart a running miner if the change is significant."""
        self.config_store.sync_with_api()
        result = self.reconciler.reconcile()
        restarted = False
        if result.restart_required and self.supervisor.is_running():
            logger.info("[FLIGHTSHEET] Significant change, restarting miner")
            self.miner_api.clear_cache()
            restarted = self.supervisor.restart()
        return {
            "written": result.written,
            "restartRequired": result.restart_required,
            "restarted": restarted,
        }

    def bootstrap(self):
        """Startup sequence: load state, sync config, reconcile once, apply the schedule."""
        logger.info(f"{AGENT_DISPLAY} {__version__} starting on {self.system_type.value}")
        self.environment.profile()
        self.telemetry.initialize()
        self.config_store.load()
        self.config_store.sync_with_api()

        miner = self.supervisor.miner_software()
        if miner and miner not in SUPPORTED_MINERS:
            logger.warning(f"[MINER] {miner} is not a supported miner, telemetry will use fallbacks")
        if self.config_store.miner_id:
            self.reconciler.reconcile()
        else:
            logger.warning("[CONFIG] No minerId yet, flightsheet sync deferred")
        self.supervisor.evaluate_schedule()

    def start(self):
        self.bootstrap()
        for worker in self.workers:
            worker.start()

    def stop(self):
        for worker in self.workers:
            worker.stop()
        self.supervisor.shutdown()
        self.miner_api.close()
        self.api.close()
        logger.info(f"{AGENT_DISPLAY} stopped")

    def run(self):
        """Start timers, serve HTTP until interrupted, then shut down."""
        self.start()
        try:
            uvicorn.run(create_app(self), host=HTTP_HOST, port=HTTP_PORT, log_level="warning")
        finally:
            self.stop()

    # ── CLI helpers ──────────────────────────────────────

    def status(self):
        print(f"{AGENT_DISPLAY} {__version__}")
        print(f"System: {self.system_type.value}")
        print(f"Environment: {self.environment.profile().summary()}")
        print(f"CPU: {json.dumps(cpu_info(self.runner))}")
        config = self.config_store.get()
        print(f"Miner ID: {config.miner_id or '(unregistered)'}")
        print(f"Miner software: {self.supervisor.miner_software() or '(none)'}")
        print(json.dumps(self.supervisor.schedule_status(), indent=2))

    def once(self):
        """One telemetry cycle, printed as JSON. Does not touch the miner."""
        self.telemetry.initialize()
        print(json.dumps(self.telemetry.collect(), indent=2))


def _handle_signal(sig, frame):
    """Graceful shutdown on SIGINT/SIGTERM."""
    logger.info(f"Received signal {sig}, shutting down...")
    sys.exit(0)


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    setup_logging()
    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    agent = RigAgent()
    if argv:
        if argv[0] == "--status":
            agent.status()
        elif argv[0] == "--once":
            agent.once()
        else:
            print("Usage: rigwarden [--status|--once]")
            return 2
        return 0
    agent.run()
    return 0


if __name__ == "__main__":
    sys.exit(main())
