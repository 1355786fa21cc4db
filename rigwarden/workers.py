"""
RigWarden Background timers
Schedule tick, health check, telemetry collection and the remote-action
poll, each on its own daemon thread.
"""

import logging
import threading

logger = logging.getLogger(__name__)


class PeriodicWorker:
    """Calls ``task()`` every ``interval`` seconds until stopped.

    Exceptions from the task are logged and the loop carries on.
    """

    def __init__(self, name, task, interval, run_immediately=False):
        self.name = name
        self.task = task
        self.interval = interval
        self.run_immediately = run_immediately
        self._thread = None
        self._running = False
        self._wake = threading.Event()

    def start(self):
        if self._running:
            return
        self._running = True
        self._wake.clear()
        self._thread = threading.Thread(target=self._loop, daemon=True, name=self.name)
        self._thread.start()
        logger.info(f"[WORKER] {self.name} started ({self.interval}s)")

    def stop(self, timeout=None):
        self._running = False
        self._wake.set()
        if timeout is not None and self._thread is not None:
            self._thread.join(timeout)

    def is_running(self):
        return self._running and self._thread is not None and self._thread.is_alive()

    def run_once(self):
        try:
            self.task()
        except Exception as e:
            logger.error(f"[WORKER] {self.name} failed: {e}", exc_info=True)

    def _loop(self):
        if self.run_immediately:
            self.run_once()
        while self._running:
            if self._wake.wait(self.interval):
                break
            self.run_once()
