"""
RigWarden Remote actions
Polls the control plane for commands queued by an operator (restart, stop,
start, reload config) and reports each one as in_progress, then completed
or failed.

A stop_mining action is a manual stop, so the schedule will not start the
miner again until a start_mining action or a local start.
"""

import logging
import threading

from pydantic import ValidationError

from rigwarden.errors import ActionError, ConfigFetchError, RigwardenError
from rigwarden.models import ActionCommand, ActionStatus, MinerAction

logger = logging.getLogger(__name__)


class ActionDispatcher:
    """Runs pending control-plane actions against the supervisor and config store."""

    def __init__(self, api, supervisor, config_store, miner_api=None):
        self.api = api
        self.supervisor = supervisor
        self.config_store = config_store
        self.miner_api = miner_api
        self._busy = threading.Lock()
        self._handlers = {
            ActionCommand.restart_miner.value: self._restart_miner,
            ActionCommand.stop_mining.value: self._stop_mining,
            ActionCommand.start_mining.value: self._start_mining,
            ActionCommand.reload_config.value: self._reload_config,
        }

    def check_pending(self) -> int:
        """One poll. Returns how many actions were processed."""
        if not self._busy.acquire(blocking=False):
            logger.debug("[ACTIONS] Already processing actions, skipping check")
            return 0
        try:
            miner_id = self.config_store.miner_id
            if not miner_id:
                logger.debug("[ACTIONS] No minerId yet, skipping check")
                return 0
            try:
                pending = self.api.get_pending_actions(miner_id)
            except ConfigFetchError as e:
                logger.warning(f"[ACTIONS] Could not fetch pending actions: {e}")
                return 0
            if not pending:
                return 0

            logger.info(f"[ACTIONS] Found {len(pending)} pending action(s)")
            processed = 0
            for raw in pending:
                try:
                    action = MinerAction.model_validate(raw)
                except ValidationError as e:
                    logger.error(f"[ACTIONS] Ignoring malformed action: {e}")
                    continue
                self.process(action)
                processed += 1
            return processed
        finally:
            self._busy.release()

    def process(self, action: MinerAction) -> bool:
        """Run one action and report its outcome. Returns True on success."""
        logger.info(f"[ACTIONS] Processing {action.action_id}: {action.command}")
        self.api.update_action_status(action.action_id, ActionStatus.in_progress.value)
        try:
            handler = self._handlers.get(action.command)
            if handler is None:
                raise ActionError(f"unsupported command: {action.command}")
            handler()
        except RigwardenError as e:
            logger.error(f"[ACTIONS] Action {action.action_id} failed: {e}")
            self.api.update_action_status(action.action_id, ActionStatus.failed.value, str(e))
            return False
        self.api.update_action_status(action.action_id, ActionStatus.completed.value)
        logger.info(f"[ACTIONS] Action {action.action_id} completed")
        return True

    # ── Handlers ─────────────────────────────────────────

    def _restart_miner(self):
        if self.miner_api is not None:
            self.miner_api.clear_cache()
        self.supervisor.restart()

    def _stop_mining(self):
        self.supervisor.stop(manual=True)

    def _start_mining(self):
        self.supervisor.start()

    def _reload_config(self):
        if not self.config_store.sync_with_api():
            raise ActionError("config sync with the control plane failed")
