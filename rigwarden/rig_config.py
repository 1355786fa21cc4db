"""
RigWarden Rig config store
Local config/config.json (identity, thresholds, schedules), kept in sync
with the control plane. The local minerId is never overwritten by a sync.
"""

import logging
import os
import threading
import time

from pydantic import ValidationError

from rigwarden.config import RIG_CONFIG_PATH, RIG_CONFIG_CACHE_TTL, MAX_CONFIG_BACKUPS
from rigwarden.errors import ConfigFetchError, CorruptStateError, PersistenceError
from rigwarden.lru_cache import BoundedCache
from rigwarden.models import RigConfig, Schedules, Thresholds
from rigwarden import storage

logger = logging.getLogger(__name__)

_CACHE_KEY = "rig-config"


class RigConfigStore:
    """Owns config/config.json. Reads go through a short-lived cache."""

    def __init__(self, path=RIG_CONFIG_PATH, api=None, cache_ttl=RIG_CONFIG_CACHE_TTL,
                 clock=time.monotonic):
        self.path = path
        self.api = api
        self.cache_ttl = cache_ttl
        self._cache = BoundedCache(1, clock=clock)
        self._lock = threading.Lock()

    # === Read ===

    def get(self) -> RigConfig:
        config = self._cache.get(_CACHE_KEY, ttl=self.cache_ttl)
        if config is None:
            config = self.load()
        return config

    def load(self) -> RigConfig:
        """Read from disk; create defaults when missing, quarantine and reset when corrupt."""
        with self._lock:
            try:
                raw = storage.read_json(self.path)
                if raw is None:
                    logger.info(f"[CONFIG] No rig config at {self.path}, creating defaults")
                    config = RigConfig()
                    self._write(config, backup=False)
                else:
                    config = RigConfig.model_validate(raw)
            except (CorruptStateError, ValidationError) as e:
                logger.error(f"[CONFIG] Rig config unusable, resetting to defaults: {e}")
                try:
                    storage.quarantine(self.path)
                except PersistenceError as qe:
                    logger.error(f"[CONFIG] {qe}")
                config = RigConfig()
                self._write(config, backup=False)
            self._cache.set(_CACHE_KEY, config)
            return config

    @property
    def miner_id(self) -> str:
        return self.get().miner_id

    @property
    def miner_software(self):
        return self.get().miner_software

    @property
    def schedules(self) -> Schedules:
        return self.get().schedules

    # === Write ===

    def save(self, config: RigConfig):
        with self._lock:
            self._write(config, backup=True)
            self._cache.set(_CACHE_KEY, config)

    def _write(self, config, backup):
        if backup and os.path.exists(self.path):
            try:
                storage.create_backup(self.path)
                storage.rotate_backups(self.path, MAX_CONFIG_BACKUPS)
            except PersistenceError as e:
                logger.warning(f"[CONFIG] Backup skipped: {e}")
        try:
            storage.write_json_atomic(self.path, config.to_json_dict())
        except PersistenceError as e:
            logger.error(f"[CONFIG] {e}")

    # === Control-plane sync ===

    def sync_with_api(self) -> bool:
        """Pull identity, thresholds and schedules. Stale values are kept on failure."""
        if self.api is None:
            return False
        current = self.get()
        try:
            remote = self.api.get_miner_config()
        except ConfigFetchError as e:
            logger.warning(f"[CONFIG] Sync failed, keeping local config: {e}")
            return False

        try:
            merged = self.merge(current, remote)
        except (ValidationError, ConfigFetchError) as e:
            logger.error(f"[CONFIG] Control plane sent an invalid config, keeping local config: {e}")
            return False

        if merged != current:
            if merged.miner_software != current.miner_software:
                logger.info(f"[CONFIG] Miner software: {current.miner_software} → {merged.miner_software}")
            self.save(merged)
            logger.info("[CONFIG] Rig config synchronized")
        return True

    @staticmethod
    def merge(current: RigConfig, remote: dict) -> RigConfig:
        """Overlay a control-plane config on ``current``.

        Raises ConfigFetchError when a nested section has the wrong shape.
        """
        if not isinstance(remote, dict):
            raise ConfigFetchError(f"config is a {type(remote).__name__}, expected an object")
        remote_id = remote.get("minerId")
        if remote_id and current.miner_id and remote_id != current.miner_id:
            logger.warning(f"[CONFIG] Control plane reports minerId {remote_id}, "
                           f"keeping local {current.miner_id}")

        thresholds = current.thresholds.to_json_dict()
        remote_thresholds = _section(remote, "thresholds")
        thresholds.update({k: v for k, v in remote_thresholds.items() if v is not None})

        schedules = current.schedules
        remote_schedules = _section(remote, "schedules")
        if remote_schedules:
            mining = _section(remote_schedules, "scheduledMining", "schedules.")
            schedules = Schedules.model_validate({
                "scheduledMining": {
                    "enabled": mining.get("enabled", current.schedules.scheduled_mining.enabled),
                    "periods": mining.get("periods",
                                          [w.to_json_dict() for w in current.schedules.scheduled_mining.windows]),
                },
                "scheduledRestarts": remote_schedules.get(
                    "scheduledRestarts",
                    [r.to_json_dict() for r in current.schedules.scheduled_restarts]),
            })

        return RigConfig(
            miner_id=current.miner_id or remote_id or "",
            rig_id=remote.get("rigId") or current.rig_id,
            name=remote.get("name") or current.name,
            miner_software=remote.get("minerSoftware") or current.miner_software,
            thresholds=Thresholds.model_validate(thresholds),
            schedules=schedules,
        )


def _section(parent: dict, key: str, prefix: str = "") -> dict:
    value = parent.get(key) or {}
    if not isinstance(value, dict):
        raise ConfigFetchError(f"{prefix}{key} is a {type(value).__name__}, expected an object")
    return value
