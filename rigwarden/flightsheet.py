"""
RigWarden Flightsheet reconciler

Fetches the miner config (the "flightsheet") for this rig, applies the
handful of environment-only tweaks a phone needs, and decides whether the
result differs from apps/<miner>/config.json in a way that warrants a
restart. Only the dotted paths in SIGNIFICANT_FLIGHTSHEET_FIELDS count;
anything else (cosmetic keys, arrays xmrig autosaves into its own config
after the first run) is ignored.

The file is only written when the change is significant or no file exists.
"""

import copy
import json
import logging
import os

from rigwarden.config import APPS_DIR, SIGNIFICANT_FLIGHTSHEET_FIELDS, MOBILE_PRINT_TIME
from rigwarden.errors import ConfigFetchError, CorruptStateError, PersistenceError
from rigwarden.models import ReconcileResult
from rigwarden import storage

logger = logging.getLogger(__name__)

_MISSING = object()


def get_path(data, dotted):
    """``get_path({"cpu": {"rx": [0]}}, "cpu.rx")`` → ``[0]``; missing → sentinel."""
    current = data
    for key in dotted.split("."):
        if not isinstance(current, dict) or key not in current:
            return _MISSING
        current = current[key]
    return current


def significant_changes(current, desired, fields=SIGNIFICANT_FLIGHTSHEET_FIELDS):
    """Allow-listed paths whose values differ between the two configs."""
    return [f for f in fields if get_path(current, f) != get_path(desired, f)]


def adjust_for_environment(flightsheet, profile, miner):
    """Compatibility-only tweaks. Mining parameters (pools, threads, modes) are never touched."""
    adjusted = copy.deepcopy(flightsheet)
    if not profile.is_mobile_constrained or miner != "xmrig":
        return adjusted
    if isinstance(adjusted.get("http"), dict):
        adjusted["http"]["host"] = "127.0.0.1"
    adjusted["colors"] = False
    adjusted["print-time"] = MOBILE_PRINT_TIME
    adjusted["health-print-time"] = MOBILE_PRINT_TIME
    return adjusted


def _describe(value):
    return "<absent>" if value is _MISSING else json.dumps(value)


class Reconciler:

    def __init__(self, config_store, api, environment, apps_dir=APPS_DIR,
                 fields=SIGNIFICANT_FLIGHTSHEET_FIELDS):
        self.config_store = config_store
        self.api = api
        self.environment = environment
        self.apps_dir = apps_dir
        self.fields = list(fields)

    def flightsheet_path(self, miner):
        return os.path.join(self.apps_dir, miner, "config.json")

    def current_flightsheet(self, miner=None):
        """On-disk flightsheet for ``miner`` (default: configured miner), or None."""
        miner = miner or self.config_store.miner_software
        if not miner:
            return None
        try:
            return storage.read_json(self.flightsheet_path(miner))
        except CorruptStateError as e:
            logger.error(f"[FLIGHTSHEET] {e}")
            return None

    def reconcile(self, miner_id=None) -> ReconcileResult:
        miner = self.config_store.miner_software
        miner_id = miner_id or self.config_store.miner_id
        if not miner:
            logger.error("[FLIGHTSHEET] No minerSoftware in rig config, sync with the control plane first")
            return ReconcileResult()
        if not miner_id:
            logger.error("[FLIGHTSHEET] No minerId, rig is not registered yet")
            return ReconcileResult()

        try:
            fetched = self.api.get_flightsheet(miner_id)
        except ConfigFetchError as e:
            logger.error(f"[FLIGHTSHEET] Fetch failed, keeping on-disk config: {e}")
            return ReconcileResult()

        desired = adjust_for_environment(fetched, self.environment.profile(), miner)
        path = self.flightsheet_path(miner)

        try:
            current = storage.read_json(path)
        except CorruptStateError as e:
            logger.warning(f"[FLIGHTSHEET] Existing config unreadable, replacing it: {e}")
            current = None

        if current is None:
            logger.info(f"[FLIGHTSHEET] No usable config at {path}, treating as significant")
            restart_required = True
        else:
            changed = significant_changes(current, desired, self.fields)
            for field in changed:
                logger.info(f"[FLIGHTSHEET] {field}: {_describe(get_path(current, field))} "
                            f"→ {_describe(get_path(desired, field))}")
            restart_required = bool(changed)

        if not restart_required:
            logger.debug(f"[FLIGHTSHEET] No significant changes, leaving {path} untouched")
            return ReconcileResult()

        try:
            storage.write_json_atomic(path, desired)
        except PersistenceError as e:
            logger.error(f"[FLIGHTSHEET] {e}")
            return ReconcileResult()
        logger.info(f"[FLIGHTSHEET] Config written to {path}")
        return ReconcileResult(written=True, restart_required=True)
