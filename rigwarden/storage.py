"""
RigWarden On-disk state helpers
Atomic JSON writes, timestamped backups and quarantine of corrupt files.
This agent is the only writer of its storage directory.
"""

import json
import logging
import os
import re
import shutil
import tempfile
import time

from rigwarden.errors import CorruptStateError, PersistenceError

logger = logging.getLogger(__name__)


def _now_ms(clock):
    return int(clock() * 1000)


def write_json_atomic(path, data, indent=2):
    """Write ``data`` as JSON to ``path`` via a temp file + rename."""
    directory = os.path.dirname(os.path.abspath(path))
    try:
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=".tmp-", dir=directory)
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(data, f, indent=indent)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
    except (OSError, TypeError, ValueError) as e:
        raise PersistenceError(f"could not write {path}: {e}") from e


def read_json(path, default=None):
    """Parsed JSON from ``path``; ``default`` if the file does not exist.

    Raises CorruptStateError if the file exists but cannot be read or parsed.
    """
    if not os.path.exists(path):
        return default
    try:
        with open(path, "r") as f:
            return json.load(f)
    except (OSError, ValueError) as e:
        raise CorruptStateError(path, str(e)) from e


def _backup_pattern(path):
    return re.compile(rf"^{re.escape(os.path.basename(path))}\.(\d+)\.bak$")


def create_backup(path, clock=time.time):
    """Copy ``path`` to ``<path>.<unixms>.bak``. Returns the backup path."""
    stamp = _now_ms(clock)
    backup = f"{path}.{stamp}.bak"
    while os.path.exists(backup):
        stamp += 1
        backup = f"{path}.{stamp}.bak"
    try:
        shutil.copyfile(path, backup)
    except OSError as e:
        raise PersistenceError(f"could not back up {path}: {e}") from e
    return backup


def list_backups(path):
    """Backups of ``path``, newest first, ordered by the timestamp in the name."""
    directory = os.path.dirname(os.path.abspath(path))
    pattern = _backup_pattern(path)
    found = []
    try:
        names = os.listdir(directory)
    except OSError:
        return []
    for name in names:
        match = pattern.match(name)
        if match:
            found.append((int(match.group(1)), os.path.join(directory, name)))
    found.sort(reverse=True)
    return [p for _, p in found]


def rotate_backups(path, keep):
    """Delete all but the ``keep`` newest backups. Returns the removed paths."""
    removed = []
    for stale in list_backups(path)[keep:]:
        try:
            os.remove(stale)
            removed.append(stale)
        except OSError as e:
            logger.warning(f"[STORAGE] Could not remove old backup {stale}: {e}")
    return removed


def quarantine(path, clock=time.time):
    """Rename a corrupt file out of the way. Returns the new path, or None if nothing moved."""
    if not os.path.exists(path):
        return None
    target = f"{path}.{_now_ms(clock)}.corrupt.bak"
    try:
        os.replace(path, target)
    except OSError as e:
        raise PersistenceError(f"could not quarantine {path}: {e}") from e
    logger.warning(f"[STORAGE] Quarantined corrupt file {path} → {target}")
    return target
