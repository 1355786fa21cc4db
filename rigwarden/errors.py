"""
RigWarden Error taxonomy
None of these is allowed to take the agent down; callers log and fall back.
"""


class RigwardenError(Exception):
    """Base class for all agent errors."""


class ProbeFailure(RigwardenError):
    """A data source (shell command, pseudo-file, miner API) failed or timed out."""

    def __init__(self, probe, reason=""):
        self.probe = probe
        self.reason = reason
        super().__init__(f"{probe}: {reason}" if reason else probe)


class ProcessSpawnError(RigwardenError):
    """Miner binary missing, not executable, or refused by the OS."""


class ProcessTerminationError(RigwardenError):
    """Miner process survived SIGTERM and SIGKILL."""


class PersistenceError(RigwardenError):
    """Telemetry, history or config could not be written to disk."""


class ConfigFetchError(RigwardenError):
    """Control plane did not return a usable configuration."""


class CorruptStateError(RigwardenError):
    """An on-disk state file is unreadable or structurally invalid."""

    def __init__(self, path, reason=""):
        self.path = path
        self.reason = reason
        super().__init__(f"{path}: {reason}" if reason else str(path))


class ActionError(RigwardenError):
    """A remote action is unknown or could not be carried out."""
