"""
RigWarden Shell boundary
All probes shell out through a CommandRunner so tests can swap in a fake.
"""

import logging
import os
import subprocess

from rigwarden.config import COMMAND_TIMEOUT
from rigwarden.errors import ProbeFailure

logger = logging.getLogger(__name__)


class CommandRunner:
    """Runs shell commands and reads pseudo-files."""

    def run(self, cmd, timeout=COMMAND_TIMEOUT):
        """Run ``cmd`` through the shell. Returns (returncode, stdout, stderr)."""
        try:
            result = subprocess.run(
                cmd, shell=True, capture_output=True, text=True, timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            raise ProbeFailure(cmd, f"timed out after {timeout}s")
        except OSError as e:
            raise ProbeFailure(cmd, str(e))
        return result.returncode, result.stdout, result.stderr

    def output(self, cmd, timeout=COMMAND_TIMEOUT):
        """stdout of ``cmd``, stripped. Non-zero exit raises ProbeFailure."""
        rc, out, err = self.run(cmd, timeout=timeout)
        if rc != 0:
            raise ProbeFailure(cmd, (err or "").strip() or f"exit {rc}")
        return out.strip()

    def succeeds(self, cmd, timeout=COMMAND_TIMEOUT):
        try:
            rc, _, _ = self.run(cmd, timeout=timeout)
        except ProbeFailure:
            return False
        return rc == 0

    def read_file(self, path):
        try:
            with open(path, "r", errors="replace") as f:
                return f.read()
        except OSError as e:
            raise ProbeFailure(path, str(e))

    def exists(self, path):
        return os.path.exists(path)

    def env(self, name, default=None):
        return os.environ.get(name, default)
