"""
RigWarden Retry / fallback combinators
Every probe in the telemetry cycle goes through one of these two.
"""

import logging
import time

from rigwarden.config import PROBE_RETRIES, PROBE_RETRY_DELAY

logger = logging.getLogger(__name__)


def safe_execute(op, fallback, name="operation"):
    """One attempt. Any exception is logged at ERROR and replaced by ``fallback``."""
    try:
        return op()
    except Exception as e:
        logger.error(f"[PROBE] {name} failed: {e}")
        return fallback


def with_retry(op, fallback, name="operation", attempts=PROBE_RETRIES,
               delay=PROBE_RETRY_DELAY, sleep=time.sleep):
    """Up to ``attempts`` tries with linear backoff (attempt × delay).

    WARN while retries remain, ERROR once they are exhausted, then ``fallback``.
    """
    for attempt in range(1, attempts + 1):
        try:
            return op()
        except Exception as e:
            if attempt < attempts:
                logger.warning(f"[PROBE] {name} attempt {attempt}/{attempts} failed: {e}")
                sleep(attempt * delay)
            else:
                logger.error(f"[PROBE] {name} failed after {attempts} attempts: {e}")
    return fallback
