"""
RigWarden Control-plane API client
Pooled requests.Session with bounded retry and a fixed per-request timeout.
"""

import logging
import threading
from typing import Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from rigwarden.config import (
    API_URL, RIG_TOKEN, API_TIMEOUT, API_MAX_RETRIES, API_RETRY_BACKOFF,
)
from rigwarden.errors import ConfigFetchError

logger = logging.getLogger(__name__)


class ControlPlaneClient:
    """Thread-safe client for the rig management API."""

    def __init__(self, base_url: str = API_URL, rig_token: str = RIG_TOKEN,
                 timeout: float = API_TIMEOUT, retries: int = API_MAX_RETRIES,
                 session: Optional[requests.Session] = None):
        self._base = base_url.rstrip("/")
        self._token = rig_token
        self._timeout = timeout
        self._lock = threading.Lock()
        self._session = session or self._build_session(retries)

    @staticmethod
    def _build_session(retries):
        session = requests.Session()
        retry = Retry(
            total=retries,
            backoff_factor=API_RETRY_BACKOFF,
            status_forcelist=(502, 503, 504),
            allowed_methods=frozenset(["GET", "PUT", "POST"]),
            raise_on_status=False,
        )
        adapter = HTTPAdapter(max_retries=retry, pool_connections=4, pool_maxsize=4)
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        session.headers.update({"Content-Type": "application/json"})
        return session

    @property
    def is_configured(self) -> bool:
        return bool(self._base and self._token)

    def _request(self, method, path, **kwargs):
        url = f"{self._base}{path}"
        with self._lock:
            resp = self._session.request(method, url, timeout=self._timeout, **kwargs)
        resp.raise_for_status()
        if not resp.content:
            return None
        return resp.json()

    # === Configuration ===

    def get_miner_config(self) -> dict:
        """Rig config (identity, thresholds, schedules) for this rig token."""
        if not self.is_configured:
            raise ConfigFetchError("rig token not configured")
        try:
            data = self._request("GET", "/api/miners/config", params={"rigToken": self._token})
        except (requests.RequestException, ValueError) as e:
            raise ConfigFetchError(f"config fetch failed: {e}") from e
        if not isinstance(data, dict):
            raise ConfigFetchError("config response is not an object")
        return data

    def get_flightsheet(self, miner_id: str) -> dict:
        """Desired mining config for ``miner_id``."""
        if not self.is_configured:
            raise ConfigFetchError("rig token not configured")
        try:
            data = self._request(
                "GET", "/api/miners/flightsheet",
                params={"rigToken": self._token, "minerId": miner_id},
            )
        except (requests.RequestException, ValueError) as e:
            raise ConfigFetchError(f"flightsheet fetch failed: {e}") from e
        if not isinstance(data, dict) or not data:
            raise ConfigFetchError("flightsheet response is empty or not an object")
        return data

    # === Reporting ===

    def update_telemetry(self, miner_id: str, telemetry: dict) -> bool:
        if not self.is_configured:
            return False
        try:
            self._request("PUT", "/api/miners/update", json={
                "rigToken": self._token,
                "minerId": miner_id,
                "telemetry": telemetry,
            })
        except (requests.RequestException, ValueError) as e:
            logger.error(f"[API] Telemetry push failed: {e}")
            return False
        logger.debug("[API] Telemetry sent")
        return True

    def log_miner_error(self, miner_id: str, message: str, stack: str = "",
                        additional_info: Optional[dict] = None):
        try:
            return self._request("POST", "/api/miners/error", json={
                "minerId": miner_id,
                "message": message,
                "stack": stack,
                "additionalInfo": additional_info or {},
            })
        except (requests.RequestException, ValueError) as e:
            logger.error(f"[API] Could not report miner error: {e}")
            return None

    # === Remote actions ===

    def get_pending_actions(self, miner_id: str) -> list:
        """Actions queued for ``miner_id`` that have not been picked up yet."""
        if not self.is_configured:
            raise ConfigFetchError("rig token not configured")
        try:
            data = self._request("GET", f"/api/miners-actions/miner/{miner_id}/pending")
        except (requests.RequestException, ValueError) as e:
            raise ConfigFetchError(f"pending actions fetch failed: {e}") from e
        if data is None:
            return []
        if not isinstance(data, list):
            raise ConfigFetchError("pending actions response is not a list")
        return data

    def update_action_status(self, action_id: str, status: str, error: Optional[str] = None) -> bool:
        body = {"status": status}
        if error:
            body["error"] = error
        try:
            self._request("PUT", f"/api/miners-actions/{action_id}/complete", json=body)
        except (requests.RequestException, ValueError) as e:
            logger.error(f"[API] Could not mark action {action_id} {status}: {e}")
            return False
        return True

    def close(self):
        self._session.close()
