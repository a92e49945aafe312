"""
CaseTools — Grafana HTTP Client
Read-only access to the Grafana alerting provisioning API, used to sync rule assignments
and report connection status.
"""
import time
import logging
from datetime import datetime

import httpx

from casetools.config import GRAFANA_URL, GRAFANA_API_KEY, GRAFANA_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)


class GrafanaIntegrationError(Exception):
    """Grafana could not be reached or answered with an error."""


class GrafanaClient:
    def __init__(self, base_url: str = GRAFANA_URL, api_key: str = GRAFANA_API_KEY,
                 timeout: float = GRAFANA_TIMEOUT_SECONDS, transport: httpx.BaseTransport = None):
        self.base_url = base_url.rstrip("/")
        headers = {"Accept": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.Client(base_url=self.base_url, headers=headers,
                                    timeout=timeout, transport=transport)

    def close(self):
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def _get(self, path: str, params: dict = None):
        try:
            response = self._client.get(path, params=params)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise GrafanaIntegrationError(
                f"Grafana {path} returned {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise GrafanaIntegrationError(f"Grafana {path} unreachable: {e}") from e
        try:
            return response.json()
        except ValueError as e:
            raise GrafanaIntegrationError(f"Grafana {path} returned non-JSON body") from e

    def health(self) -> dict:
        return self._get("/api/health")

    def list_alert_rules(self) -> list:
        rules = self._get("/api/v1/provisioning/alert-rules")
        if not isinstance(rules, list):
            raise GrafanaIntegrationError("Unexpected alert rule listing format")
        return rules

    def get_alert_rule(self, uid: str) -> dict:
        return self._get(f"/api/v1/provisioning/alert-rules/{uid}")

    def list_folders(self) -> list:
        return self._get("/api/folders")

    def connection_status(self) -> dict:
        """Never raises; reports DISCONNECTED instead."""
        started = time.monotonic()
        try:
            body = self.health()
        except GrafanaIntegrationError as e:
            logger.warning("Grafana connection check failed: %s", e)
            return {"connected": False, "status": "DISCONNECTED", "message": "Failed to connect to Grafana",
                    "url": self.base_url, "lastCheck": datetime.now().isoformat(),
                    "responseTimeMs": 0, "errorDetails": str(e)}
        return {"connected": True, "status": "CONNECTED", "message": "Grafana is accessible",
                "version": body.get("version", "Unknown") if isinstance(body, dict) else "Unknown",
                "url": self.base_url, "lastCheck": datetime.now().isoformat(),
                "responseTimeMs": int((time.monotonic() - started) * 1000)}
