from __future__ import annotations

import httpx
import pytest

from casetools.grafana import GrafanaClient, GrafanaIntegrationError

pytestmark = pytest.mark.unit

RULES = [
    {"uid": "uid-1", "title": "Revenue drop", "folderUID": "ra", "labels": {"severity": "high"}},
    {"uid": "uid-2", "title": "Usage gap", "folderUID": "ra"},
]


def _client(handler) -> GrafanaClient:
    return GrafanaClient("http://grafana.test/", api_key="glsa_token", transport=httpx.MockTransport(handler))


def test_list_alert_rules_sends_api_key():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["auth"] = request.headers.get("Authorization")
        return httpx.Response(200, json=RULES)

    with _client(handler) as client:
        assert client.list_alert_rules() == RULES
    assert seen == {"path": "/api/v1/provisioning/alert-rules", "auth": "Bearer glsa_token"}


def test_unexpected_listing_format_raises():
    with _client(lambda request: httpx.Response(200, json={"rules": RULES})) as client:
        with pytest.raises(GrafanaIntegrationError):
            client.list_alert_rules()


def test_http_error_is_wrapped():
    with _client(lambda request: httpx.Response(403, json={"message": "forbidden"})) as client:
        with pytest.raises(GrafanaIntegrationError, match="403"):
            client.get_alert_rule("uid-1")


def test_connection_failure_is_wrapped():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with _client(handler) as client:
        with pytest.raises(GrafanaIntegrationError, match="unreachable"):
            client.list_folders()


def test_connection_status_connected():
    with _client(lambda request: httpx.Response(200, json={"database": "ok", "version": "10.4.1"})) as client:
        status = client.connection_status()
    assert status["connected"] is True
    assert status["status"] == "CONNECTED"
    assert status["version"] == "10.4.1"
    assert status["url"] == "http://grafana.test"


def test_connection_status_never_raises():
    with _client(lambda request: httpx.Response(500, text="boom")) as client:
        status = client.connection_status()
    assert status["connected"] is False
    assert status["status"] == "DISCONNECTED"
    assert "500" in status["errorDetails"]
