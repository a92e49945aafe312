from __future__ import annotations

import os
import tempfile
from datetime import datetime

os.environ["CASETOOLS_DATA_DIR"] = tempfile.mkdtemp(prefix="casetools-test-")
os.environ["PERSIST_DATA"] = "false"
os.environ["SLA_SWEEP_ENABLED"] = "false"
os.environ["SEED_ADMIN"] = "true"
os.environ["JWT_SECRET"] = "test-secret"
os.environ.pop("DATABASE_URL", None)
os.environ.pop("GRAFANA_WEBHOOK_SECRET", None)

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from casetools.db import reset_db  # noqa: E402
from casetools.policy import reset_policy  # noqa: E402
from casetools.auth import create_user, create_jwt  # noqa: E402
from casetools.teams import create_team  # noqa: E402
from casetools.rules import upsert_rule_assignment  # noqa: E402

NOW = datetime(2024, 3, 1, 12, 0, 0)
PASSWORD = "secret123"


@pytest.fixture(autouse=True)
def db():
    reset_policy()
    yield reset_db()
    reset_policy()


@pytest.fixture()
def make_user(db):
    counter = {"n": 0}

    def _make(role: str = "analyst", username: str | None = None, status: str = "active") -> dict:
        counter["n"] += 1
        name = username or f"user{counter['n']}"
        user = create_user(db, name, f"{name}@example.com", PASSWORD, role=role,
                           first_name=name.title(), last_name="Tester")
        user["status"] = status
        return user

    return _make


@pytest.fixture()
def make_team(db):
    def _make(name: str, members: list, leader: dict | None = None) -> dict:
        return create_team(db, name, member_ids=[m["id"] for m in members],
                           leader_id=leader["id"] if leader else None)

    return _make


@pytest.fixture()
def make_rule(db):
    def _make(uid: str = "rule-abc", **fields) -> dict:
        data = {"grafanaRuleUid": uid, "grafanaRuleName": fields.pop("name", "Revenue Drop"),
                "severity": "high", "category": "revenue_loss"}
        data.update(fields)
        return upsert_rule_assignment(db, data)

    return _make


@pytest.fixture()
def client(db):
    from casetools.server import app

    with TestClient(app) as test_client:
        yield test_client


def auth_headers(user: dict) -> dict:
    return {"Authorization": f"Bearer {create_jwt(user)}"}


def firing_alert(fingerprint: str = "fp-1", rule_uid: str | None = "rule-abc", **overrides) -> dict:
    labels = {"alertname": "RevenueDrop", "severity": "high", "service": "billing",
              "environment": "prod", "instance": "node-1"}
    if rule_uid:
        labels["__alert_rule_uid__"] = rule_uid
    alert = {
        "status": "firing",
        "labels": labels,
        "annotations": {"summary": "Revenue dropped \\\"sharply\\\" [no value]",
                        "description": "Billing revenue fell below \"threshold\""},
        "startsAt": "2024-03-01T11:58:00Z",
        "endsAt": "0001-01-01T00:00:00Z",
        "generatorURL": "",
        "fingerprint": fingerprint,
    }
    alert.update(overrides)
    return alert


def webhook_payload(*alerts: dict, status: str = "firing") -> dict:
    return {"receiver": "casetools", "status": status, "alerts": list(alerts),
            "groupLabels": {}, "commonLabels": {}, "commonAnnotations": {},
            "externalURL": "http://grafana:3000", "version": "1", "groupKey": "{}"}
