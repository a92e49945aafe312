from __future__ import annotations

from datetime import timedelta

import pytest

from casetools import alerts as alert_svc
from casetools import teams as team_svc
from casetools.db import NotFoundError

from conftest import NOW, firing_alert

pytestmark = pytest.mark.unit


# ============================================================
# TEAMS
# ============================================================
def test_create_team_adds_leader_as_member(db, make_user):
    member, lead = make_user(), make_user(role="senior_analyst")
    team = team_svc.create_team(db, "Fraud Ops", member_ids=[member["id"], member["id"]], leader_id=lead["id"])
    assert team["memberIds"] == [member["id"], lead["id"]]
    assert team["leaderId"] == lead["id"]


def test_team_names_are_unique_ignoring_case(db, make_team):
    make_team("Fraud Ops", [])
    other = make_team("Billing", [])
    with pytest.raises(ValueError):
        team_svc.create_team(db, "FRAUD OPS")
    with pytest.raises(ValueError):
        team_svc.update_team(db, other["id"], {"name": "fraud ops"})


def test_unknown_member_rejected(db):
    with pytest.raises(NotFoundError):
        team_svc.create_team(db, "Ghosts", member_ids=["USR-NOPE"])


def test_update_with_unknown_leader_changes_nothing(db, make_team):
    team = make_team("Fraud Ops", [])
    with pytest.raises(NotFoundError):
        team_svc.update_team(db, team["id"], {"name": "Renamed", "leaderId": "USR-NOPE"})
    assert team["name"] == "Fraud Ops"


def test_membership_changes(db, make_user, make_team):
    a, b = make_user(), make_user()
    team = make_team("Ops", [a], leader=a)
    team_svc.add_member(db, team["id"], b["id"])
    team_svc.add_member(db, team["id"], b["id"])
    assert team["memberIds"] == [a["id"], b["id"]]

    team_svc.remove_member(db, team["id"], a["id"])
    assert team["memberIds"] == [b["id"]]
    assert team["leaderId"] is None

    team_svc.set_leader(db, team["id"], a["id"])
    assert team["memberIds"] == [b["id"], a["id"]]
    assert [t["id"] for t in team_svc.teams_for_user(db, a["id"])] == [team["id"]]


def test_team_members_skips_inactive(db, make_user, make_team):
    a = make_user()
    gone = make_user(status="inactive")
    team = make_team("Ops", [a, gone])
    assert [u["id"] for u in team_svc.team_members(db, team["id"])] == [a["id"]]
    assert len(team_svc.team_members(db, team["id"], active_only=False)) == 2


def test_list_teams(db, make_team):
    make_team("Fraud Ops", [])
    billing = make_team("Billing", [])
    team_svc.update_team(db, billing["id"], {"active": False})
    assert [t["name"] for t in team_svc.list_teams(db, active=True)] == ["Fraud Ops"]
    assert [t["name"] for t in team_svc.list_teams(db, search="bill")] == ["Billing"]


# ============================================================
# ALERT HISTORY
# ============================================================
def _record(db, fingerprint="fp-1", status="firing", now=NOW, **kwargs):
    alert = firing_alert(fingerprint, status=status)
    return alert_svc.record_alert(db, alert, f"ALERT-{fingerprint}", "Revenue drop", "", "rule-abc", now=now, **kwargs)


def test_record_alert(db, make_rule):
    rule = make_rule()
    rec = _record(db, rule=rule)
    assert rec["status"] == "open"
    assert rec["severity"] == "high"
    assert rec["ruleId"] == rule["id"]
    assert rec["ruleName"] == "Revenue Drop"
    assert rec["triggeredAt"] == "2024-03-01T11:58:00Z"
    assert rec["receivedAt"] == NOW.isoformat()


def test_acknowledge_only_open_alerts(db, make_user):
    user = make_user()
    rec = _record(db)
    alert_svc.acknowledge_alert(db, rec["id"], user["id"])
    assert rec["status"] == "acknowledged" and rec["acknowledgedBy"] == user["id"]
    with pytest.raises(ValueError):
        alert_svc.acknowledge_alert(db, rec["id"], user["id"])


def test_resolve_alert_history_by_fingerprint(db):
    first = _record(db)
    second = _record(db)
    other = _record(db, "fp-2")
    alert_svc.close_alert(db, second["id"], "lead")
    resolved = alert_svc.resolve_alert_history(db, "fp-1", now=NOW + timedelta(minutes=5))
    assert resolved == [first]
    assert first["resolvedBy"] == "grafana"
    assert second["status"] == "closed"
    assert other["status"] == "open"


def test_list_alerts_filters(db):
    _record(db, "fp-1", now=NOW - timedelta(hours=2))
    newer = _record(db, "fp-2", now=NOW)
    _record(db, "fp-3", status="resolved", now=NOW - timedelta(hours=1))
    assert [r["id"] for r in alert_svc.list_alerts(db, status="open", since=(NOW - timedelta(hours=1)).isoformat())] \
        == [newer["id"]]
    assert len(alert_svc.list_alerts(db, rule_uid="rule-abc")) == 3
    assert len(alert_svc.list_alerts(db, limit=2)) == 2
    with pytest.raises(ValueError):
        alert_svc.list_alerts(db, status="snoozed")


def test_close_alert_records_actor_once(db):
    rec = _record(db)
    alert_svc.close_alert(db, rec["id"], "lead")
    assert rec["status"] == "closed"
    assert rec["closedBy"] == "lead"
    assert rec["closedAt"] is not None
    with pytest.raises(ValueError):
        alert_svc.close_alert(db, rec["id"], "lead")
