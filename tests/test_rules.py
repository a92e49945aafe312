from __future__ import annotations

import pytest

from casetools import rules as rule_svc
from casetools import cases as case_svc
from casetools.db import NotFoundError

pytestmark = pytest.mark.unit


def test_upsert_creates_then_updates_by_uid(db, make_rule):
    rule = make_rule("uid-1", name="Roaming leakage")
    again = rule_svc.upsert_rule_assignment(db, {"grafanaRuleUid": "uid-1", "description": "tap files"})
    assert again is rule
    assert len(db["rule_assignments"]) == 1
    assert rule["description"] == "tap files"
    assert rule["grafanaRuleName"] == "Roaming leakage"
    assert rule["active"] is True and rule["autoAssignEnabled"] is True


def test_upsert_requires_uid(db):
    with pytest.raises(ValueError):
        rule_svc.upsert_rule_assignment(db, {"grafanaRuleName": "nameless"})


def test_invalid_enums_fall_back_to_defaults(db, make_rule):
    rule = make_rule(severity="urgent", category="weird", assignmentStrategy="random")
    assert rule["severity"] == "medium"
    assert rule["category"] == "operational"
    assert rule["assignmentStrategy"] == "manual"


def test_unknown_escalation_team_rejected(db, make_rule):
    with pytest.raises(NotFoundError):
        make_rule(escalationTeamId="TEAM-NOPE")


def test_assign_users_validates_before_changing(db, make_user, make_rule):
    analyst = make_user()
    rule = make_rule()
    with pytest.raises(NotFoundError):
        rule_svc.assign_users_and_teams(db, rule["id"], [analyst["id"], "USR-NOPE"])
    assert rule["assignedUserIds"] == []


def test_assign_users_notifies_new_members_only(db, make_user, make_rule):
    a, b = make_user(), make_user()
    rule = make_rule(assignedUserIds=[a["id"]])
    rule_svc.assign_users_and_teams(db, rule["id"], [a["id"], b["id"]])
    assert rule["assignedUserIds"] == [a["id"], b["id"]]
    notes = [n for n in db["notifications"] if n["type"] == "RULE_ASSIGNMENT_UPDATE"]
    assert [n["userId"] for n in notes] == [a["id"], b["id"]]


def test_replace_and_remove_assignments(db, make_user, make_team, make_rule):
    a, b = make_user(), make_user()
    team = make_team("Billing", [b])
    rule = make_rule(assignedUserIds=[a["id"]], assignedTeamIds=[team["id"]])
    rule_svc.upsert_rule_assignment(db, {"grafanaRuleUid": rule["grafanaRuleUid"], "assignedUserIds": [b["id"]]})
    assert rule["assignedUserIds"] == [b["id"]]
    assert rule["assignedTeamIds"] == []
    rule_svc.remove_assignments(db, rule["id"], user_ids=[b["id"]])
    assert rule["assignedUserIds"] == []


def test_list_and_rules_for_user(db, make_user, make_team, make_rule):
    analyst = make_user()
    team = make_team("Fraud Ops", [analyst])
    direct = make_rule("uid-direct", name="SIM box", category="fraud_alert", assignedUserIds=[analyst["id"]])
    via_team = make_rule("uid-team", name="Interconnect", assignedTeamIds=[team["id"]])
    make_rule("uid-other", name="Other", active=False)

    assert [r["id"] for r in rule_svc.rules_for_user(db, analyst["id"])] == [direct["id"], via_team["id"]]
    assert [r["id"] for r in rule_svc.list_rule_assignments(db, category="fraud_alert")] == [direct["id"]]
    assert len(rule_svc.list_rule_assignments(db, active=True)) == 2
    assert [r["id"] for r in rule_svc.list_rule_assignments(db, search="inter")] == [via_team["id"]]


def test_all_assigned_users_dedupes_and_skips_inactive(db, make_user, make_team, make_rule):
    a, b = make_user(), make_user()
    gone = make_user(status="inactive")
    team = make_team("Ops", [a, b, gone])
    rule = make_rule(assignedUserIds=[b["id"]], assignedTeamIds=[team["id"]])
    assert rule_svc.all_assigned_users(db, rule) == [b["id"], a["id"]]


def test_round_robin_rotates_and_persists_cursor(db, make_user, make_rule):
    a, b, c = make_user(), make_user(), make_user()
    rule = make_rule(assignmentStrategy="round_robin", assignedUserIds=[a["id"], b["id"], c["id"]])
    picks = [rule_svc.determine_assignee(db, rule) for _ in range(4)]
    assert picks == [a["id"], b["id"], c["id"], a["id"]]
    assert rule["roundRobinCursor"] == 1


def test_load_based_picks_least_loaded_with_list_order_ties(db, make_user, make_rule):
    a, b, c = make_user(), make_user(), make_user()
    case_svc.create_case(db, "busy", assigned_user_ids=[a["id"]])
    rule = make_rule(assignmentStrategy="load_based", assignedUserIds=[a["id"], b["id"], c["id"]])
    assert rule_svc.determine_assignee(db, rule) == b["id"]


def test_team_based_prefers_leader(db, make_user, make_team, make_rule):
    member, lead = make_user(), make_user(role="senior_analyst")
    team = make_team("Leads", [member], leader=lead)
    rule = make_rule(assignmentStrategy="team_based", assignedTeamIds=[team["id"]])
    assert rule_svc.determine_assignee(db, rule) == lead["id"]

    lead["status"] = "inactive"
    assert rule_svc.determine_assignee(db, rule) == member["id"]


def test_no_candidates_returns_none(db, make_rule):
    rule = make_rule(assignmentStrategy="round_robin")
    assert rule_svc.determine_assignee(db, rule) is None
    assert rule_svc.build_assignment(db, rule) == {"userIds": [], "teamIds": [], "autoAssigned": False}


def test_build_assignment_manual_keeps_everyone(db, make_user, make_team, make_rule):
    a, b = make_user(), make_user()
    team = make_team("Billing", [b])
    rule = make_rule(assignedUserIds=[a["id"]], assignedTeamIds=[team["id"]])
    assert rule_svc.build_assignment(db, rule) == {"userIds": [a["id"]], "teamIds": [team["id"]],
                                                   "autoAssigned": False}


def test_build_assignment_with_auto_assign_disabled(db, make_user, make_rule):
    a, b = make_user(), make_user()
    rule = make_rule(assignmentStrategy="round_robin", assignedUserIds=[a["id"], b["id"]])
    result = rule_svc.build_assignment(db, rule, auto_assign=False)
    assert result["userIds"] == [a["id"], b["id"]]
    assert result["autoAssigned"] is False
    assert rule["roundRobinCursor"] == 0


def test_build_assignment_with_strategy_picks_one(db, make_user, make_rule):
    a, b = make_user(), make_user()
    rule = make_rule(assignmentStrategy="round_robin", assignedUserIds=[a["id"], b["id"]])
    assert rule_svc.build_assignment(db, rule) == {"userIds": [a["id"]], "teamIds": [], "autoAssigned": True}


def test_sync_from_grafana(db, make_rule):
    existing = make_rule("uid-existing", name="Old name", description="kept")
    grafana_rules = [
        {"uid": "uid-existing", "title": "New name", "folderUID": "folder-1",
         "data": [{"datasourceUid": "prom"}]},
        {"uid": "uid-new", "title": "Usage gap", "folderUID": "folder-2",
         "labels": {"severity": "critical", "category": "fraud_alert"},
         "annotations": {"summary": "Usage records missing"}},
        {"title": "no uid"},
    ]
    result = rule_svc.sync_from_grafana(db, grafana_rules, by="admin")
    assert result == {"created": 1, "updated": 1, "total": 2}
    assert existing["grafanaRuleName"] == "New name"
    assert existing["datasourceUid"] == "prom"
    assert existing["description"] == "kept"
    new = rule_svc.find_rule_by_uid(db, "uid-new")
    assert new["severity"] == "critical"
    assert new["category"] == "fraud_alert"
    assert new["description"] == "Usage records missing"


def test_delete_rule_assignment(db, make_rule):
    rule = make_rule()
    rule_svc.delete_rule_assignment(db, rule["id"])
    assert rule_svc.find_rule_by_uid(db, "rule-abc") is None
    with pytest.raises(NotFoundError):
        rule_svc.get_rule_assignment(db, rule["id"])
