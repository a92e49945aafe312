from __future__ import annotations

import pytest

from casetools import notifications as notify
from casetools import cases as case_svc
from casetools.policy import update_policy

pytestmark = pytest.mark.unit


def test_unknown_type_rejected(db, make_user):
    user = make_user()
    with pytest.raises(ValueError):
        notify.send_notification(db, user["id"], "CARRIER_PIGEON", "s", "m")


def test_inactive_user_gets_nothing(db, make_user):
    user = make_user(status="inactive")
    assert notify.send_notification(db, user["id"], "REMINDER", "s", "m") is None
    assert notify.send_notification(db, "USR-GONE", "REMINDER", "s", "m") is None
    assert db["notifications"] == []


def test_notify_users_sends_once_per_user(db, make_user):
    a, b = make_user(), make_user()
    sent = notify.notify_users(db, [a["id"], b["id"], a["id"]], "REMINDER", "s", "m")
    assert [n["userId"] for n in sent] == [a["id"], b["id"]]


def test_case_recipients_direct_then_team(db, make_user, make_team):
    a, b, c = make_user(), make_user(), make_user()
    team = make_team("Ops", [b, a, c])
    case = case_svc.create_case(db, "x", assigned_user_ids=[a["id"]], assigned_team_ids=[team["id"]])
    assert notify.case_recipients(db, case) == [a["id"], b["id"], c["id"]]


def test_case_created_routing(db, make_user, make_team):
    admin = make_user(role="admin")
    direct, member = make_user(), make_user()
    team = make_team("Ops", [member])
    case = case_svc.create_case(db, "x", severity="critical", assigned_user_ids=[direct["id"]],
                                assigned_team_ids=[team["id"]])
    sent = notify.notify_case_created(db, case)
    assert [(n["userId"], n["type"]) for n in sent] == [(direct["id"], "CASE_ASSIGNED"),
                                                        (member["id"], "TEAM_CASE_CREATED")]
    assert sent[0]["priority"] == "high"
    assert all(n["userId"] != admin["id"] for n in sent)


def test_team_fan_out_can_be_switched_off(db, make_user, make_team):
    direct, member = make_user(), make_user()
    team = make_team("Ops", [member])
    case = case_svc.create_case(db, "x", assigned_user_ids=[direct["id"]], assigned_team_ids=[team["id"]])
    update_policy({"notify_team_on_create": False})
    sent = notify.notify_case_created(db, case)
    assert [(n["userId"], n["type"]) for n in sent] == [(direct["id"], "CASE_ASSIGNED")]


def test_unassigned_case_goes_to_admins(db, make_user):
    admin = make_user(role="admin")
    make_user(role="manager")
    case = case_svc.create_case(db, "orphan")
    sent = notify.notify_case_created(db, case)
    assert [n["userId"] for n in sent] == [admin["id"]]
    assert sent[0]["subject"] == f"Unassigned Alert Case Created: {case['caseNumber']}"


def test_inbox_operations(db, make_user):
    a, b = make_user(), make_user()
    first = notify.send_notification(db, a["id"], "REMINDER", "one", "m")
    notify.send_notification(db, a["id"], "REMINDER", "two", "m")
    notify.send_notification(db, b["id"], "REMINDER", "other", "m")

    assert notify.unread_count(db, a["id"]) == 2
    assert len(notify.list_notifications(db, a["id"])) == 2

    with pytest.raises(PermissionError):
        notify.mark_read(db, first["id"], b["id"])
    notify.mark_read(db, first["id"], a["id"])
    assert first["status"] == "read" and first["readAt"]
    assert [n["subject"] for n in notify.list_notifications(db, a["id"], unread_only=True)] == ["two"]

    assert notify.mark_all_read(db, a["id"]) == 1
    assert notify.unread_count(db, a["id"]) == 0
    assert notify.unread_count(db, b["id"]) == 1
