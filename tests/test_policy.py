from __future__ import annotations

import pytest

from casetools import policy

pytestmark = pytest.mark.unit


def test_defaults():
    p = policy.get_policy()
    assert p["sla_severity_hours"] == {"critical": 4, "high": 12, "medium": 24, "low": 72}
    assert p["duplicate_window_minutes"] == 5
    assert p["auto_close_resolved"] is True
    assert policy.sla_warning_fraction() == 0.75


def test_priority_and_severity_lookups():
    assert [policy.sla_hours_for_priority(p) for p in (1, 2, 3, 4)] == [4, 8, 24, 72]
    assert policy.sla_hours_for_priority(9) == 24
    assert policy.sla_hours_for_severity("HIGH") == 12
    assert policy.sla_hours_for_severity(None) == 24


def test_update_ignores_unknown_and_mistyped_values():
    policy.update_policy({"not_a_setting": 1, "auto_close_resolved": "no", "duplicate_window_minutes": True})
    p = policy.get_policy()
    assert "not_a_setting" not in p
    assert p["auto_close_resolved"] is True
    assert p["duplicate_window_minutes"] == 5


def test_update_clamps_values():
    policy.update_policy({"sla_warning_pct": 140, "duplicate_window_minutes": -3,
                          "sla_priority_hours": {1: 0, "7": 5}})
    p = policy.get_policy()
    assert p["sla_warning_pct"] == 100.0
    assert p["duplicate_window_minutes"] == 0
    assert p["sla_priority_hours"]["1"] == 1
    assert "7" not in p["sla_priority_hours"]


def test_reset_restores_defaults():
    policy.update_policy({"sla_severity_hours": {"critical": 1}})
    assert policy.sla_hours_for_severity("critical") == 1
    policy.reset_policy()
    assert policy.sla_hours_for_severity("critical") == 4
    assert policy.DEFAULT_POLICY["sla_severity_hours"]["critical"] == 4
