"""
CaseTools — Runtime Settings

Centralized state for the admin-tunable system settings: SLA targets,
alert de-duplication, auto-close and auto-assignment behaviour.

Architecture:
  - DEFAULT_POLICY: base configuration with env var overrides
  - _active_policy: mutable runtime state, updated via the admin API
  - get_policy() / update_policy() / reset_policy()
  - Accessors: sla_hours_for_severity(), sla_hours_for_priority()

Every module that needs a setting calls get_policy() or an accessor.
"""

import os
import copy as _copy


# ============================================================
# DEFAULT POLICY: base configuration with env var overrides
# ============================================================
DEFAULT_POLICY = {
    # ── SLA TARGETS (hours) ──
    "sla_severity_hours": {
        "critical": int(os.environ.get("SLA_CRITICAL_HOURS", "4")),
        "high": int(os.environ.get("SLA_HIGH_HOURS", "12")),
        "medium": int(os.environ.get("SLA_MEDIUM_HOURS", "24")),
        "low": int(os.environ.get("SLA_LOW_HOURS", "72")),
    },
    "sla_priority_hours": {"1": 4, "2": 8, "3": 24, "4": 72},
    "sla_default_hours": int(os.environ.get("SLA_DEFAULT_HOURS", "24")),
    "sla_warning_pct": float(os.environ.get("SLA_WARNING_PCT", "75")),
    "sla_auto_escalate": os.environ.get("SLA_AUTO_ESCALATE", "false").lower() == "true",

    # ── ALERT INTAKE ──
    "duplicate_window_minutes": int(os.environ.get("DUPLICATE_WINDOW_MINUTES", "5")),
    "auto_close_resolved": os.environ.get("AUTO_CLOSE_RESOLVED", "true").lower() == "true",
    "auto_assign_enabled": os.environ.get("AUTO_ASSIGN_ENABLED", "true").lower() == "true",
    "require_webhook_signature": os.environ.get("REQUIRE_WEBHOOK_SIGNATURE", "true").lower() == "true",

    # ── NOTIFICATIONS ──
    "notify_team_on_create": True,
    "notify_admins_on_unassigned": True,
}


# ============================================================
# RUNTIME STATE: mutable, updated via API
# ============================================================
_active_policy = _copy.deepcopy(DEFAULT_POLICY)


def get_policy() -> dict:
    """Get the active system settings."""
    return _active_policy


def update_policy(updates: dict) -> dict:
    """Update specific settings. Unknown keys and mistyped values are ignored.
    Returns the full updated policy."""
    for key, value in updates.items():
        if key not in _active_policy:
            continue
        expected_type = type(DEFAULT_POLICY[key])
        if expected_type == dict and isinstance(value, dict):
            for sub_key, sub_val in value.items():
                sub_key = str(sub_key)
                if sub_key in _active_policy[key] and isinstance(sub_val, (int, float)) \
                        and not isinstance(sub_val, bool):
                    _active_policy[key][sub_key] = max(1, int(sub_val))
        elif expected_type == bool:
            if isinstance(value, bool):
                _active_policy[key] = value
        elif isinstance(value, (int, float)) and not isinstance(value, bool):
            if key == "sla_warning_pct":
                value = max(0.0, min(100.0, float(value)))
            else:
                value = max(0, int(value))
            _active_policy[key] = value
    return _active_policy


def reset_policy():
    """Reset policy to defaults. Used in testing."""
    global _active_policy
    _active_policy = _copy.deepcopy(DEFAULT_POLICY)
    return _active_policy


# ============================================================
# ACCESSORS
# ============================================================
def sla_hours_for_severity(severity: str) -> int:
    p = get_policy()
    return int(p["sla_severity_hours"].get((severity or "").lower(), p["sla_default_hours"]))


def sla_hours_for_priority(priority) -> int:
    p = get_policy()
    return int(p["sla_priority_hours"].get(str(priority), p["sla_default_hours"]))


def sla_warning_fraction() -> float:
    return get_policy()["sla_warning_pct"] / 100.0


def duplicate_window_minutes() -> int:
    return int(get_policy()["duplicate_window_minutes"])
