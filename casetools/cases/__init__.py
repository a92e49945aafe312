"""
CaseTools — Case Management & Workflow

Architecture:
  Cases are opened automatically from firing Grafana alerts (see casetools.webhooks)
  or manually by analysts. Each case tracks: assignment to users and teams,
  status workflow, SLA, an activity trail, comments and closure details.

Case Lifecycle:
  OPEN → ASSIGNED → IN_PROGRESS → RESOLVED → CLOSED
    ↑__________________________________|        |
    └───────────── reopen ──────────────────────┘
  Any open state can be CANCELLED (terminal).

SLA:
  The deadline is fixed at creation from the priority table when a priority is
  given, else from the severity table. Cases past their warning point get one
  SLA_WARNING, cases past the deadline are flagged breached once and get one
  SLA_BREACH. Breach flags never clear.

Quick actions:
  acknowledge, false positive, escalate and merge are one-call workflows on
  top of the transition and assignment primitives.
"""

import random
import uuid
import logging
from datetime import datetime, timedelta

from casetools.config import (
    CASE_STATUSES, OPEN_STATUSES, SEVERITIES, CASE_CATEGORIES, SEVERITY_PRIORITY,
)
from casetools.db import NotFoundError, find_by_id, new_id, log_system_event, parse_ts
from casetools.policy import (
    get_policy, sla_hours_for_priority, sla_hours_for_severity, sla_warning_fraction,
)
from casetools.auth import get_user, is_active
from casetools.teams import get_team, teams_for_user
from casetools import notifications as notify

logger = logging.getLogger(__name__)

# ============================================================
# CASE CONSTANTS
# ============================================================
ALLOWED_TRANSITIONS = {
    "open":         ["assigned", "in_progress", "resolved", "closed", "cancelled"],
    "assigned":     ["open", "in_progress", "resolved", "closed", "cancelled"],
    "in_progress":  ["assigned", "resolved", "closed", "cancelled"],
    "resolved":     ["open", "in_progress", "closed"],
    "closed":       ["open"],  # reopen
    "cancelled":    [],  # Terminal
}

CASE_EDITABLE = ("title", "description", "severity", "priority", "category", "tags",
                 "affectedServices", "affectedCustomers", "estimatedLoss", "actualLoss", "currency")

MAX_TITLE_LENGTH = 500


def is_open(case: dict) -> bool:
    return case["status"] in OPEN_STATUSES


def priority_for_severity(severity: str) -> int:
    return SEVERITY_PRIORITY.get(severity, 3)


def _minutes_between(start, end) -> int:
    start, end = parse_ts(start), parse_ts(end)
    if not start or not end:
        return None
    return max(0, int((end - start).total_seconds() // 60))


def _activity(case: dict, atype: str, description: str, by: str,
              old_value=None, new_value=None, at: datetime = None) -> dict:
    entry = {
        "id": str(uuid.uuid4())[:8],
        "type": atype,
        "description": description,
        "oldValue": old_value,
        "newValue": new_value,
        "by": by,
        "at": (at or datetime.now()).isoformat(),
    }
    case["activities"].append(entry)
    case["updatedAt"] = entry["at"]
    return entry


# ============================================================
# NUMBERING & SLA
# ============================================================
def generate_case_number(db: dict = None, now: datetime = None) -> str:
    """CASE-<yyyyMMddHHmmss>-<0..999>, unique within the store."""
    now = now or datetime.now()
    taken = {c["caseNumber"] for c in (db or {}).get("cases", [])}
    while True:
        number = f"CASE-{now:%Y%m%d%H%M%S}-{random.randint(0, 999)}"
        if number not in taken:
            return number


def calculate_sla_deadline(severity: str = None, priority: int = None, reference: datetime = None) -> tuple:
    """Return (target_hours, deadline). Priority wins over severity when given."""
    reference = reference or datetime.now()
    if priority is not None:
        hours = sla_hours_for_priority(priority)
    else:
        hours = sla_hours_for_severity(severity)
    return hours, reference + timedelta(hours=hours)


def _build_sla(hours: int, reference: datetime, breached: bool = False, breached_at: str = None,
               basis: str = "severity") -> dict:
    return {
        "basis": basis,
        "targetHours": hours,
        "deadline": (reference + timedelta(hours=hours)).isoformat(),
        "warningAt": (reference + timedelta(hours=hours * sla_warning_fraction())).isoformat(),
        "breached": breached,
        "breachedAt": breached_at,
        "warningSent": False,
        "breachNotified": bool(breached),
    }


# ============================================================
# CASE CREATION
# ============================================================
def create_case(
    db: dict,
    title: str,
    description: str = "",
    severity: str = "medium",
    priority: int = None,
    category: str = "custom",
    created_by: str = "system",
    assigned_user_ids: list = None,
    assigned_team_ids: list = None,
    sla_priority: int = None,
    alert: dict = None,
    tags: list = None,
    affected_services: list = None,
    estimated_loss: float = None,
    currency: str = "USD",
    now: datetime = None,
) -> dict:
    """Create a case and add it to the store.

    `priority` defaults from severity. The SLA uses `sla_priority` when given,
    else the severity table; manual cases pass their explicit priority here.
    `alert` carries the Grafana linkage: alertId, fingerprint, ruleUid,
    ruleAssignmentId and the raw alert payload.
    """
    title = (title or "").strip()
    if not title:
        raise ValueError("Case title is required")
    if len(title) > MAX_TITLE_LENGTH:
        title = title[:MAX_TITLE_LENGTH - 3] + "..."
    severity = (severity or "medium").lower()
    if severity not in SEVERITIES:
        raise ValueError(f"Invalid severity '{severity}'. Must be one of: {SEVERITIES}")
    category = (category or "custom").lower()
    if category not in CASE_CATEGORIES:
        raise ValueError(f"Invalid category '{category}'. Must be one of: {CASE_CATEGORIES}")
    if priority is None:
        priority = priority_for_severity(severity)
    priority = int(priority)
    if priority not in (1, 2, 3, 4):
        raise ValueError("Priority must be between 1 and 4")
    for uid in assigned_user_ids or []:
        get_user(db, uid)
    for tid in assigned_team_ids or []:
        get_team(db, tid)

    now = now or datetime.now()
    hours, _ = calculate_sla_deadline(severity, sla_priority, now)
    alert = alert or {}
    users = list(dict.fromkeys(assigned_user_ids or []))
    teams = list(dict.fromkeys(assigned_team_ids or []))
    status = "assigned" if users else "open"

    case = {
        "id": new_id("CASE"),
        "caseNumber": generate_case_number(db, now),
        "title": title,
        "description": description or "",
        "status": status,
        "severity": severity,
        "priority": priority,
        "category": category,
        "assignedUserIds": users,
        "assignedTeamIds": teams,
        "assignedAt": now.isoformat() if users or teams else None,
        "createdAt": now.isoformat(),
        "updatedAt": now.isoformat(),
        "createdBy": created_by,
        "alertId": alert.get("alertId"),
        "alertFingerprint": alert.get("fingerprint"),
        "grafanaRuleUid": alert.get("ruleUid"),
        "ruleAssignmentId": alert.get("ruleAssignmentId"),
        "alertData": alert.get("raw"),
        "occurrences": 1,
        "lastAlertAt": now.isoformat() if alert else None,
        "tags": list(tags or []),
        "affectedServices": list(affected_services or []),
        "affectedCustomers": None,
        "estimatedLoss": estimated_loss,
        "actualLoss": None,
        "currency": currency,
        "sla": _build_sla(hours, now, basis="priority" if sla_priority is not None else "severity"),
        "acknowledgedAt": None,
        "acknowledgedBy": None,
        "responseTimeMinutes": None,
        "resolvedAt": None,
        "resolvedBy": None,
        "resolution": None,
        "resolutionTimeMinutes": None,
        "closedAt": None,
        "closedBy": None,
        "closureReason": None,
        "rootCause": None,
        "resolutionActions": None,
        "preventiveMeasures": None,
        "escalated": False,
        "escalatedAt": None,
        "escalationReason": None,
        "escalationLevel": 0,
        "falsePositive": False,
        "mergedInto": None,
        "relatedCaseIds": [],
        "reopenCount": 0,
        "activities": [],
        "comments": [],
        "statusHistory": [
            {"status": status, "at": now.isoformat(), "by": created_by, "reason": "Case created"}
        ],
    }
    _activity(case, "CREATED", f"Case created by {created_by}", created_by, new_value=status, at=now)
    db["cases"].append(case)
    log_system_event(db, "CASE_CREATED", "case", case["id"], created_by, case["caseNumber"])
    logger.info("Created case %s (%s/%s) users=%s teams=%s", case["caseNumber"], severity,
                category, users, teams)
    return case


def get_case(db: dict, case_id: str) -> dict:
    return find_by_id(db, "cases", case_id)


def get_case_by_number(db: dict, case_number: str) -> dict:
    case = next((c for c in db["cases"] if c["caseNumber"] == case_number), None)
    if case is None:
        raise NotFoundError(f"Case {case_number} not found")
    return case


def update_case(db: dict, case_id: str, updates: dict, by: str = "system") -> dict:
    """Edit case fields. Changing severity or priority recomputes the SLA from creation time."""
    case = get_case(db, case_id)
    if case["status"] in ("closed", "cancelled"):
        raise ValueError(f"Case {case['caseNumber']} is {case['status']} and cannot be edited")

    if "severity" in updates and updates["severity"] is not None:
        updates["severity"] = str(updates["severity"]).lower()
        if updates["severity"] not in SEVERITIES:
            raise ValueError(f"Invalid severity '{updates['severity']}'")
    if "category" in updates and updates["category"] is not None:
        updates["category"] = str(updates["category"]).lower()
        if updates["category"] not in CASE_CATEGORIES:
            raise ValueError(f"Invalid category '{updates['category']}'")
    if "priority" in updates and updates["priority"] is not None:
        updates["priority"] = int(updates["priority"])
        if updates["priority"] not in (1, 2, 3, 4):
            raise ValueError("Priority must be between 1 and 4")

    changed = []
    for key in CASE_EDITABLE:
        if key not in updates or updates[key] is None or updates[key] == case.get(key):
            continue
        old = case.get(key)
        case[key] = updates[key]
        changed.append(key)
        if key in ("severity", "priority", "title", "category"):
            _activity(case, "UPDATED", f"{key} changed", by, old_value=old, new_value=updates[key])

    if "severity" in changed or "priority" in changed:
        created = parse_ts(case["createdAt"])
        old_sla = case["sla"]
        # A case on the priority table stays there; an explicit priority edit moves it there
        basis = "priority" if "priority" in changed or old_sla.get("basis") == "priority" else "severity"
        hours, _ = calculate_sla_deadline(case["severity"], case["priority"] if basis == "priority" else None, created)
        case["sla"] = _build_sla(hours, created, old_sla["breached"], old_sla["breachedAt"], basis)
        case["sla"]["warningSent"] = old_sla.get("warningSent", False)
    if changed:
        notify.notify_team(db, case, "CASE_UPDATED", f"Case Updated: {case['caseNumber']}",
                           f"Fields changed: {', '.join(changed)}", exclude=by)
    return case


# ============================================================
# CASE STATUS TRANSITIONS
# ============================================================
def transition_case(case: dict, new_status: str, by: str, reason: str = "", now: datetime = None) -> dict:
    """Transition a case to a new status. Returns updated case or raises ValueError."""
    current = case["status"]
    if new_status not in CASE_STATUSES:
        raise ValueError(f"Unknown status '{new_status}'")
    if new_status not in ALLOWED_TRANSITIONS.get(current, []):
        raise ValueError(f"Cannot transition from '{current}' to '{new_status}'. Allowed: {ALLOWED_TRANSITIONS.get(current, [])}")
    if new_status == "assigned" and not (case["assignedUserIds"] or case["assignedTeamIds"]):
        raise ValueError("Cannot mark a case assigned with no assignee")

    now = now or datetime.now()
    at = now.isoformat()
    case["status"] = new_status
    case["statusHistory"].append({
        "status": new_status, "at": at, "by": by, "reason": reason
    })

    if new_status == "in_progress" and not case.get("acknowledgedAt"):
        case["acknowledgedAt"] = at
        case["acknowledgedBy"] = by
        case["responseTimeMinutes"] = _minutes_between(case["createdAt"], at)
    elif new_status == "resolved":
        case["resolvedAt"] = at
        case["resolvedBy"] = by
        case["resolution"] = reason
        case["resolutionTimeMinutes"] = _minutes_between(case["createdAt"], at)
    elif new_status in ("closed", "cancelled"):
        case["closedAt"] = at
        case["closedBy"] = by
        if case.get("resolutionTimeMinutes") is None:
            case["resolutionTimeMinutes"] = _minutes_between(case["createdAt"], at)
    elif new_status == "open" and current in ("resolved", "closed"):
        case["reopenCount"] = case.get("reopenCount", 0) + 1
        case["resolvedAt"] = None
        case["closedAt"] = None
        case["resolutionTimeMinutes"] = None

    _activity(case, "STATUS_CHANGED", reason or f"Status changed to {new_status}", by,
              old_value=current, new_value=new_status, at=now)
    return case


def reopen_case(db: dict, case_id: str, by: str, reason: str = "Case reopened", now: datetime = None) -> dict:
    """Reopen a resolved or closed case; it returns to its assignees if it has any."""
    case = get_case(db, case_id)
    if case["status"] not in ("resolved", "closed"):
        raise ValueError(f"Only resolved or closed cases can be reopened (case is {case['status']})")
    transition_case(case, "open", by, reason, now)
    case["closureReason"] = None
    if case["assignedUserIds"] or case["assignedTeamIds"]:
        transition_case(case, "assigned", by, "Returned to previous assignees", now)
    notify.notify_case_reopened(db, case)
    return case


def change_status(db: dict, case_id: str, new_status: str, by: str, reason: str = "") -> dict:
    case = get_case(db, case_id)
    if new_status == "open" and case["status"] in ("resolved", "closed"):
        return reopen_case(db, case_id, by, reason or "Case reopened")
    transition_case(case, new_status, by, reason)
    if new_status == "resolved":
        notify.notify_team(db, case, "CASE_RESOLVED", f"Case Resolved: {case['caseNumber']}",
                           reason or f"Case {case['caseNumber']} was resolved", exclude=by)
    return case


# ============================================================
# ASSIGNMENT
# ============================================================
def assign_case(db: dict, case_id: str, user_id: str, by: str) -> dict:
    """Assign or reassign a case to one user. Open cases move to assigned."""
    case = get_case(db, case_id)
    if not is_open(case):
        raise ValueError(f"Case {case['caseNumber']} is {case['status']} and cannot be assigned")
    user = get_user(db, user_id)
    if not is_active(user):
        raise ValueError(f"User {user['username']} is not active")

    old = list(case["assignedUserIds"])
    case["assignedUserIds"] = [user_id]
    case["assignedAt"] = datetime.now().isoformat()
    _activity(case, "ASSIGNED", f"Assigned to {user['username']}", by,
              old_value=",".join(old) or None, new_value=user_id)
    if case["status"] == "open":
        transition_case(case, "assigned", by, "Auto-transitioned on assignment")
    if user_id not in old:
        notify.notify_case_assigned(db, case, user_id, by)
    return case


def assign_case_to_team(db: dict, case_id: str, team_id: str, by: str) -> dict:
    case = get_case(db, case_id)
    if not is_open(case):
        raise ValueError(f"Case {case['caseNumber']} is {case['status']} and cannot be assigned")
    team = get_team(db, team_id)
    if not team.get("active", True):
        raise ValueError(f"Team {team['name']} is not active")

    old = list(case["assignedTeamIds"])
    case["assignedTeamIds"] = [team_id]
    case["assignedAt"] = datetime.now().isoformat()
    _activity(case, "ASSIGNED", f"Assigned to team {team['name']}", by,
              old_value=",".join(old) or None, new_value=team_id)
    if case["status"] == "open":
        transition_case(case, "assigned", by, "Auto-transitioned on team assignment")
    notify.notify_users(db, team["memberIds"], "CASE_ASSIGNED",
                        f"New Team Case: {case['caseNumber']}",
                        f"Case {case['caseNumber']} was assigned to {team['name']}: {case['title']}", case)
    return case


def unassign_case(db: dict, case_id: str, by: str) -> dict:
    case = get_case(db, case_id)
    old = list(case["assignedUserIds"])
    case["assignedUserIds"] = []
    _activity(case, "UNASSIGNED", "Direct assignees removed", by, old_value=",".join(old) or None)
    if case["status"] == "assigned" and not case["assignedTeamIds"]:
        transition_case(case, "open", by, "No remaining assignee")
    return case


def add_comment(db: dict, case_id: str, text: str, by: str, internal: bool = False) -> dict:
    """Add a comment to a case. Returns the comment."""
    case = get_case(db, case_id)
    text = (text or "").strip()
    if not text:
        raise ValueError("Comment text is required")
    comment = {
        "id": str(uuid.uuid4())[:8],
        "text": text,
        "by": by,
        "internal": internal,
        "at": datetime.now().isoformat(),
    }
    case["comments"].append(comment)
    _activity(case, "COMMENT_ADDED", "Comment added", by)
    notify.notify_team(db, case, "COMMENT_ADDED", f"New Comment: {case['caseNumber']}", text[:200], exclude=by)
    return comment


# ============================================================
# RESOLUTION & CLOSURE
# ============================================================
def close_case(db: dict, case_id: str, by: str, closure_reason: str, root_cause: str = None,
               resolution_actions: str = None, preventive_measures: str = None,
               actual_loss: float = None, now: datetime = None) -> dict:
    case = get_case(db, case_id)
    if not (closure_reason or "").strip():
        raise ValueError("A closure reason is required")
    transition_case(case, "closed", by, closure_reason, now)
    case["closureReason"] = closure_reason
    case["rootCause"] = root_cause
    case["resolutionActions"] = resolution_actions
    case["preventiveMeasures"] = preventive_measures
    if actual_loss is not None:
        case["actualLoss"] = actual_loss
    notify.notify_team(db, case, "CASE_CLOSED", f"Case Closed: {case['caseNumber']}", closure_reason, exclude=by)
    return case


def resolve_case_from_alert(db: dict, case: dict, auto_close: bool = None, now: datetime = None) -> dict:
    """Resolve an open case because its alert cleared; optionally auto-close it."""
    if auto_close is None:
        auto_close = get_policy()["auto_close_resolved"]
    transition_case(case, "resolved", "grafana", "Alert resolved in Grafana", now)
    if auto_close:
        reason = "Auto-closed: Alert resolved in Grafana"
        transition_case(case, "closed", "grafana", reason, now)
        case["closureReason"] = reason
    notify.notify_team(db, case, "ALERT_RESOLVED", f"Alert Resolved: {case['caseNumber']}",
                       f"The Grafana alert for case {case['caseNumber']} has resolved")
    return case


def register_repeat_alert(db: dict, case: dict, alert_id: str = None, now: datetime = None) -> dict:
    """A duplicate firing alert bumps the existing case and reopens it if it was finished."""
    now = now or datetime.now()
    case["occurrences"] = case.get("occurrences", 1) + 1
    case["lastAlertAt"] = now.isoformat()
    _activity(case, "ALERT_REPEATED", f"Alert fired again ({case['occurrences']} occurrences)",
              "grafana", new_value=alert_id, at=now)
    if case["status"] in ("resolved", "closed"):
        reopen_case(db, case["id"], "grafana", "Alert fired again", now)
        logger.info("Reopened case %s on repeated alert", case["caseNumber"])
    return case


# ============================================================
# QUERIES
# ============================================================
def find_recent_case_by_fingerprint(db: dict, fingerprint: str, window_minutes: int, now: datetime = None):
    """Newest case for the fingerprint created within the window, or None."""
    if not fingerprint:
        return None
    now = now or datetime.now()
    cutoff = now - timedelta(minutes=window_minutes)
    matches = [c for c in db["cases"] if c.get("alertFingerprint") == fingerprint
               and c["status"] != "cancelled" and parse_ts(c["createdAt"]) >= cutoff]
    return max(matches, key=lambda c: c["createdAt"]) if matches else None


def find_active_case_by_fingerprint(db: dict, fingerprint: str):
    matches = [c for c in db["cases"] if c.get("alertFingerprint") == fingerprint and is_open(c)]
    return max(matches, key=lambda c: c["createdAt"]) if matches else None


def _as_list(value):
    if value is None or value == "":
        return []
    if isinstance(value, str):
        return [v.strip() for v in value.split(",") if v.strip()]
    return list(value)


def filter_cases(db: dict, statuses=None, severities=None, priorities=None, category: str = None,
                 search: str = None, created_after=None, created_before=None,
                 assigned_to: str = None, team_id: str = None) -> list:
    cases = db["cases"]
    statuses, severities = _as_list(statuses), _as_list(severities)
    priorities = [int(p) for p in _as_list(priorities)]
    if statuses:
        cases = [c for c in cases if c["status"] in statuses]
    if severities:
        cases = [c for c in cases if c["severity"] in severities]
    if priorities:
        cases = [c for c in cases if c["priority"] in priorities]
    if category:
        cases = [c for c in cases if c["category"] == category]
    if search:
        q = search.lower()
        cases = [c for c in cases if q in c["title"].lower() or q in c["caseNumber"].lower()
                 or q in (c.get("description") or "").lower()]
    after, before = parse_ts(created_after), parse_ts(created_before)
    if after:
        cases = [c for c in cases if parse_ts(c["createdAt"]) >= after]
    if before:
        cases = [c for c in cases if parse_ts(c["createdAt"]) <= before]
    if assigned_to:
        cases = [c for c in cases if assigned_to in c["assignedUserIds"]]
    if team_id:
        cases = [c for c in cases if team_id in c["assignedTeamIds"]]
    return sorted(cases, key=lambda c: c["createdAt"], reverse=True)


def list_cases(db: dict, page: int = 0, size: int = 50, **filters) -> dict:
    items = filter_cases(db, **filters)
    page, size = max(0, int(page)), max(1, min(500, int(size)))
    return {"items": items[page * size:(page + 1) * size], "total": len(items),
            "page": page, "size": size}


def get_user_cases(db: dict, user_id: str, include_closed: bool = False) -> list:
    """Cases assigned to the user directly or to any of the user's teams."""
    team_ids = {t["id"] for t in teams_for_user(db, user_id)}
    cases = [c for c in db["cases"] if user_id in c["assignedUserIds"]
             or team_ids.intersection(c["assignedTeamIds"])]
    if not include_closed:
        cases = [c for c in cases if is_open(c)]
    return sorted(cases, key=lambda c: c["createdAt"], reverse=True)


def get_unassigned_cases(db: dict) -> list:
    """Open cases with no user or team, most urgent first, newest first within a priority."""
    cases = [c for c in db["cases"] if is_open(c)
             and not c["assignedUserIds"] and not c["assignedTeamIds"]]
    cases.sort(key=lambda c: c["createdAt"], reverse=True)
    cases.sort(key=lambda c: c["priority"])
    return cases


# ============================================================
# SLA MANAGEMENT
# ============================================================
def check_sla_status(case: dict, now: datetime = None) -> dict:
    """Check SLA status for a case. Returns SLA info with current state."""
    if not is_open(case):
        return {"status": "met" if not case["sla"]["breached"] else "breached_then_resolved",
                "breached": case["sla"]["breached"]}

    now = now or datetime.now()
    deadline = parse_ts(case["sla"]["deadline"])
    warning = parse_ts(case["sla"]["warningAt"])

    if now > deadline:
        case["sla"]["breached"] = True
        if not case["sla"]["breachedAt"]:
            case["sla"]["breachedAt"] = now.isoformat()
        hours_overdue = (now - deadline).total_seconds() / 3600
        return {"status": "breached", "breached": True,
                "hoursOverdue": round(hours_overdue, 1)}
    hours_remaining = (deadline - now).total_seconds() / 3600
    if now > warning:
        return {"status": "at_risk", "breached": case["sla"]["breached"],
                "hoursRemaining": round(hours_remaining, 1)}
    return {"status": "on_track", "breached": case["sla"]["breached"],
            "hoursRemaining": round(hours_remaining, 1)}


def run_sla_sweep(db: dict, now: datetime = None) -> list:
    """Check all active cases for SLA status, notifying each warning and breach once.
    Returns list of cases needing attention (breached or at-risk)."""
    now = now or datetime.now()
    escalate = get_policy()["sla_auto_escalate"]
    alerts = []
    for case in db["cases"]:
        if not is_open(case):
            continue
        sla = check_sla_status(case, now)
        if sla["status"] == "breached" and not case["sla"].get("breachNotified"):
            case["sla"]["breachNotified"] = True
            _activity(case, "SLA_BREACHED", "SLA deadline passed", "system", at=now)
            notify.notify_sla_breached(db, case)
            logger.warning("SLA breached on case %s", case["caseNumber"])
            if escalate and not case["escalated"]:
                escalate_case(db, case["id"], "system",
                              f"SLA breached, auto-escalated ({sla.get('hoursOverdue', 0):.1f}h overdue)")
        elif sla["status"] == "at_risk" and not case["sla"].get("warningSent"):
            case["sla"]["warningSent"] = True
            notify.notify_sla_warning(db, case)
        if sla["status"] in ("breached", "at_risk"):
            alerts.append({"caseId": case["id"], "caseNumber": case["caseNumber"],
                           "title": case["title"], "priority": case["priority"],
                           "assignedUserIds": case["assignedUserIds"],
                           "slaStatus": sla["status"], "detail": sla})
    return alerts


# ============================================================
# QUICK ACTIONS
# ============================================================
def acknowledge_case(db: dict, case_id: str, by: str) -> dict:
    case = get_case(db, case_id)
    if case["status"] not in ("open", "assigned"):
        raise ValueError(f"Case {case['caseNumber']} is {case['status']} and cannot be acknowledged")
    if by not in ("system", "grafana") and not case["assignedUserIds"]:
        case["assignedUserIds"] = [by]
        case["assignedAt"] = datetime.now().isoformat()
    transition_case(case, "in_progress", by, "Case acknowledged")
    _activity(case, "ACKNOWLEDGED", "Case acknowledged", by)
    notify.notify_team(db, case, "CASE_UPDATED", f"Case Acknowledged: {case['caseNumber']}",
                       f"Case {case['caseNumber']} is being worked on", exclude=by)
    return case


def mark_false_positive(db: dict, case_id: str, by: str, reason: str) -> dict:
    reason = (reason or "").strip() or "No reason given"
    case = close_case(db, case_id, by, f"FALSE_POSITIVE: {reason}")
    case["falsePositive"] = True
    _activity(case, "FALSE_POSITIVE", f"Marked as false positive: {reason}", by)
    return case


def escalate_case(db: dict, case_id: str, by: str, reason: str) -> dict:
    """Raise to priority 1, move to in_progress and hand over to the rule's escalation team."""
    case = get_case(db, case_id)
    if not is_open(case):
        raise ValueError(f"Case {case['caseNumber']} is {case['status']} and cannot be escalated")
    old_priority = case["priority"]
    case["priority"] = 1
    case["escalated"] = True
    case["escalatedAt"] = datetime.now().isoformat()
    case["escalationReason"] = reason
    case["escalationLevel"] = case.get("escalationLevel", 0) + 1

    rule = next((r for r in db["rule_assignments"] if r["id"] == case.get("ruleAssignmentId")), None)
    team_id = (rule or {}).get("escalationTeamId")
    if team_id:
        team = get_team(db, team_id)
        case["assignedTeamIds"] = [team_id]
        leader = next((u for u in db["users"] if u["id"] == team.get("leaderId")), None)
        if is_active(leader):
            case["assignedUserIds"] = [leader["id"]]
        case["assignedAt"] = case["escalatedAt"]
    if case["status"] != "in_progress":
        transition_case(case, "in_progress", by, "Escalated")
    _activity(case, "ESCALATED", reason or "Case escalated", by,
              old_value=str(old_priority), new_value="1")

    subject = f"ESCALATED: {case['caseNumber']}"
    message = f"Case {case['caseNumber']} was escalated: {reason}"
    sent = notify.notify_managers(db, case, subject, message)
    already = {n["userId"] for n in sent} | {by}
    notify.notify_users(db, [u for u in notify.case_recipients(db, case) if u not in already],
                        "CASE_ESCALATED", subject, message, case, priority="high")
    log_system_event(db, "CASE_ESCALATED", "case", case["id"], by, reason)
    return case


def merge_cases(db: dict, primary_id: str, secondary_ids: list, by: str) -> dict:
    """Fold secondaries into the primary and close them."""
    primary = get_case(db, primary_id)
    if not is_open(primary):
        raise ValueError(f"Primary case {primary['caseNumber']} must be open")
    secondary_ids = list(dict.fromkeys(secondary_ids or []))
    if not secondary_ids:
        raise ValueError("At least one case to merge is required")
    if primary_id in secondary_ids:
        raise ValueError("A case cannot be merged into itself")
    secondaries = [get_case(db, sid) for sid in secondary_ids]
    for sec in secondaries:
        if sec["status"] in ("closed", "cancelled"):
            raise ValueError(f"Case {sec['caseNumber']} is {sec['status']} and cannot be merged")

    for sec in secondaries:
        number = sec["caseNumber"]
        primary["description"] = f"{primary['description']}\n\n[Merged from {number}]\n{sec['description']}"
        for act in sec["activities"]:
            primary["activities"].append({**act, "id": str(uuid.uuid4())[:8],
                                          "description": f"[From {number}] {act['description']}"})
        for com in sec["comments"]:
            primary["comments"].append({**com, "id": str(uuid.uuid4())[:8],
                                        "text": f"[From {number}] {com['text']}"})
        primary["occurrences"] = primary.get("occurrences", 1) + sec.get("occurrences", 1)
        if sec["id"] not in primary["relatedCaseIds"]:
            primary["relatedCaseIds"].append(sec["id"])

        reason = f"MERGED_INTO: {primary['caseNumber']}"
        transition_case(sec, "closed", by, reason)
        sec["closureReason"] = reason
        sec["mergedInto"] = primary["id"]
        if primary["id"] not in sec["relatedCaseIds"]:
            sec["relatedCaseIds"].append(primary["id"])

    _activity(primary, "MERGED", f"Merged {len(secondaries)} case(s): "
              + ", ".join(s["caseNumber"] for s in secondaries), by,
              new_value=",".join(secondary_ids))
    return primary


# ============================================================
# BULK OPERATIONS
# ============================================================
def bulk_assign(db: dict, case_ids: list, user_id: str, by: str) -> dict:
    result = {"success": [], "errors": []}
    for cid in case_ids:
        try:
            assign_case(db, cid, user_id, by)
            result["success"].append(cid)
        except (ValueError, LookupError) as e:
            result["errors"].append({"caseId": cid, "error": str(e)})
    return result


def bulk_close(db: dict, case_ids: list, by: str, closure_reason: str) -> dict:
    result = {"success": [], "errors": []}
    for cid in case_ids:
        try:
            close_case(db, cid, by, closure_reason)
            result["success"].append(cid)
        except (ValueError, LookupError) as e:
            result["errors"].append({"caseId": cid, "error": str(e)})
    return result


# ============================================================
# CASE DASHBOARD METRICS
# ============================================================
def compute_case_metrics(cases: list, now: datetime = None) -> dict:
    """Compute case management dashboard metrics."""
    now = now or datetime.now()
    active = [c for c in cases if is_open(c)]
    resolved = [c for c in cases if c["status"] == "resolved"]
    closed = [c for c in cases if c["status"] == "closed"]

    by_status, by_severity, by_category, by_priority = {}, {}, {}, {}
    for c in cases:
        by_status[c["status"]] = by_status.get(c["status"], 0) + 1
        by_severity[c["severity"]] = by_severity.get(c["severity"], 0) + 1
        by_category[c["category"]] = by_category.get(c["category"], 0) + 1
    for c in active:
        by_priority[str(c["priority"])] = by_priority.get(str(c["priority"]), 0) + 1

    unassigned = [c for c in active if not c["assignedUserIds"] and not c["assignedTeamIds"]]
    by_assignee = {}
    for c in active:
        for uid in c["assignedUserIds"] or ["unassigned"]:
            by_assignee[uid] = by_assignee.get(uid, 0) + 1

    sla_breached, sla_at_risk = 0, 0
    for c in active:
        state = check_sla_status(c, now)["status"]
        if state == "breached":
            sla_breached += 1
        elif state == "at_risk":
            sla_at_risk += 1

    resolution = [c["resolutionTimeMinutes"] for c in resolved + closed
                  if c.get("resolutionTimeMinutes") is not None]
    response = [c["responseTimeMinutes"] for c in cases if c.get("responseTimeMinutes") is not None]

    return {
        "total": len(cases),
        "active": len(active),
        "resolved": len(resolved),
        "closed": len(closed),
        "unassigned": len(unassigned),
        "byStatus": by_status,
        "bySeverity": by_severity,
        "byCategory": by_category,
        "byPriority": by_priority,
        "byAssignee": by_assignee,
        "sla": {
            "breached": sla_breached,
            "atRisk": sla_at_risk,
            "onTrack": len(active) - sla_breached - sla_at_risk,
        },
        "avgResolutionMinutes": round(sum(resolution) / len(resolution), 1) if resolution else 0,
        "avgResponseMinutes": round(sum(response) / len(response), 1) if response else 0,
        "totalEstimatedLoss": round(sum(float(c.get("estimatedLoss") or 0) for c in active), 2),
    }
