"""
CaseTools — Alert History
Every alert received from Grafana is recorded, firing or resolved, whether or not it opened a case.
"""
from datetime import datetime

from casetools.config import ALERT_STATUSES, SEVERITIES
from casetools.db import find_by_id, new_id, now_iso, parse_ts
from casetools.auth import get_user


def record_alert(db: dict, alert: dict, alert_id: str, title: str, description: str = "",
                 rule_uid: str = None, rule: dict = None, now: datetime = None) -> dict:
    now = now or datetime.now()
    labels = alert.get("labels") or {}
    severity = (labels.get("severity") or (rule or {}).get("severity") or "medium").lower()
    firing = (alert.get("status") or "firing").lower() != "resolved"
    rec = {
        "id": new_id("ALH"),
        "alertId": alert_id,
        "grafanaAlertId": alert.get("fingerprint"),
        "grafanaAlertUid": rule_uid,
        "title": title,
        "description": description,
        "status": "open" if firing else "resolved",
        "severity": severity if severity in SEVERITIES else "medium",
        "category": (rule or {}).get("category") or labels.get("category"),
        "labels": labels,
        "annotations": alert.get("annotations") or {},
        "generatorURL": alert.get("generatorURL"),
        "triggeredAt": alert.get("startsAt") or now.isoformat(),
        "receivedAt": now.isoformat(),
        "acknowledgedAt": None,
        "acknowledgedBy": None,
        "resolvedAt": None if firing else (alert.get("endsAt") or now.isoformat()),
        "resolvedBy": None if firing else "grafana",
        "closedAt": None,
        "closedBy": None,
        "assignedTo": None,
        "ruleId": (rule or {}).get("id"),
        "ruleName": (rule or {}).get("grafanaRuleName") or labels.get("alertname"),
        "caseId": None,
        "source": "grafana",
    }
    db["alert_history"].append(rec)
    return rec


def get_alert(db: dict, alert_history_id: str) -> dict:
    return find_by_id(db, "alert_history", alert_history_id)


def acknowledge_alert(db: dict, alert_history_id: str, by: str) -> dict:
    rec = get_alert(db, alert_history_id)
    if rec["status"] != "open":
        raise ValueError(f"Alert {rec['alertId']} is {rec['status']}, only open alerts can be acknowledged")
    rec["status"] = "acknowledged"
    rec["acknowledgedAt"] = now_iso()
    rec["acknowledgedBy"] = by
    return rec


def assign_alert(db: dict, alert_history_id: str, user_id: str) -> dict:
    rec = get_alert(db, alert_history_id)
    get_user(db, user_id)
    rec["assignedTo"] = user_id
    return rec


def resolve_alert_history(db: dict, fingerprint: str, by: str = "grafana", now: datetime = None) -> list:
    """Resolve every unresolved history entry with this fingerprint."""
    now = now or datetime.now()
    resolved = []
    for rec in db["alert_history"]:
        if rec.get("grafanaAlertId") == fingerprint and rec["status"] in ("open", "acknowledged"):
            rec["status"] = "resolved"
            rec["resolvedAt"] = now.isoformat()
            rec["resolvedBy"] = by
            resolved.append(rec)
    return resolved


def close_alert(db: dict, alert_history_id: str, by: str = "system") -> dict:
    rec = get_alert(db, alert_history_id)
    if rec["status"] == "closed":
        raise ValueError(f"Alert {rec['alertId']} is already closed")
    rec["status"] = "closed"
    rec["closedAt"] = now_iso()
    rec["closedBy"] = by
    return rec


def list_alerts(db: dict, status: str = None, severity: str = None, rule_uid: str = None,
                since: str = None, limit: int = 200) -> list:
    if status and status not in ALERT_STATUSES:
        raise ValueError(f"Unknown alert status '{status}'")
    recs = db["alert_history"]
    if status:
        recs = [r for r in recs if r["status"] == status]
    if severity:
        recs = [r for r in recs if r["severity"] == severity]
    if rule_uid:
        recs = [r for r in recs if r.get("grafanaAlertUid") == rule_uid]
    since_dt = parse_ts(since)
    if since_dt:
        recs = [r for r in recs if (parse_ts(r["receivedAt"]) or since_dt) >= since_dt]
    recs = sorted(recs, key=lambda r: r["receivedAt"], reverse=True)
    return recs[:limit]
