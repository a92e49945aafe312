"""
CaseTools — Analytics & Reports
Dashboard overview, per-day trends, team performance, and stored report snapshots.
Reports hold computed summaries only; file export is left to clients.
"""
import logging
from datetime import datetime, timedelta

from casetools.config import REPORT_TYPES, OPEN_STATUSES
from casetools.db import find_by_id, new_id, parse_ts, log_system_event
from casetools.cases import compute_case_metrics
from casetools.teams import get_team

logger = logging.getLogger(__name__)

PERIODS = {"24h": 1, "7d": 7, "30d": 30, "90d": 90, "365d": 365}


def period_start(period: str, now: datetime = None):
    """'7d' → now minus 7 days. 'all' or unknown → None (no lower bound)."""
    now = now or datetime.now()
    days = PERIODS.get(period or "")
    return now - timedelta(days=days) if days else None


def _in_period(cases: list, start) -> list:
    if start is None:
        return list(cases)
    return [c for c in cases if parse_ts(c["createdAt"]) >= start]


def _pct(part: int, whole: int) -> float:
    return round(part / whole * 100, 1) if whole else 0.0


def _sla_compliance(cases: list) -> float:
    """Share of finished cases that never breached SLA."""
    finished = [c for c in cases if c["status"] in ("resolved", "closed")]
    met = sum(1 for c in finished if not c["sla"]["breached"])
    return _pct(met, len(finished)) if finished else 100.0


# ============================================================
# OVERVIEW
# ============================================================
def overview(db: dict, period: str = "30d", team_id: str = None, now: datetime = None) -> dict:
    now = now or datetime.now()
    cases = _in_period(db["cases"], period_start(period, now))
    if team_id:
        cases = _team_cases(db, team_id, cases)
    metrics = compute_case_metrics(cases, now)
    alerts = db["alert_history"]
    alert_cases = sum(1 for c in cases if c.get("alertFingerprint"))
    return {
        "period": period,
        "totalCases": metrics["total"],
        "openCases": metrics["active"],
        "resolvedCases": metrics["resolved"] + metrics["closed"],
        "unassignedCases": metrics["unassigned"],
        "byStatus": metrics["byStatus"],
        "bySeverity": metrics["bySeverity"],
        "byCategory": metrics["byCategory"],
        "slaBreachRate": _pct(sum(1 for c in cases if c["sla"]["breached"]), len(cases)),
        "slaCompliance": _sla_compliance(cases),
        "avgResponseMinutes": metrics["avgResponseMinutes"],
        "avgResolutionMinutes": metrics["avgResolutionMinutes"],
        "totalAlerts": len(alerts),
        "alertToCaseRate": _pct(alert_cases, len(alerts)),
        "activeRules": sum(1 for r in db["rule_assignments"] if r.get("active")),
        "activeUsers": sum(1 for u in db["users"] if u["status"] == "active"),
        "totalReports": len(db["reports"]),
    }


def case_trends(db: dict, days: int = 30, now: datetime = None) -> list:
    """Per-day created and resolved counts, oldest day first."""
    now = now or datetime.now()
    days = max(1, min(365, int(days)))
    first = (now - timedelta(days=days - 1)).date()
    buckets = {(first + timedelta(days=i)).isoformat(): {"created": 0, "resolved": 0} for i in range(days)}
    for c in db["cases"]:
        created = parse_ts(c["createdAt"])
        if created and created.date().isoformat() in buckets:
            buckets[created.date().isoformat()]["created"] += 1
        done = parse_ts(c.get("resolvedAt") or c.get("closedAt"))
        if done and done.date().isoformat() in buckets:
            buckets[done.date().isoformat()]["resolved"] += 1
    return [{"date": d, **v} for d, v in buckets.items()]


# ============================================================
# TEAM PERFORMANCE
# ============================================================
def _team_cases(db: dict, team_id: str, cases: list = None) -> list:
    team = get_team(db, team_id)
    members = set(team.get("memberIds", []))
    pool = db["cases"] if cases is None else cases
    return [c for c in pool if team_id in c["assignedTeamIds"] or members.intersection(c["assignedUserIds"])]


def team_performance(db: dict, team_id: str, period: str = "30d", now: datetime = None) -> dict:
    now = now or datetime.now()
    team = get_team(db, team_id)
    all_cases = _team_cases(db, team_id)
    cases = _in_period(all_cases, period_start(period, now))
    finished = [c for c in cases if c["status"] in ("resolved", "closed")]
    resolution = [c["resolutionTimeMinutes"] for c in finished if c.get("resolutionTimeMinutes") is not None]

    workload = {}
    for uid in team.get("memberIds", []):
        workload[uid] = sum(1 for c in all_cases if c["status"] in OPEN_STATUSES and uid in c["assignedUserIds"])

    result = {
        "teamId": team_id,
        "teamName": team["name"],
        "period": period,
        "calculatedAt": now.isoformat(),
        "totalCases": len(cases),
        "resolvedCases": len(finished),
        "openCases": sum(1 for c in all_cases if c["status"] in ("open", "assigned")),
        "inProgressCases": sum(1 for c in all_cases if c["status"] == "in_progress"),
        "avgResolutionTimeMinutes": round(sum(resolution) / len(resolution), 1) if resolution else 0,
        "resolutionRate": _pct(len(finished), len(cases)),
        "slaCompliance": _sla_compliance(cases),
        "falsePositiveRate": _pct(sum(1 for c in cases if c.get("falsePositive")), len(cases)),
        "escalationRate": _pct(sum(1 for c in cases if c.get("escalated")), len(cases)),
        "workloadDistribution": workload,
        "commentsCount": sum(len(c["comments"]) for c in cases),
    }
    logger.info("Team %s performance: %d cases, %.1f%% resolved", team["name"],
                result["totalCases"], result["resolutionRate"])
    return result


# ============================================================
# REPORTS
# ============================================================
def generate_report(db: dict, report_type: str, period: str = "30d", by: str = "system",
                    team_id: str = None, name: str = None, now: datetime = None) -> dict:
    if report_type not in REPORT_TYPES:
        raise ValueError(f"Unknown report type '{report_type}'. Must be one of: {REPORT_TYPES}")
    now = now or datetime.now()

    if report_type == "case_summary":
        data = overview(db, period, team_id, now)
    elif report_type == "sla_compliance":
        cases = _in_period(db["cases"], period_start(period, now))
        breached = [c for c in cases if c["sla"]["breached"]]
        data = {
            "totalCases": len(cases),
            "breached": len(breached),
            "slaCompliance": _sla_compliance(cases),
            "breachRate": _pct(len(breached), len(cases)),
            "breachedCases": [{"caseNumber": c["caseNumber"], "severity": c["severity"],
                               "deadline": c["sla"]["deadline"], "breachedAt": c["sla"]["breachedAt"]}
                              for c in breached],
        }
    else:
        team_ids = [team_id] if team_id else [t["id"] for t in db["teams"]]
        data = {"teams": [team_performance(db, tid, period, now) for tid in team_ids]}

    report = {
        "id": new_id("RPT"),
        "name": name or f"{report_type.replace('_', ' ').title()} ({period})",
        "type": report_type,
        "period": period,
        "status": "completed",
        "generatedBy": by,
        "generatedAt": now.isoformat(),
        "data": data,
    }
    db["reports"].append(report)
    log_system_event(db, "REPORT_GENERATED", "report", report["id"], by, report["name"])
    return report


def get_report(db: dict, report_id: str) -> dict:
    return find_by_id(db, "reports", report_id)


def list_reports(db: dict, report_type: str = None) -> list:
    reports = db["reports"]
    if report_type:
        reports = [r for r in reports if r["type"] == report_type]
    return sorted(reports, key=lambda r: r["generatedAt"], reverse=True)
