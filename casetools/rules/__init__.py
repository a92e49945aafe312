"""
CaseTools — Rule Assignments

Maps a Grafana alert rule (by UID) to the users and teams responsible for the
cases it opens, and decides who gets a new case.

Assignment strategies:
  manual       — every rule user and team is put on the case; nobody is picked
  round_robin  — rotate through the rule's eligible users (cursor persisted on the rule)
  load_based   — eligible user with the fewest open cases; ties go to list order
  team_based   — first active team leader, else the first eligible user

Eligible users are the rule's direct users followed by members of its teams,
de-duplicated and restricted to active accounts.
"""
import logging

from casetools.config import SEVERITIES, RULE_CATEGORIES, ASSIGNMENT_STRATEGIES, OPEN_STATUSES
from casetools.db import find_by_id, new_id, now_iso, log_system_event
from casetools.auth import get_user, is_active
from casetools.teams import get_team, teams_for_user
from casetools.notifications import notify_users

logger = logging.getLogger(__name__)

RULE_EDITABLE = ("grafanaRuleName", "grafanaFolderUid", "grafanaFolderName", "datasourceUid",
                 "description", "severity", "category", "active", "autoAssignEnabled",
                 "assignmentStrategy", "escalationTeamId")


def _normalize(field: str, value, allowed: list, default: str) -> str:
    value = (value or "").strip().lower() if isinstance(value, str) else value
    if value in allowed:
        return value
    if value:
        logger.warning("Invalid %s '%s', using '%s'", field, value, default)
    return default


# ============================================================
# CRUD
# ============================================================
def get_rule_assignment(db: dict, rule_id: str) -> dict:
    return find_by_id(db, "rule_assignments", rule_id)


def find_rule_by_uid(db: dict, rule_uid: str):
    if not rule_uid:
        return None
    return next((r for r in db["rule_assignments"] if r["grafanaRuleUid"] == rule_uid), None)


def upsert_rule_assignment(db: dict, data: dict, by: str = "system") -> dict:
    """Create or update the assignment for data['grafanaRuleUid']."""
    uid = (data.get("grafanaRuleUid") or "").strip()
    if not uid:
        raise ValueError("grafanaRuleUid is required")

    rule = find_rule_by_uid(db, uid)
    now = now_iso()
    if rule is None:
        rule = {
            "id": new_id("RULE"),
            "grafanaRuleUid": uid,
            "grafanaRuleName": data.get("grafanaRuleName") or uid,
            "grafanaFolderUid": None,
            "grafanaFolderName": None,
            "datasourceUid": None,
            "description": "",
            "severity": "medium",
            "category": "operational",
            "active": True,
            "autoAssignEnabled": True,
            "assignmentStrategy": "manual",
            "assignedUserIds": [],
            "assignedTeamIds": [],
            "escalationTeamId": None,
            "roundRobinCursor": 0,
            "createdAt": now,
            "createdBy": by,
        }
        db["rule_assignments"].append(rule)
        action = "RULE_ASSIGNMENT_CREATED"
    else:
        action = "RULE_ASSIGNMENT_UPDATED"

    for key in RULE_EDITABLE:
        if key in data and data[key] is not None:
            rule[key] = data[key]
    rule["severity"] = _normalize("severity", rule["severity"], SEVERITIES, "medium")
    rule["category"] = _normalize("category", rule["category"], RULE_CATEGORIES, "operational")
    rule["assignmentStrategy"] = _normalize("assignmentStrategy", rule["assignmentStrategy"],
                                            ASSIGNMENT_STRATEGIES, "manual")
    if rule.get("escalationTeamId"):
        get_team(db, rule["escalationTeamId"])
    rule["updatedAt"] = now

    if data.get("assignedUserIds") is not None or data.get("assignedTeamIds") is not None:
        assign_users_and_teams(db, rule["id"], data.get("assignedUserIds") or [],
                               data.get("assignedTeamIds") or [], replace=True, by=by)
    log_system_event(db, action, "rule_assignment", rule["id"], by, rule["grafanaRuleName"])
    return rule


def delete_rule_assignment(db: dict, rule_id: str, by: str = "system"):
    rule = get_rule_assignment(db, rule_id)
    db["rule_assignments"].remove(rule)
    log_system_event(db, "RULE_ASSIGNMENT_DELETED", "rule_assignment", rule_id, by, rule["grafanaRuleName"])
    return rule


def assign_users_and_teams(db: dict, rule_id: str, user_ids: list = None, team_ids: list = None,
                           replace: bool = False, by: str = "system") -> dict:
    """Attach users/teams to a rule. Unknown ids raise NotFoundError before anything changes."""
    rule = get_rule_assignment(db, rule_id)
    user_ids = list(user_ids or [])
    team_ids = list(team_ids or [])
    for uid in user_ids:
        get_user(db, uid)
    for tid in team_ids:
        get_team(db, tid)

    before = set(rule["assignedUserIds"])
    if replace:
        rule["assignedUserIds"] = []
        rule["assignedTeamIds"] = []
    for uid in user_ids:
        if uid not in rule["assignedUserIds"]:
            rule["assignedUserIds"].append(uid)
    for tid in team_ids:
        if tid not in rule["assignedTeamIds"]:
            rule["assignedTeamIds"].append(tid)
    rule["updatedAt"] = now_iso()

    added = [uid for uid in rule["assignedUserIds"] if uid not in before]
    notify_users(db, added, "RULE_ASSIGNMENT_UPDATE",
                 f"Alert Rule Assigned: {rule['grafanaRuleName']}",
                 f"You will now receive cases raised by Grafana rule '{rule['grafanaRuleName']}'",
                 data={"ruleAssignmentId": rule["id"]})
    return rule


def remove_assignments(db: dict, rule_id: str, user_ids: list = None, team_ids: list = None) -> dict:
    rule = get_rule_assignment(db, rule_id)
    rule["assignedUserIds"] = [u for u in rule["assignedUserIds"] if u not in (user_ids or [])]
    rule["assignedTeamIds"] = [t for t in rule["assignedTeamIds"] if t not in (team_ids or [])]
    rule["updatedAt"] = now_iso()
    return rule


def list_rule_assignments(db: dict, search: str = None, active: bool = None, category: str = None) -> list:
    rules = db["rule_assignments"]
    if active is not None:
        rules = [r for r in rules if r["active"] == active]
    if category:
        rules = [r for r in rules if r["category"] == category]
    if search:
        q = search.lower()
        rules = [r for r in rules if q in r["grafanaRuleName"].lower()
                 or q in r["grafanaRuleUid"].lower()
                 or q in (r.get("grafanaFolderName") or "").lower()]
    return rules


def rules_for_user(db: dict, user_id: str) -> list:
    """Rules that route to the user directly or through one of their teams."""
    team_ids = {t["id"] for t in teams_for_user(db, user_id)}
    return [r for r in db["rule_assignments"]
            if user_id in r["assignedUserIds"] or team_ids.intersection(r["assignedTeamIds"])]


# ============================================================
# ASSIGNMENT STRATEGY
# ============================================================
def all_assigned_users(db: dict, rule: dict) -> list:
    """Eligible user ids: direct users then team members, active only, no repeats."""
    users = {u["id"]: u for u in db["users"]}
    teams = {t["id"]: t for t in db["teams"]}
    ordered = list(rule.get("assignedUserIds") or [])
    for tid in rule.get("assignedTeamIds") or []:
        team = teams.get(tid)
        if team and team.get("active", True):
            ordered.extend(team.get("memberIds", []))
    result = []
    for uid in ordered:
        if uid not in result and is_active(users.get(uid)):
            result.append(uid)
    return result


def active_case_count(db: dict, user_id: str) -> int:
    return sum(1 for c in db["cases"]
               if c["status"] in OPEN_STATUSES and user_id in (c.get("assignedUserIds") or []))


def determine_assignee(db: dict, rule: dict):
    """Pick a single user for a new case, or None when nobody is eligible."""
    candidates = all_assigned_users(db, rule)
    strategy = rule.get("assignmentStrategy", "manual")

    if strategy == "team_based":
        users = {u["id"]: u for u in db["users"]}
        teams = {t["id"]: t for t in db["teams"]}
        for tid in rule.get("assignedTeamIds") or []:
            leader = teams.get(tid, {}).get("leaderId")
            if leader and is_active(users.get(leader)):
                return leader
        return candidates[0] if candidates else None

    if not candidates:
        return None

    if strategy == "round_robin":
        cursor = int(rule.get("roundRobinCursor") or 0) % len(candidates)
        rule["roundRobinCursor"] = cursor + 1
        return candidates[cursor]

    if strategy == "load_based":
        loads = [(active_case_count(db, uid), i, uid) for i, uid in enumerate(candidates)]
        return min(loads)[2]

    return candidates[0]


def build_assignment(db: dict, rule: dict, auto_assign: bool = True) -> dict:
    """Users and teams a new case from this rule starts with.

    Manual rules, rules with auto-assign off, or auto_assign=False put every
    rule user and team on the case. Otherwise one user is picked by strategy
    and the rule's teams stay attached.
    """
    teams = list(rule.get("assignedTeamIds") or [])
    if rule.get("assignmentStrategy") == "manual" or not rule.get("autoAssignEnabled") or not auto_assign:
        return {"userIds": all_assigned_users(db, {**rule, "assignedTeamIds": []}),
                "teamIds": teams, "autoAssigned": False}
    picked = determine_assignee(db, rule)
    return {"userIds": [picked] if picked else [], "teamIds": teams, "autoAssigned": picked is not None}


# ============================================================
# GRAFANA SYNC
# ============================================================
def sync_from_grafana(db: dict, grafana_rules: list, by: str = "system") -> dict:
    """Create placeholder assignments for unseen Grafana rules and refresh names/folders."""
    created, updated = 0, 0
    for gr in grafana_rules:
        uid = gr.get("uid")
        if not uid:
            continue
        data = gr.get("data") or []
        fields = {
            "grafanaRuleUid": uid,
            "grafanaRuleName": gr.get("title") or uid,
            "grafanaFolderUid": gr.get("folderUID"),
            "datasourceUid": data[0].get("datasourceUid") if data else None,
        }
        if find_rule_by_uid(db, uid) is None:
            labels = gr.get("labels") or {}
            fields["severity"] = labels.get("severity")
            fields["category"] = labels.get("category")
            fields["description"] = (gr.get("annotations") or {}).get("summary", "")
            created += 1
        else:
            updated += 1
        upsert_rule_assignment(db, fields, by=by)
    logger.info("Grafana rule sync: %d created, %d updated", created, updated)
    return {"created": created, "updated": updated, "total": len(db["rule_assignments"])}
