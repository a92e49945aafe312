"""
CaseTools — In-App Notifications

Notifications are stored records addressed to a single user. Delivery over
external channels is out of scope; clients poll the unread list.
Inactive or missing users never receive notifications.
"""
import uuid
import logging

from casetools.config import NOTIFICATION_TYPES
from casetools.db import find_by_id, now_iso
from casetools.auth import is_active, active_users_with_roles
from casetools.policy import get_policy

logger = logging.getLogger(__name__)


# ============================================================
# DISPATCH
# ============================================================
def send_notification(db: dict, user_id: str, ntype: str, subject: str, message: str,
                      case: dict = None, priority: str = "normal", data: dict = None):
    """Store a notification for one user. Returns the record or None if the user can't receive it."""
    if ntype not in NOTIFICATION_TYPES:
        raise ValueError(f"Unknown notification type '{ntype}'")
    user = next((u for u in db["users"] if u["id"] == user_id), None)
    if not is_active(user):
        return None
    note = {
        "id": "NTF-" + str(uuid.uuid4())[:8].upper(),
        "userId": user_id,
        "caseId": case["id"] if case else None,
        "caseNumber": case.get("caseNumber") if case else None,
        "type": ntype,
        "subject": subject,
        "message": message,
        "priority": priority,
        "status": "unread",
        "data": data or {},
        "createdAt": now_iso(),
        "readAt": None,
    }
    db["notifications"].append(note)
    return note


def notify_users(db: dict, user_ids, ntype: str, subject: str, message: str,
                 case: dict = None, priority: str = "normal", data: dict = None) -> list:
    """Notify each user once, in the order given."""
    sent, seen = [], set()
    for uid in user_ids:
        if uid in seen:
            continue
        seen.add(uid)
        note = send_notification(db, uid, ntype, subject, message, case, priority, data)
        if note:
            sent.append(note)
    return sent


def case_recipients(db: dict, case: dict) -> list:
    """Directly assigned users first, then members of the assigned teams."""
    ids = list(case.get("assignedUserIds") or [])
    teams = {t["id"]: t for t in db["teams"]}
    for tid in case.get("assignedTeamIds") or []:
        for uid in teams.get(tid, {}).get("memberIds", []):
            if uid not in ids:
                ids.append(uid)
    return ids


def notify_admins_only(db: dict, case: dict, subject: str, message: str,
                       ntype: str = "CASE_CREATED") -> list:
    admins = [u["id"] for u in active_users_with_roles(db, ("admin",))]
    if not admins:
        logger.warning("No active admins to notify for case %s", case.get("caseNumber"))
    return notify_users(db, admins, ntype, subject, message, case, priority="high")


def notify_managers(db: dict, case: dict, subject: str, message: str,
                    ntype: str = "CASE_ESCALATED") -> list:
    managers = [u["id"] for u in active_users_with_roles(db, ("manager", "admin"))]
    return notify_users(db, managers, ntype, subject, message, case, priority="high")


def notify_team(db: dict, case: dict, ntype: str, subject: str, message: str,
                exclude: str = None) -> list:
    recipients = [uid for uid in case_recipients(db, case) if uid != exclude]
    return notify_users(db, recipients, ntype, subject, message, case)


def notify_case_created(db: dict, case: dict) -> list:
    """Route creation notices: direct assignees, then team members, else admins."""
    number = case["caseNumber"]
    direct = list(case.get("assignedUserIds") or [])
    sent = notify_users(db, direct, "CASE_ASSIGNED", f"New Case Assigned: {number}",
                        f"You have been assigned case {number}: {case['title']}", case,
                        priority="high" if case["priority"] <= 2 else "normal")
    if get_policy()["notify_team_on_create"]:
        team_only = [uid for uid in case_recipients(db, case) if uid not in direct]
        sent += notify_users(db, team_only, "TEAM_CASE_CREATED", f"New Team Case: {number}",
                             f"A new case was created for your team: {case['title']}", case)
    if not direct and not case.get("assignedTeamIds"):
        sent += notify_admins_only(db, case, f"Unassigned Alert Case Created: {number}",
                                   f"Case {number} has no assignment rule and needs triage: {case['title']}")
    return sent


def notify_case_assigned(db: dict, case: dict, user_id: str, by: str = "system"):
    number = case["caseNumber"]
    return send_notification(db, user_id, "CASE_ASSIGNED", f"New Case Assigned: {number}",
                             f"Case {number} was assigned to you by {by}: {case['title']}", case)


def notify_case_reopened(db: dict, case: dict) -> list:
    number = case["caseNumber"]
    return notify_team(db, case, "CASE_REOPENED", f"Case Reopened: {number}",
                       f"Case {number} was reopened because the alert fired again")


def notify_sla_warning(db: dict, case: dict) -> list:
    number = case["caseNumber"]
    return notify_team(db, case, "SLA_WARNING", f"SLA Warning: {number}",
                       f"Case {number} is approaching its SLA deadline ({case['sla']['deadline']})")


def notify_sla_breached(db: dict, case: dict) -> list:
    number = case["caseNumber"]
    subject = f"SLA Breached: {number}"
    message = f"Case {number} missed its SLA deadline ({case['sla']['deadline']})"
    sent = notify_team(db, case, "SLA_BREACH", subject, message)
    already = {n["userId"] for n in sent}
    managers = [u["id"] for u in active_users_with_roles(db, ("manager", "admin"))
                if u["id"] not in already]
    sent += notify_users(db, managers, "SLA_BREACH", subject, message, case, priority="high")
    return sent


# ============================================================
# INBOX
# ============================================================
def list_notifications(db: dict, user_id: str, unread_only: bool = False, limit: int = 50) -> list:
    notes = [n for n in db["notifications"] if n["userId"] == user_id]
    if unread_only:
        notes = [n for n in notes if n["status"] == "unread"]
    notes.sort(key=lambda n: n["createdAt"], reverse=True)
    return notes[:limit]


def unread_count(db: dict, user_id: str) -> int:
    return sum(1 for n in db["notifications"] if n["userId"] == user_id and n["status"] == "unread")


def mark_read(db: dict, notification_id: str, user_id: str) -> dict:
    note = find_by_id(db, "notifications", notification_id)
    if note["userId"] != user_id:
        raise PermissionError("Notification belongs to another user")
    if note["status"] != "read":
        note["status"] = "read"
        note["readAt"] = now_iso()
    return note


def mark_all_read(db: dict, user_id: str) -> int:
    now = now_iso()
    count = 0
    for n in db["notifications"]:
        if n["userId"] == user_id and n["status"] == "unread":
            n["status"] = "read"
            n["readAt"] = now
            count += 1
    return count
