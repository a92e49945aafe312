"""
CaseTools — Teams
Team records, membership and leadership. Teams own cases and back rule assignments.
"""
from casetools.db import find_by_id, new_id, now_iso, log_system_event
from casetools.auth import get_user, is_active


def get_team(db: dict, team_id: str) -> dict:
    return find_by_id(db, "teams", team_id)


def create_team(db: dict, name: str, description: str = "", department: str = None,
                specialization: str = None, leader_id: str = None, member_ids: list = None,
                created_by: str = "system") -> dict:
    name = (name or "").strip()
    if not name:
        raise ValueError("Team name is required")
    if any(t["name"].lower() == name.lower() for t in db["teams"]):
        raise ValueError(f"Team '{name}' already exists")

    members = []
    for uid in member_ids or []:
        get_user(db, uid)
        if uid not in members:
            members.append(uid)
    if leader_id:
        get_user(db, leader_id)
        if leader_id not in members:
            members.append(leader_id)

    now = now_iso()
    team = {
        "id": new_id("TEAM"),
        "name": name,
        "description": description,
        "department": department,
        "specialization": specialization,
        "leaderId": leader_id,
        "memberIds": members,
        "active": True,
        "createdAt": now,
        "updatedAt": now,
    }
    db["teams"].append(team)
    log_system_event(db, "TEAM_CREATED", "team", team["id"], created_by, name)
    return team


def update_team(db: dict, team_id: str, updates: dict, by: str = "system") -> dict:
    team = get_team(db, team_id)
    if updates.get("leaderId"):
        get_user(db, updates["leaderId"])
    if "name" in updates and updates["name"]:
        new_name = updates["name"].strip()
        if any(t["name"].lower() == new_name.lower() and t["id"] != team_id for t in db["teams"]):
            raise ValueError(f"Team '{new_name}' already exists")
        team["name"] = new_name
    for key in ("description", "department", "specialization", "active"):
        if key in updates and updates[key] is not None:
            team[key] = updates[key]
    if updates.get("leaderId"):
        set_leader(db, team_id, updates["leaderId"])
    team["updatedAt"] = now_iso()
    log_system_event(db, "TEAM_UPDATED", "team", team_id, by)
    return team


def add_member(db: dict, team_id: str, user_id: str) -> dict:
    team = get_team(db, team_id)
    get_user(db, user_id)
    if user_id not in team["memberIds"]:
        team["memberIds"].append(user_id)
        team["updatedAt"] = now_iso()
    return team


def remove_member(db: dict, team_id: str, user_id: str) -> dict:
    team = get_team(db, team_id)
    if user_id in team["memberIds"]:
        team["memberIds"].remove(user_id)
    if team.get("leaderId") == user_id:
        team["leaderId"] = None
    team["updatedAt"] = now_iso()
    return team


def set_leader(db: dict, team_id: str, user_id: str) -> dict:
    team = get_team(db, team_id)
    get_user(db, user_id)
    team["leaderId"] = user_id
    if user_id not in team["memberIds"]:
        team["memberIds"].append(user_id)
    team["updatedAt"] = now_iso()
    return team


def list_teams(db: dict, active: bool = None, search: str = None) -> list:
    teams = db["teams"]
    if active is not None:
        teams = [t for t in teams if t.get("active", True) == active]
    if search:
        q = search.lower()
        teams = [t for t in teams if q in t["name"].lower() or q in (t.get("description") or "").lower()]
    return teams


def teams_for_user(db: dict, user_id: str) -> list:
    return [t for t in db["teams"] if user_id in t.get("memberIds", [])]


def team_members(db: dict, team_id: str, active_only: bool = True) -> list:
    """User records for a team's members, in membership order."""
    team = get_team(db, team_id)
    users = {u["id"]: u for u in db["users"]}
    members = [users[uid] for uid in team.get("memberIds", []) if uid in users]
    if active_only:
        members = [u for u in members if is_active(u)]
    return members
