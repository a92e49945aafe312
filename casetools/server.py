"""
CaseTools — REST API
FastAPI routing layer over the case, rule assignment, team, alert, notification,
analytics and admin services. Grafana webhooks land here and feed the pipeline.
"""
import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Depends, Request, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from casetools.config import (
    VERSION, SEED_ADMIN, RESET_ON_START, SLA_SWEEP_ENABLED, SLA_SWEEP_INTERVAL_SECONDS,
    GRAFANA_WEBHOOK_SECRET, SIGNATURE_HEADER,
)
from casetools.db import (
    DATABASE_URL, NotFoundError, get_db, save_db, db_lock, transaction, reset_db,
    log_system_event,
)
from casetools.policy import get_policy, update_policy, reset_policy
from casetools.auth import (
    AuthenticationError, authenticate, create_jwt, public_user, get_current_user,
    require_role, seed_default_admin, create_user, update_user, get_user, list_users,
    verify_password,
)
from casetools import cases as case_svc
from casetools import rules as rule_svc
from casetools import teams as team_svc
from casetools import alerts as alert_svc
from casetools import notifications as notify
from casetools import analytics
from casetools.webhooks import (
    WebhookProcessingError, verify_signature, process_webhook, process_resolved_webhook,
)
from casetools.grafana import GrafanaClient, GrafanaIntegrationError

logger = logging.getLogger(__name__)

VIEWER, ANALYST, SENIOR, MANAGER, ADMIN = 1, 2, 3, 4, 5


# ============================================================
# STARTUP & SLA SWEEPER
# ============================================================
def init_store():
    if RESET_ON_START:
        logger.warning("RESET_ON_START set, wiping store")
        reset_db()
    if SEED_ADMIN:
        with transaction() as db:
            seed_default_admin(db)


async def _sla_sweep_loop():
    while True:
        await asyncio.sleep(SLA_SWEEP_INTERVAL_SECONDS)
        try:
            with transaction() as db:
                flagged = case_svc.run_sla_sweep(db)
            if flagged:
                logger.info("SLA sweep: %d case(s) at risk or breached", len(flagged))
        except Exception:
            logger.exception("SLA sweep failed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_store()
    task = asyncio.create_task(_sla_sweep_loop()) if SLA_SWEEP_ENABLED else None
    logger.info("CaseTools %s started (%s backend)", VERSION, "postgres" if DATABASE_URL else "file")
    yield
    if task:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task


app = FastAPI(title="CaseTools", version=VERSION, lifespan=lifespan)
app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_credentials=True, allow_methods=["*"], allow_headers=["*"])


# ============================================================
# ERROR MAPPING
# ============================================================
@app.exception_handler(NotFoundError)
async def _not_found(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(WebhookProcessingError)
async def _bad_webhook(request: Request, exc: WebhookProcessingError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(ValueError)
async def _bad_request(request: Request, exc: ValueError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(PermissionError)
async def _forbidden(request: Request, exc: PermissionError):
    return JSONResponse(status_code=403, content={"detail": str(exc)})


@app.exception_handler(GrafanaIntegrationError)
async def _grafana_down(request: Request, exc: GrafanaIntegrationError):
    return JSONResponse(status_code=502, content={"detail": str(exc)})


def get_grafana_client():
    client = GrafanaClient()
    try:
        yield client
    finally:
        client.close()


# ============================================================
# REQUEST BODIES
# ============================================================
class LoginRequest(BaseModel):
    username: str
    password: str


class ChangePasswordRequest(BaseModel):
    currentPassword: str
    newPassword: str


class CreateCaseRequest(BaseModel):
    title: str
    description: str = ""
    severity: str = "medium"
    priority: Optional[int] = None
    category: str = "custom"
    assignedUserIds: List[str] = []
    assignedTeamIds: List[str] = []
    tags: List[str] = []
    affectedServices: List[str] = []
    estimatedLoss: Optional[float] = None
    currency: str = "USD"


class UpdateCaseRequest(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    severity: Optional[str] = None
    priority: Optional[int] = None
    category: Optional[str] = None
    tags: Optional[List[str]] = None
    affectedServices: Optional[List[str]] = None
    affectedCustomers: Optional[int] = None
    estimatedLoss: Optional[float] = None
    actualLoss: Optional[float] = None
    currency: Optional[str] = None


class AssignRequest(BaseModel):
    userId: str


class AssignTeamRequest(BaseModel):
    teamId: str


class CommentRequest(BaseModel):
    text: str
    internal: bool = False


class StatusRequest(BaseModel):
    status: str
    reason: str = ""


class CloseCaseRequest(BaseModel):
    closureReason: str
    rootCause: Optional[str] = None
    resolutionActions: Optional[str] = None
    preventiveMeasures: Optional[str] = None
    actualLoss: Optional[float] = None


class ReasonRequest(BaseModel):
    reason: str = ""


class MergeRequest(BaseModel):
    primaryCaseId: str
    secondaryCaseIds: List[str]


class BulkAssignRequest(BaseModel):
    caseIds: List[str]
    userId: str


class BulkCloseRequest(BaseModel):
    caseIds: List[str]
    closureReason: str


class RuleAssignmentRequest(BaseModel):
    grafanaRuleUid: Optional[str] = None
    grafanaRuleName: Optional[str] = None
    grafanaFolderUid: Optional[str] = None
    grafanaFolderName: Optional[str] = None
    datasourceUid: Optional[str] = None
    description: Optional[str] = None
    severity: Optional[str] = None
    category: Optional[str] = None
    active: Optional[bool] = None
    autoAssignEnabled: Optional[bool] = None
    assignmentStrategy: Optional[str] = None
    escalationTeamId: Optional[str] = None
    assignedUserIds: Optional[List[str]] = None
    assignedTeamIds: Optional[List[str]] = None


class RuleMembersRequest(BaseModel):
    userIds: List[str] = []
    teamIds: List[str] = []
    replace: bool = False


class TeamRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    department: Optional[str] = None
    specialization: Optional[str] = None
    leaderId: Optional[str] = None
    memberIds: List[str] = []
    active: Optional[bool] = None


class TeamMemberRequest(BaseModel):
    userId: str


class CreateUserRequest(BaseModel):
    username: str
    email: str
    password: str
    role: str = "analyst"
    firstName: str = ""
    lastName: str = ""
    department: Optional[str] = None
    phone: Optional[str] = None


class UpdateUserRequest(BaseModel):
    email: Optional[str] = None
    firstName: Optional[str] = None
    lastName: Optional[str] = None
    department: Optional[str] = None
    phone: Optional[str] = None
    role: Optional[str] = None
    status: Optional[str] = None
    password: Optional[str] = None


class ReportRequest(BaseModel):
    type: str
    period: str = "30d"
    teamId: Optional[str] = None
    name: Optional[str] = None


class SettingsRequest(BaseModel):
    settings: dict = Field(default_factory=dict)


# ============================================================
# HEALTH & AUTH
# ============================================================
@app.get("/api/health")
async def health():
    return {"status": "ok", "version": VERSION, "backend": "postgres" if DATABASE_URL else "file"}


@app.post("/api/auth/login")
async def login(body: LoginRequest):
    with db_lock:
        db = get_db()
        try:
            user = authenticate(db, body.username, body.password)
        except AuthenticationError as e:
            save_db(db)
            raise HTTPException(401, str(e))
        log_system_event(db, "LOGIN", "user", user["id"], user["username"])
        save_db(db)
    return {"token": create_jwt(user), "tokenType": "Bearer", "user": public_user(user)}


@app.get("/api/auth/me")
async def me(user: dict = Depends(get_current_user)):
    return public_user(get_user(get_db(), user["id"]))


@app.post("/api/auth/change-password")
async def change_password(body: ChangePasswordRequest, user: dict = Depends(get_current_user)):
    with transaction() as db:
        record = get_user(db, user["id"])
        if not verify_password(body.currentPassword, record["passwordHash"]):
            raise HTTPException(400, "Current password is incorrect")
        update_user(db, user["id"], {"password": body.newPassword}, by=user["id"])
    return {"success": True}


# ============================================================
# GRAFANA WEBHOOKS
# ============================================================
async def _verified_body(request: Request) -> bytes:
    raw = await request.body()
    if GRAFANA_WEBHOOK_SECRET and get_policy()["require_webhook_signature"]:
        if not verify_signature(raw, request.headers.get(SIGNATURE_HEADER), GRAFANA_WEBHOOK_SECRET):
            logger.warning("Rejected webhook with bad or missing signature")
            raise HTTPException(401, "Invalid webhook signature")
    return raw


@app.post("/api/webhooks/grafana")
@app.post("/api/webhooks/grafana/alert")
async def grafana_alert_webhook(request: Request):
    raw = await _verified_body(request)
    with transaction() as db:
        touched = process_webhook(db, raw)
    return {"status": "processed", "casesProcessed": len(touched),
            "cases": [{"id": c["id"], "caseNumber": c["caseNumber"], "status": c["status"]} for c in touched]}


@app.post("/api/webhooks/grafana/resolved")
async def grafana_resolved_webhook(request: Request):
    raw = await _verified_body(request)
    with transaction() as db:
        touched = process_resolved_webhook(db, raw)
    return {"status": "processed", "casesResolved": len(touched),
            "cases": [{"id": c["id"], "caseNumber": c["caseNumber"], "status": c["status"]} for c in touched]}


@app.get("/api/webhooks/health")
async def webhook_health():
    return {"status": "UP", "service": "webhook", "signatureRequired": bool(GRAFANA_WEBHOOK_SECRET)}


# ============================================================
# CASES
# ============================================================
@app.get("/api/cases")
async def list_cases(
    statuses: Optional[str] = None, severities: Optional[str] = None,
    priorities: Optional[str] = None, category: Optional[str] = None,
    search: Optional[str] = None, createdAfter: Optional[str] = None,
    createdBefore: Optional[str] = None, assignedTo: Optional[str] = None,
    teamId: Optional[str] = None, page: int = 0, size: int = Query(50, ge=1, le=500),
    user: dict = Depends(require_role(VIEWER)),
):
    return case_svc.list_cases(get_db(), page=page, size=size, statuses=statuses, severities=severities,
                               priorities=priorities, category=category, search=search,
                               created_after=createdAfter, created_before=createdBefore,
                               assigned_to=assignedTo, team_id=teamId)


@app.post("/api/cases")
async def create_case(body: CreateCaseRequest, user: dict = Depends(require_role(ANALYST))):
    with transaction() as db:
        case = case_svc.create_case(
            db, title=body.title, description=body.description, severity=body.severity,
            priority=body.priority, category=body.category, created_by=user["id"],
            assigned_user_ids=body.assignedUserIds, assigned_team_ids=body.assignedTeamIds,
            sla_priority=body.priority, tags=body.tags, affected_services=body.affectedServices,
            estimated_loss=body.estimatedLoss, currency=body.currency,
        )
        notify.notify_case_created(db, case)
    return case


@app.get("/api/cases/my")
async def my_cases(includeClosed: bool = False, user: dict = Depends(require_role(VIEWER))):
    return case_svc.get_user_cases(get_db(), user["id"], includeClosed)


@app.get("/api/cases/unassigned")
async def unassigned_cases(user: dict = Depends(require_role(VIEWER))):
    return case_svc.get_unassigned_cases(get_db())


@app.get("/api/cases/metrics")
async def case_metrics(user: dict = Depends(require_role(VIEWER))):
    return case_svc.compute_case_metrics(get_db()["cases"])


@app.post("/api/cases/merge")
async def merge_cases(body: MergeRequest, user: dict = Depends(require_role(SENIOR))):
    with transaction() as db:
        return case_svc.merge_cases(db, body.primaryCaseId, body.secondaryCaseIds, user["id"])


@app.post("/api/cases/bulk/assign")
async def bulk_assign(body: BulkAssignRequest, user: dict = Depends(require_role(SENIOR))):
    with transaction() as db:
        return case_svc.bulk_assign(db, body.caseIds, body.userId, user["id"])


@app.post("/api/cases/bulk/close")
async def bulk_close(body: BulkCloseRequest, user: dict = Depends(require_role(SENIOR))):
    with transaction() as db:
        return case_svc.bulk_close(db, body.caseIds, user["id"], body.closureReason)


@app.get("/api/cases/number/{case_number}")
async def get_case_by_number(case_number: str, user: dict = Depends(require_role(VIEWER))):
    return case_svc.get_case_by_number(get_db(), case_number)


@app.get("/api/cases/{case_id}")
async def get_case(case_id: str, user: dict = Depends(require_role(VIEWER))):
    return case_svc.get_case(get_db(), case_id)


@app.get("/api/cases/{case_id}/sla")
async def case_sla(case_id: str, user: dict = Depends(require_role(VIEWER))):
    case = case_svc.get_case(get_db(), case_id)
    return {**case["sla"], **case_svc.check_sla_status(case)}


@app.patch("/api/cases/{case_id}")
async def update_case(case_id: str, body: UpdateCaseRequest, user: dict = Depends(require_role(ANALYST))):
    with transaction() as db:
        return case_svc.update_case(db, case_id, body.model_dump(exclude_unset=True), user["id"])


@app.post("/api/cases/{case_id}/assign")
async def assign_case(case_id: str, body: AssignRequest, user: dict = Depends(require_role(ANALYST))):
    with transaction() as db:
        return case_svc.assign_case(db, case_id, body.userId, user["id"])


@app.post("/api/cases/{case_id}/assign-team")
async def assign_case_to_team(case_id: str, body: AssignTeamRequest, user: dict = Depends(require_role(ANALYST))):
    with transaction() as db:
        return case_svc.assign_case_to_team(db, case_id, body.teamId, user["id"])


@app.post("/api/cases/{case_id}/unassign")
async def unassign_case(case_id: str, user: dict = Depends(require_role(ANALYST))):
    with transaction() as db:
        return case_svc.unassign_case(db, case_id, user["id"])


@app.post("/api/cases/{case_id}/comments")
async def add_comment(case_id: str, body: CommentRequest, user: dict = Depends(require_role(ANALYST))):
    with transaction() as db:
        return case_svc.add_comment(db, case_id, body.text, user["id"], body.internal)


@app.post("/api/cases/{case_id}/status")
async def change_status(case_id: str, body: StatusRequest, user: dict = Depends(require_role(ANALYST))):
    with transaction() as db:
        return case_svc.change_status(db, case_id, body.status, user["id"], body.reason)


@app.post("/api/cases/{case_id}/close")
async def close_case(case_id: str, body: CloseCaseRequest, user: dict = Depends(require_role(ANALYST))):
    with transaction() as db:
        return case_svc.close_case(db, case_id, user["id"], body.closureReason, body.rootCause,
                                   body.resolutionActions, body.preventiveMeasures, body.actualLoss)


@app.post("/api/cases/{case_id}/quick-actions/acknowledge")
async def acknowledge_case(case_id: str, user: dict = Depends(require_role(ANALYST))):
    with transaction() as db:
        return case_svc.acknowledge_case(db, case_id, user["id"])


@app.post("/api/cases/{case_id}/quick-actions/false-positive")
async def false_positive(case_id: str, body: ReasonRequest, user: dict = Depends(require_role(ANALYST))):
    with transaction() as db:
        return case_svc.mark_false_positive(db, case_id, user["id"], body.reason)


@app.post("/api/cases/{case_id}/quick-actions/escalate")
async def escalate_case(case_id: str, body: ReasonRequest, user: dict = Depends(require_role(ANALYST))):
    with transaction() as db:
        return case_svc.escalate_case(db, case_id, user["id"], body.reason or "Escalated by analyst")


# ============================================================
# RULE ASSIGNMENTS
# ============================================================
@app.get("/api/rule-assignments")
async def list_rule_assignments(search: Optional[str] = None, active: Optional[bool] = None,
                                category: Optional[str] = None, user: dict = Depends(require_role(VIEWER))):
    return rule_svc.list_rule_assignments(get_db(), search, active, category)


@app.post("/api/rule-assignments")
async def upsert_rule_assignment(body: RuleAssignmentRequest, user: dict = Depends(require_role(MANAGER))):
    with transaction() as db:
        return rule_svc.upsert_rule_assignment(db, body.model_dump(exclude_unset=True), user["id"])


@app.post("/api/rule-assignments/sync-grafana")
async def sync_grafana(user: dict = Depends(require_role(MANAGER)),
                       client: GrafanaClient = Depends(get_grafana_client)):
    grafana_rules = client.list_alert_rules()
    with transaction() as db:
        return rule_svc.sync_from_grafana(db, grafana_rules, user["id"])


@app.get("/api/rule-assignments/user/{user_id}")
async def rules_for_user(user_id: str, user: dict = Depends(require_role(VIEWER))):
    db = get_db()
    get_user(db, user_id)
    return rule_svc.rules_for_user(db, user_id)


@app.get("/api/rule-assignments/{rule_id}")
async def get_rule_assignment(rule_id: str, user: dict = Depends(require_role(VIEWER))):
    return rule_svc.get_rule_assignment(get_db(), rule_id)


@app.put("/api/rule-assignments/{rule_id}")
async def update_rule_assignment(rule_id: str, body: RuleAssignmentRequest,
                                 user: dict = Depends(require_role(MANAGER))):
    with transaction() as db:
        rule = rule_svc.get_rule_assignment(db, rule_id)
        data = body.model_dump(exclude_unset=True)
        data["grafanaRuleUid"] = rule["grafanaRuleUid"]
        return rule_svc.upsert_rule_assignment(db, data, user["id"])


@app.delete("/api/rule-assignments/{rule_id}")
async def delete_rule_assignment(rule_id: str, user: dict = Depends(require_role(MANAGER))):
    with transaction() as db:
        rule_svc.delete_rule_assignment(db, rule_id, user["id"])
    return {"success": True}


@app.post("/api/rule-assignments/{rule_id}/assign")
async def assign_rule_members(rule_id: str, body: RuleMembersRequest, user: dict = Depends(require_role(MANAGER))):
    with transaction() as db:
        return rule_svc.assign_users_and_teams(db, rule_id, body.userIds, body.teamIds, body.replace, user["id"])


@app.post("/api/rule-assignments/{rule_id}/unassign")
async def remove_rule_members(rule_id: str, body: RuleMembersRequest, user: dict = Depends(require_role(MANAGER))):
    with transaction() as db:
        return rule_svc.remove_assignments(db, rule_id, body.userIds, body.teamIds)


@app.get("/api/grafana/status")
async def grafana_status(user: dict = Depends(require_role(MANAGER)),
                         client: GrafanaClient = Depends(get_grafana_client)):
    return client.connection_status()


# ============================================================
# TEAMS
# ============================================================
@app.get("/api/teams")
async def list_teams(active: Optional[bool] = None, search: Optional[str] = None,
                     user: dict = Depends(require_role(VIEWER))):
    return team_svc.list_teams(get_db(), active, search)


@app.post("/api/teams")
async def create_team(body: TeamRequest, user: dict = Depends(require_role(MANAGER))):
    with transaction() as db:
        return team_svc.create_team(db, body.name, body.description or "", body.department,
                                    body.specialization, body.leaderId, body.memberIds, user["id"])


@app.get("/api/teams/{team_id}")
async def get_team(team_id: str, user: dict = Depends(require_role(VIEWER))):
    db = get_db()
    team = team_svc.get_team(db, team_id)
    return {**team, "members": [public_user(u) for u in team_svc.team_members(db, team_id, active_only=False)]}


@app.patch("/api/teams/{team_id}")
async def update_team(team_id: str, body: TeamRequest, user: dict = Depends(require_role(MANAGER))):
    with transaction() as db:
        return team_svc.update_team(db, team_id, body.model_dump(exclude_unset=True), user["id"])


@app.post("/api/teams/{team_id}/members")
async def add_team_member(team_id: str, body: TeamMemberRequest, user: dict = Depends(require_role(MANAGER))):
    with transaction() as db:
        return team_svc.add_member(db, team_id, body.userId)


@app.delete("/api/teams/{team_id}/members/{user_id}")
async def remove_team_member(team_id: str, user_id: str, user: dict = Depends(require_role(MANAGER))):
    with transaction() as db:
        return team_svc.remove_member(db, team_id, user_id)


@app.get("/api/teams/{team_id}/performance")
async def team_performance(team_id: str, period: str = "30d", user: dict = Depends(require_role(VIEWER))):
    return analytics.team_performance(get_db(), team_id, period)


# ============================================================
# USERS
# ============================================================
@app.get("/api/users")
async def get_users(role: Optional[str] = None, status: Optional[str] = None, search: Optional[str] = None,
                    user: dict = Depends(require_role(VIEWER))):
    return [public_user(u) for u in list_users(get_db(), role, status, search)]


@app.post("/api/users")
async def post_user(body: CreateUserRequest, user: dict = Depends(require_role(ADMIN))):
    with transaction() as db:
        created = create_user(db, body.username, body.email, body.password, body.role,
                              body.firstName, body.lastName, body.department, body.phone, user["id"])
    return public_user(created)


@app.get("/api/users/{user_id}")
async def get_user_detail(user_id: str, user: dict = Depends(require_role(VIEWER))):
    db = get_db()
    record = public_user(get_user(db, user_id))
    record["teams"] = [{"id": t["id"], "name": t["name"]} for t in team_svc.teams_for_user(db, user_id)]
    return record


@app.patch("/api/users/{user_id}")
async def patch_user(user_id: str, body: UpdateUserRequest, user: dict = Depends(require_role(ADMIN))):
    with transaction() as db:
        updated = update_user(db, user_id, body.model_dump(exclude_unset=True), user["id"])
    return public_user(updated)


# ============================================================
# NOTIFICATIONS
# ============================================================
@app.get("/api/notifications")
async def get_notifications(unreadOnly: bool = False, limit: int = Query(50, ge=1, le=500),
                            user: dict = Depends(get_current_user)):
    return notify.list_notifications(get_db(), user["id"], unreadOnly, limit)


@app.get("/api/notifications/unread-count")
async def get_unread_count(user: dict = Depends(get_current_user)):
    return {"count": notify.unread_count(get_db(), user["id"])}


@app.post("/api/notifications/read-all")
async def read_all_notifications(user: dict = Depends(get_current_user)):
    with transaction() as db:
        return {"updated": notify.mark_all_read(db, user["id"])}


@app.post("/api/notifications/{notification_id}/read")
async def read_notification(notification_id: str, user: dict = Depends(get_current_user)):
    with transaction() as db:
        return notify.mark_read(db, notification_id, user["id"])


# ============================================================
# ALERT HISTORY
# ============================================================
@app.get("/api/alerts")
async def get_alerts(status: Optional[str] = None, severity: Optional[str] = None,
                     ruleUid: Optional[str] = None, since: Optional[str] = None,
                     limit: int = Query(200, ge=1, le=1000), user: dict = Depends(require_role(VIEWER))):
    return alert_svc.list_alerts(get_db(), status, severity, ruleUid, since, limit)


@app.post("/api/alerts/{alert_id}/acknowledge")
async def acknowledge_alert(alert_id: str, user: dict = Depends(require_role(ANALYST))):
    with transaction() as db:
        return alert_svc.acknowledge_alert(db, alert_id, user["id"])


@app.post("/api/alerts/{alert_id}/assign")
async def assign_alert(alert_id: str, body: AssignRequest, user: dict = Depends(require_role(ANALYST))):
    with transaction() as db:
        return alert_svc.assign_alert(db, alert_id, body.userId)


@app.post("/api/alerts/{alert_id}/close")
async def close_alert(alert_id: str, user: dict = Depends(require_role(SENIOR))):
    with transaction() as db:
        return alert_svc.close_alert(db, alert_id, user["id"])


# ============================================================
# ANALYTICS & REPORTS
# ============================================================
@app.get("/api/analytics/overview")
async def analytics_overview(period: str = "30d", teamId: Optional[str] = None,
                             user: dict = Depends(require_role(VIEWER))):
    return analytics.overview(get_db(), period, teamId)


@app.get("/api/analytics/trends")
async def analytics_trends(days: int = Query(30, ge=1, le=365), user: dict = Depends(require_role(VIEWER))):
    return analytics.case_trends(get_db(), days)


@app.get("/api/reports")
async def get_reports(type: Optional[str] = None, user: dict = Depends(require_role(VIEWER))):
    return analytics.list_reports(get_db(), type)


@app.post("/api/reports")
async def post_report(body: ReportRequest, user: dict = Depends(require_role(MANAGER))):
    with transaction() as db:
        return analytics.generate_report(db, body.type, body.period, user["id"], body.teamId, body.name)


@app.get("/api/reports/{report_id}")
async def get_report(report_id: str, user: dict = Depends(require_role(VIEWER))):
    return analytics.get_report(get_db(), report_id)


# ============================================================
# ADMIN
# ============================================================
@app.get("/api/admin/settings")
async def get_settings(user: dict = Depends(require_role(ADMIN))):
    return get_policy()


@app.put("/api/admin/settings")
async def put_settings(body: SettingsRequest, user: dict = Depends(require_role(ADMIN))):
    updated = update_policy(body.settings)
    with transaction() as db:
        log_system_event(db, "SETTINGS_UPDATED", "settings", by=user["id"],
                         detail=", ".join(sorted(body.settings)))
    return updated


@app.post("/api/admin/settings/reset")
async def reset_settings(user: dict = Depends(require_role(ADMIN))):
    return reset_policy()


@app.post("/api/admin/sla-sweep")
async def sla_sweep(user: dict = Depends(require_role(MANAGER))):
    with transaction() as db:
        flagged = case_svc.run_sla_sweep(db)
    return {"flagged": len(flagged), "cases": flagged}


@app.get("/api/admin/logs")
async def get_logs(limit: int = Query(200, ge=1, le=5000), user: dict = Depends(require_role(ADMIN))):
    return list(reversed(get_db()["activity_log"][-limit:]))


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
