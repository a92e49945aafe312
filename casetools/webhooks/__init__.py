"""
CaseTools — Grafana Webhook Pipeline

Turns Grafana unified-alerting webhook payloads into cases.

Per alert:
  1. Record the alert in alert history.
  2. Resolved alerts resolve (and by default close) the open case with the same fingerprint.
  3. Firing alerts: find the rule assignment from the rule UID.
       - rule exists but inactive       → ignored
       - same fingerprint inside the de-duplication window → existing case bumped
         (reopened if it was already resolved/closed)
       - rule found                     → case routed by the rule's strategy
       - no rule                        → unassigned case, admins notified

A failure on one alert is logged and the rest of the batch still runs.
"""
import base64
import hashlib
import hmac
import json
import logging
from datetime import datetime
from urllib.parse import urlparse, parse_qs

from casetools.config import SEVERITIES, SEVERITY_PRIORITY, RULE_TO_CASE_CATEGORY
from casetools.db import log_system_event
from casetools.policy import get_policy, duplicate_window_minutes
from casetools.rules import find_rule_by_uid, build_assignment
from casetools.alerts import record_alert, resolve_alert_history
from casetools import cases as case_svc
from casetools import notifications as notify

logger = logging.getLogger(__name__)

RULE_UID_LABELS = ("rule_id", "__alert_rule_uid__", "alertuid", "rule_uid")
MAX_TITLE_LENGTH = 500


class WebhookProcessingError(Exception):
    """The webhook body could not be understood."""


# ============================================================
# SIGNATURE
# ============================================================
def compute_signature(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()


def verify_signature(raw_body: bytes, signature: str, secret: str) -> bool:
    """HMAC-SHA256 check. Accepts 'sha256=<hex>', bare hex, or the base64 digest."""
    if not signature or not secret:
        return False
    digest = hmac.new(secret.encode(), raw_body, hashlib.sha256).digest()
    signature = signature.strip()
    if not signature.isascii():
        return False
    if signature.startswith("sha256="):
        signature = signature[len("sha256="):]
    return (hmac.compare_digest(signature.lower(), digest.hex())
            or hmac.compare_digest(signature, base64.b64encode(digest).decode()))


# ============================================================
# PAYLOAD PARSING
# ============================================================
def _fingerprint_from_labels(labels: dict) -> str:
    canonical = json.dumps(labels or {}, sort_keys=True)
    return hashlib.sha256(canonical.encode()).hexdigest()[:16]


def parse_payload(raw) -> dict:
    """Decode a webhook body (bytes, str or dict) and normalize its alerts."""
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise WebhookProcessingError(f"Webhook body is not UTF-8: {e}")
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            raise WebhookProcessingError(f"Webhook body is not valid JSON: {e}")
    if not isinstance(raw, dict):
        raise WebhookProcessingError("Webhook body must be a JSON object")
    alerts = raw.get("alerts")
    if not isinstance(alerts, list):
        raise WebhookProcessingError("Webhook body has no 'alerts' list")

    payload = dict(raw)
    payload["alerts"] = []
    for alert in alerts:
        if not isinstance(alert, dict):
            raise WebhookProcessingError("Each alert must be a JSON object")
        alert = dict(alert)
        for key in ("labels", "annotations"):
            if alert.get(key) is not None and not isinstance(alert[key], dict):
                raise WebhookProcessingError(f"Alert '{key}' must be a JSON object")
        alert["labels"] = {str(k): str(v) for k, v in (alert.get("labels") or {}).items()}
        alert["annotations"] = {str(k): str(v) for k, v in (alert.get("annotations") or {}).items()}
        alert["status"] = (alert.get("status") or raw.get("status") or "firing").lower()
        if not alert.get("fingerprint"):
            alert["fingerprint"] = _fingerprint_from_labels(alert["labels"])
        payload["alerts"].append(alert)
    return payload


# ============================================================
# FIELD EXTRACTION
# ============================================================
def extract_rule_uid(alert: dict):
    labels = alert.get("labels") or {}
    for key in RULE_UID_LABELS:
        if labels.get(key):
            return labels[key]

    url = alert.get("generatorURL") or ""
    marker = "/alerting/grafana/"
    if marker in url:
        uid = url.split(marker, 1)[1].split("/", 1)[0].split("?", 1)[0]
        if uid:
            return uid
    if "ruleUID=" in url:
        values = parse_qs(urlparse(url).query).get("ruleUID")
        if values and values[0]:
            return values[0]
    return None


def generate_alert_id(alert: dict, rule_uid: str = None, now: datetime = None) -> str:
    labels = alert.get("labels") or {}
    if labels.get("alertId"):
        return labels["alertId"]
    ts = f"{now or datetime.now():%Y%m%d%H%M%S}"
    if labels.get("rule_id"):
        return f"ALERT-{labels['rule_id']}-{ts}"
    if rule_uid:
        return f"ALERT-{rule_uid}-{ts}"
    return f"ALERT-{(alert.get('fingerprint') or 'unknown')[:8]}-{ts}"


def clean_text(text: str) -> str:
    if not text:
        return ""
    return text.replace('\\"', "").replace('"', "").replace("[no value]", "No Data").strip()


def build_case_title(alert: dict, rule: dict = None) -> str:
    labels = alert.get("labels") or {}
    fallback = (rule or {}).get("grafanaRuleName") or f"Alert: {alert.get('fingerprint')}"
    title = clean_text((alert.get("annotations") or {}).get("summary") or "")
    if not title:
        title = labels.get("alertname") or fallback
    if len(title) > MAX_TITLE_LENGTH:
        title = title[:MAX_TITLE_LENGTH - 3] + "..."
    return title


def build_case_description(alert: dict, rule: dict = None) -> str:
    parts = []
    if rule:
        parts.append(f"Alert Rule: {rule['grafanaRuleName']}\n\n")
    details = clean_text((alert.get("annotations") or {}).get("description") or "")
    if details:
        parts.append(f"Alert Details: {details}\n\n")
    if rule and rule.get("description"):
        parts.append(f"Rule Configuration: {rule['description']}\n\n")

    labels = alert.get("labels") or {}
    parts.append("Context Information:\n")
    for key, label in (("severity", "Severity"), ("environment", "Environment"),
                       ("service", "Service"), ("instance", "Instance")):
        if key in labels:
            parts.append(f"- {label}: {labels[key]}\n")
    if alert.get("startsAt"):
        parts.append(f"\nAlert Started: {alert['startsAt']}\n")
    return "".join(parts)


def extract_affected_services(alert: dict) -> list:
    labels = alert.get("labels") or {}
    return [labels.get("service") or labels.get("job") or "Unknown"]


def extract_tags(alert: dict, rule: dict = None) -> list:
    labels = alert.get("labels") or {}
    tags = ["grafana"]
    if rule:
        tags += [rule["category"], rule["severity"]]
    if labels.get("environment"):
        tags.append(f"env:{labels['environment']}")
    if labels.get("service"):
        tags.append(f"service:{labels['service']}")
    return tags


def _alert_link(alert: dict, alert_id: str, rule_uid: str, rule: dict = None) -> dict:
    return {
        "alertId": alert_id,
        "fingerprint": alert.get("fingerprint"),
        "ruleUid": rule_uid,
        "ruleAssignmentId": (rule or {}).get("id"),
        "raw": {k: alert.get(k) for k in ("status", "labels", "annotations", "startsAt",
                                           "endsAt", "generatorURL", "fingerprint", "values")},
    }


# ============================================================
# PIPELINE
# ============================================================
def process_webhook(db: dict, payload, now: datetime = None) -> list:
    """Process every alert in a payload. Returns the cases created or touched."""
    payload = parse_payload(payload)
    now = now or datetime.now()
    logger.info("Webhook from receiver '%s' with %d alert(s)", payload.get("receiver"), len(payload["alerts"]))

    touched = []
    for alert in payload["alerts"]:
        try:
            if alert["status"] == "resolved":
                case = resolve_alert(db, alert, now)
            else:
                case = process_alert(db, alert, now)
            if case and case not in touched:
                touched.append(case)
        except Exception:
            logger.exception("Failed to process alert %s, continuing with batch", alert.get("fingerprint"))
            log_system_event(db, "WEBHOOK_ALERT_FAILED", "alert", alert.get("fingerprint"),
                             "grafana", level="ERROR")
    return touched


def process_alert(db: dict, alert: dict, now: datetime = None):
    """Route one firing alert. Returns the case, or None when the rule is inactive."""
    now = now or datetime.now()
    rule_uid = extract_rule_uid(alert)
    rule = find_rule_by_uid(db, rule_uid)
    alert_id = generate_alert_id(alert, rule_uid, now)
    history = record_alert(db, alert, alert_id, build_case_title(alert, rule),
                           clean_text(alert["annotations"].get("description", "")), rule_uid, rule, now)

    if rule is not None and not rule.get("active", True):
        logger.info("Rule %s is inactive, ignoring alert %s", rule_uid, alert_id)
        return None

    existing = case_svc.find_recent_case_by_fingerprint(db, alert["fingerprint"], duplicate_window_minutes(), now)
    if existing:
        logger.info("Duplicate alert %s within window, updating case %s", alert_id, existing["caseNumber"])
        case_svc.register_repeat_alert(db, existing, alert_id, now)
        history["caseId"] = existing["id"]
        return existing

    if rule is None:
        case = create_unassigned_case(db, alert, alert_id, rule_uid, now)
    else:
        case = create_case_from_rule(db, alert, rule, alert_id, rule_uid, now)
    history["caseId"] = case["id"]
    return case


def create_case_from_rule(db: dict, alert: dict, rule: dict, alert_id: str, rule_uid: str,
                          now: datetime = None) -> dict:
    assignment = build_assignment(db, rule, get_policy()["auto_assign_enabled"])
    case = case_svc.create_case(
        db,
        title=build_case_title(alert, rule),
        description=build_case_description(alert, rule),
        severity=rule["severity"],
        priority=SEVERITY_PRIORITY[rule["severity"]],
        category=RULE_TO_CASE_CATEGORY.get(rule["category"], "custom"),
        created_by="grafana",
        assigned_user_ids=assignment["userIds"],
        assigned_team_ids=assignment["teamIds"],
        alert=_alert_link(alert, alert_id, rule_uid, rule),
        tags=extract_tags(alert, rule),
        affected_services=extract_affected_services(alert),
        now=now,
    )
    notify.notify_case_created(db, case)
    return case


def create_unassigned_case(db: dict, alert: dict, alert_id: str, rule_uid: str = None,
                           now: datetime = None) -> dict:
    label_sev = (alert["labels"].get("severity") or "").lower()
    severity = label_sev if label_sev in SEVERITIES else "medium"
    priority = SEVERITY_PRIORITY[label_sev] if label_sev in SEVERITIES else 2
    case = case_svc.create_case(
        db,
        title=build_case_title(alert),
        description=build_case_description(alert),
        severity=severity,
        priority=priority,
        category="custom",
        created_by="grafana",
        alert=_alert_link(alert, alert_id, rule_uid),
        tags=extract_tags(alert),
        affected_services=extract_affected_services(alert),
        now=now,
    )
    if get_policy()["notify_admins_on_unassigned"]:
        notify.notify_case_created(db, case)
    logger.info("Created unassigned case %s (rule uid: %s)", case["caseNumber"], rule_uid)
    return case


def resolve_alert(db: dict, alert: dict, now: datetime = None):
    """Handle a resolved alert. Returns the resolved case or None."""
    now = now or datetime.now()
    fingerprint = alert.get("fingerprint")
    rule_uid = extract_rule_uid(alert)
    rule = find_rule_by_uid(db, rule_uid)
    resolve_alert_history(db, fingerprint, now=now)
    history = record_alert(db, alert, generate_alert_id(alert, rule_uid, now),
                           build_case_title(alert, rule), "", rule_uid, rule, now)

    case = case_svc.find_active_case_by_fingerprint(db, fingerprint)
    if case is None:
        logger.info("Resolved alert %s has no open case", fingerprint)
        return None
    case_svc.resolve_case_from_alert(db, case, now=now)
    history["caseId"] = case["id"]
    logger.info("Case %s resolved by Grafana (status %s)", case["caseNumber"], case["status"])
    return case


def process_resolved_webhook(db: dict, payload, now: datetime = None) -> list:
    """Dedicated resolved endpoint: every alert is treated as resolved."""
    payload = parse_payload(payload)
    for alert in payload["alerts"]:
        alert["status"] = "resolved"
    return process_webhook(db, payload, now)
