"""
CaseTools — Configuration & Constants
Environment variables, feature flags, role matrix and the case/alert vocabularies.
"""
import os
import logging
from pathlib import Path

# ============================================================
# PATHS
# ============================================================
BASE_DIR = Path(__file__).parent.parent.parent
DATA_DIR = Path(os.environ.get("CASETOOLS_DATA_DIR", str(BASE_DIR / "data")))
DATA_DIR.mkdir(parents=True, exist_ok=True)

DB_PATH = DATA_DIR / "db.json"

# ============================================================
# FEATURE FLAGS
# ============================================================
PERSIST_DATA = os.environ.get("PERSIST_DATA", "true").lower() == "true"
SEED_ADMIN = os.environ.get("SEED_ADMIN", "true").lower() == "true"
RESET_ON_START = os.environ.get("RESET_ON_START", "false").lower() == "true"
SLA_SWEEP_ENABLED = os.environ.get("SLA_SWEEP_ENABLED", "true").lower() == "true"
SLA_SWEEP_INTERVAL_SECONDS = int(os.environ.get("SLA_SWEEP_INTERVAL_SECONDS", "300"))

# ============================================================
# LOGGING
# ============================================================
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)

# ============================================================
# AUTH
# ============================================================
JWT_SECRET = os.environ.get("JWT_SECRET", os.urandom(32).hex())
JWT_ALGORITHM = "HS256"
JWT_EXPIRY_HOURS = int(os.environ.get("JWT_EXPIRY_HOURS", "24"))
MAX_FAILED_LOGINS = int(os.environ.get("MAX_FAILED_LOGINS", "5"))
LOCKOUT_MINUTES = int(os.environ.get("LOCKOUT_MINUTES", "30"))

DEFAULT_ADMIN_USERNAME = os.environ.get("DEFAULT_ADMIN_USERNAME", "admin")
DEFAULT_ADMIN_PASSWORD = os.environ.get("DEFAULT_ADMIN_PASSWORD", "admin123")
DEFAULT_ADMIN_EMAIL = os.environ.get("DEFAULT_ADMIN_EMAIL", "admin@casetools.local")

# ============================================================
# GRAFANA
# ============================================================
GRAFANA_URL = os.environ.get("GRAFANA_URL", "http://localhost:3000")
GRAFANA_API_KEY = os.environ.get("GRAFANA_API_KEY", "")
GRAFANA_WEBHOOK_SECRET = os.environ.get("GRAFANA_WEBHOOK_SECRET", "")
GRAFANA_TIMEOUT_SECONDS = float(os.environ.get("GRAFANA_TIMEOUT_SECONDS", "10"))
SIGNATURE_HEADER = "X-Grafana-Signature"

# ============================================================
# ROLE MATRIX
# ============================================================
ROLE_MATRIX = {
    "viewer":         {"title": "Viewer",         "level": 1},
    "analyst":        {"title": "Analyst",        "level": 2},
    "senior_analyst": {"title": "Senior Analyst", "level": 3},
    "manager":        {"title": "Manager",        "level": 4},
    "admin":          {"title": "Administrator",  "level": 5},
}
DEFAULT_ROLE = "analyst"
USER_STATUSES = ["active", "inactive", "suspended"]

# ============================================================
# VOCABULARIES
# ============================================================
CASE_STATUSES = ["open", "assigned", "in_progress", "resolved", "closed", "cancelled"]
OPEN_STATUSES = ("open", "assigned", "in_progress")
SEVERITIES = ["critical", "high", "medium", "low"]
CASE_CATEGORIES = ["revenue_loss", "network_issue", "fraud", "quality", "custom"]

RULE_CATEGORIES = ["revenue_loss", "network_issue", "quality_issue", "fraud_alert", "operational", "custom"]
ASSIGNMENT_STRATEGIES = ["manual", "round_robin", "load_based", "team_based"]
ALERT_STATUSES = ["open", "acknowledged", "resolved", "closed"]

# Rule category -> case category
RULE_TO_CASE_CATEGORY = {
    "revenue_loss": "revenue_loss",
    "network_issue": "network_issue",
    "quality_issue": "quality",
    "fraud_alert": "fraud",
    "operational": "custom",
    "custom": "custom",
}

# Severity -> priority (1 is most urgent)
SEVERITY_PRIORITY = {"critical": 1, "high": 2, "medium": 3, "low": 4}

NOTIFICATION_TYPES = [
    "CASE_CREATED", "CASE_ASSIGNED", "CASE_UPDATED", "CASE_ESCALATED",
    "CASE_RESOLVED", "CASE_CLOSED", "CASE_REOPENED", "TEAM_CASE_CREATED",
    "SLA_BREACH", "SLA_WARNING", "COMMENT_ADDED", "ALERT_FIRED",
    "ALERT_RESOLVED", "RULE_ASSIGNMENT_UPDATE", "REMINDER",
]

REPORT_TYPES = ["case_summary", "sla_compliance", "team_performance"]

# ============================================================
# VERSION
# ============================================================
VERSION = "1.0.0"
