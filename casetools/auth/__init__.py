"""
CaseTools — Authentication & RBAC
JWT tokens, password hashing, user store, login lockout, role-based access control.
"""
import logging
from datetime import datetime, timedelta
from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from casetools.config import (
    JWT_SECRET, JWT_ALGORITHM, JWT_EXPIRY_HOURS, ROLE_MATRIX, DEFAULT_ROLE,
    USER_STATUSES, MAX_FAILED_LOGINS, LOCKOUT_MINUTES,
    DEFAULT_ADMIN_USERNAME, DEFAULT_ADMIN_PASSWORD, DEFAULT_ADMIN_EMAIL,
)
from casetools.db import find_by_id, new_id, now_iso, parse_ts, log_system_event

logger = logging.getLogger(__name__)


class AuthenticationError(Exception):
    """Bad credentials, locked or disabled account."""

# ============================================================
# PASSWORD HASHING
# ============================================================
import bcrypt

def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt()).decode()

def verify_password(password: str, hashed: str) -> bool:
    if not hashed:
        return False
    return bcrypt.checkpw(password.encode(), hashed.encode())

# ============================================================
# JWT
# ============================================================
import jwt as pyjwt

def create_jwt(user: dict) -> str:
    payload = {
        "sub": user["id"], "username": user["username"], "email": user["email"],
        "role": user["role"],
        "exp": datetime.utcnow() + timedelta(hours=JWT_EXPIRY_HOURS),
        "iat": datetime.utcnow()
    }
    return pyjwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)

def decode_jwt(token: str) -> dict:
    try:
        return pyjwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except pyjwt.ExpiredSignatureError:
        raise HTTPException(401, "Token expired")
    except pyjwt.InvalidTokenError:
        raise HTTPException(401, "Invalid token")

# ============================================================
# USER STORE
# ============================================================
def public_user(user: dict) -> dict:
    """User record without credential fields."""
    return {k: v for k, v in user.items() if k != "passwordHash"}


def full_name(user: dict) -> str:
    name = f"{user.get('firstName') or ''} {user.get('lastName') or ''}".strip()
    return name or user.get("username", "")


def get_user(db: dict, user_id: str) -> dict:
    return find_by_id(db, "users", user_id)


def find_user_by_username(db: dict, username: str):
    username = (username or "").strip().lower()
    return next((u for u in db["users"] if u["username"].lower() == username), None)


def create_user(db: dict, username: str, email: str, password: str, role: str = DEFAULT_ROLE,
                first_name: str = "", last_name: str = "", department: str = None,
                phone: str = None, created_by: str = "system") -> dict:
    """Create a user. Raises ValueError on duplicates or an unknown role."""
    username = (username or "").strip()
    email = (email or "").strip().lower()
    role = (role or DEFAULT_ROLE).lower()
    if not username or not email:
        raise ValueError("Username and email are required")
    if len(password or "") < 6:
        raise ValueError("Password must be at least 6 characters")
    if role not in ROLE_MATRIX:
        raise ValueError(f"Unknown role '{role}'. Must be one of: {list(ROLE_MATRIX)}")
    if find_user_by_username(db, username):
        raise ValueError(f"Username '{username}' already exists")
    if any(u["email"] == email for u in db["users"]):
        raise ValueError(f"Email '{email}' already registered")

    now = now_iso()
    user = {
        "id": new_id("USR"),
        "username": username,
        "email": email,
        "passwordHash": hash_password(password),
        "firstName": first_name,
        "lastName": last_name,
        "role": role,
        "status": "active",
        "department": department,
        "phone": phone,
        "failedLoginAttempts": 0,
        "accountLockedUntil": None,
        "lastLogin": None,
        "createdAt": now,
        "updatedAt": now,
        "createdBy": created_by,
    }
    db["users"].append(user)
    log_system_event(db, "USER_CREATED", "user", user["id"], created_by, f"{username} ({role})")
    return user


USER_EDITABLE = ("email", "firstName", "lastName", "department", "phone", "role", "status")

def update_user(db: dict, user_id: str, updates: dict, by: str = "system") -> dict:
    user = get_user(db, user_id)
    if updates.get("role") is not None and updates["role"] not in ROLE_MATRIX:
        raise ValueError(f"Unknown role '{updates['role']}'")
    if updates.get("status") is not None and updates["status"] not in USER_STATUSES:
        raise ValueError(f"Unknown user status '{updates['status']}'")
    if updates.get("password") and len(updates["password"]) < 6:
        raise ValueError("Password must be at least 6 characters")
    for key, value in updates.items():
        if key in USER_EDITABLE and value is not None:
            user[key] = value
    if updates.get("password"):
        user["passwordHash"] = hash_password(updates["password"])
    user["updatedAt"] = now_iso()
    log_system_event(db, "USER_UPDATED", "user", user_id, by)
    return user


def list_users(db: dict, role: str = None, status: str = None, search: str = None) -> list:
    users = db["users"]
    if role:
        users = [u for u in users if u["role"] == role]
    if status:
        users = [u for u in users if u["status"] == status]
    if search:
        q = search.lower()
        users = [u for u in users if q in u["username"].lower() or q in u["email"].lower()
                 or q in full_name(u).lower()]
    return users


def is_active(user: dict) -> bool:
    return bool(user) and user.get("status") == "active"


def active_users_with_roles(db: dict, roles) -> list:
    return [u for u in db["users"] if u["role"] in roles and is_active(u)]

# ============================================================
# LOGIN
# ============================================================
def authenticate(db: dict, username: str, password: str, now: datetime = None) -> dict:
    """Check credentials, tracking failed attempts and lockout.
    Returns the user or raises AuthenticationError."""
    now = now or datetime.now()
    user = find_user_by_username(db, username)
    if not user:
        raise AuthenticationError("Invalid username or password")

    locked_until = parse_ts(user.get("accountLockedUntil"))
    if locked_until and locked_until > now:
        raise AuthenticationError("Account is locked. Try again later")
    if user["status"] != "active":
        raise AuthenticationError(f"Account is {user['status']}")

    if not verify_password(password or "", user.get("passwordHash", "")):
        user["failedLoginAttempts"] = int(user.get("failedLoginAttempts") or 0) + 1
        if user["failedLoginAttempts"] >= MAX_FAILED_LOGINS:
            user["accountLockedUntil"] = (now + timedelta(minutes=LOCKOUT_MINUTES)).isoformat()
            logger.warning("Locked account %s after %d failed logins", user["username"],
                           user["failedLoginAttempts"])
            log_system_event(db, "ACCOUNT_LOCKED", "user", user["id"], level="WARN")
        raise AuthenticationError("Invalid username or password")

    user["failedLoginAttempts"] = 0
    user["accountLockedUntil"] = None
    user["lastLogin"] = now.isoformat()
    return user


def seed_default_admin(db: dict):
    """Create the default admin account when no admin exists."""
    if any(u["role"] == "admin" for u in db["users"]):
        return None
    user = create_user(db, DEFAULT_ADMIN_USERNAME, DEFAULT_ADMIN_EMAIL, DEFAULT_ADMIN_PASSWORD,
                       role="admin", first_name="System", last_name="Administrator")
    logger.info("Seeded default admin account '%s'", user["username"])
    return user

# ============================================================
# REQUEST HELPERS
# ============================================================
security = HTTPBearer(auto_error=False)

def _user_from_token(token: str) -> dict:
    """Resolve a bearer JWT to the request user. Inactive or deleted accounts are rejected."""
    payload = decode_jwt(token)
    from casetools.db import get_db
    user = next((u for u in get_db()["users"] if u["id"] == payload.get("sub")), None)
    if not is_active(user):
        raise HTTPException(401, "Account not active")
    return {"id": user["id"], "username": user["username"], "email": user["email"],
            "name": full_name(user), "role": user["role"], "authenticated": True}

async def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)) -> dict:
    """Dependency: require authenticated user."""
    if credentials is None:
        raise HTTPException(401, "Authentication required")
    return _user_from_token(credentials.credentials)

def role_level(role: str) -> int:
    return ROLE_MATRIX.get(role, ROLE_MATRIX[DEFAULT_ROLE])["level"]

# ============================================================
# RBAC DECORATOR
# ============================================================
def require_role(min_level: int):
    """Dependency: require minimum role level."""
    async def checker(user: dict = Depends(get_current_user)):
        if role_level(user["role"]) < min_level:
            raise HTTPException(403, f"Requires role level {min_level}+. Your role: {user['role']}")
        return user
    return checker
