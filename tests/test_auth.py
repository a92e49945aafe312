from __future__ import annotations

from datetime import timedelta

import pytest
from fastapi import HTTPException

from casetools import auth
from casetools.auth import AuthenticationError
from casetools.db import get_db, transaction

from conftest import NOW, PASSWORD

pytestmark = pytest.mark.unit


def test_password_hashing():
    hashed = auth.hash_password("s3cret!")
    assert hashed != "s3cret!"
    assert auth.verify_password("s3cret!", hashed)
    assert not auth.verify_password("wrong", hashed)
    assert not auth.verify_password("s3cret!", "")


def test_jwt_round_trip_and_invalid_token(make_user):
    user = make_user(role="manager")
    claims = auth.decode_jwt(auth.create_jwt(user))
    assert claims["sub"] == user["id"]
    assert claims["role"] == "manager"
    with pytest.raises(HTTPException) as exc:
        auth.decode_jwt("garbage")
    assert exc.value.status_code == 401


def test_create_user_validation(db, make_user):
    make_user(username="alice")
    with pytest.raises(ValueError, match="already exists"):
        auth.create_user(db, "ALICE", "other@example.com", PASSWORD)
    with pytest.raises(ValueError, match="already registered"):
        auth.create_user(db, "bob", "alice@example.com", PASSWORD)
    with pytest.raises(ValueError, match="Unknown role"):
        auth.create_user(db, "bob", "bob@example.com", PASSWORD, role="root")
    with pytest.raises(ValueError, match="at least 6"):
        auth.create_user(db, "bob", "bob@example.com", "123")


def test_public_user_hides_hash(make_user):
    user = make_user()
    assert "passwordHash" not in auth.public_user(user)


def test_authenticate_success_resets_counter(db, make_user):
    user = make_user(username="frank")
    user["failedLoginAttempts"] = 3
    assert auth.authenticate(db, "Frank", PASSWORD, now=NOW) is user
    assert user["failedLoginAttempts"] == 0
    assert user["lastLogin"] == NOW.isoformat()


def test_lockout_after_five_failures_then_expiry(db, make_user):
    user = make_user(username="grace")
    for _ in range(5):
        with pytest.raises(AuthenticationError):
            auth.authenticate(db, "grace", "bad-password", now=NOW)
    assert user["accountLockedUntil"] == (NOW + timedelta(minutes=30)).isoformat()
    assert any(e["action"] == "ACCOUNT_LOCKED" for e in db["activity_log"])

    with pytest.raises(AuthenticationError, match="locked"):
        auth.authenticate(db, "grace", PASSWORD, now=NOW + timedelta(minutes=10))
    assert auth.authenticate(db, "grace", PASSWORD, now=NOW + timedelta(minutes=31)) is user
    assert user["accountLockedUntil"] is None


def test_inactive_and_unknown_users_rejected(db, make_user):
    make_user(username="henry", status="suspended")
    with pytest.raises(AuthenticationError, match="suspended"):
        auth.authenticate(db, "henry", PASSWORD)
    with pytest.raises(AuthenticationError):
        auth.authenticate(db, "nobody", PASSWORD)


def test_update_user(db, make_user):
    user = make_user()
    auth.update_user(db, user["id"], {"role": "senior_analyst", "passwordHash": "x", "password": "newpass1"})
    assert user["role"] == "senior_analyst"
    assert auth.verify_password("newpass1", user["passwordHash"])
    with pytest.raises(ValueError):
        auth.update_user(db, user["id"], {"status": "deleted"})


def test_rejected_update_leaves_user_untouched(db, make_user):
    user = make_user()
    with pytest.raises(ValueError):
        auth.update_user(db, user["id"], {"email": "changed@example.com", "role": "bogus"})
    assert user["email"] == "user1@example.com"
    assert user["role"] == "analyst"


def test_failed_transaction_restores_store(make_user):
    user = make_user()
    with pytest.raises(ValueError):
        with transaction() as db:
            auth.get_user(db, user["id"])["email"] = "changed@example.com"
            db["teams"].append({"id": "TEAM-HALF"})
            raise ValueError("rejected")
    db = get_db()
    assert auth.get_user(db, user["id"])["email"] == "user1@example.com"
    assert db["teams"] == []

    with transaction() as db:
        auth.get_user(db, user["id"])["phone"] = "555-0100"
    assert auth.get_user(get_db(), user["id"])["phone"] == "555-0100"


def test_seed_default_admin_only_once(db):
    admin = auth.seed_default_admin(db)
    assert admin["username"] == "admin" and admin["role"] == "admin"
    assert auth.seed_default_admin(db) is None
    assert len(db["users"]) == 1


def test_list_users_filters(db, make_user):
    make_user(role="manager", username="ivan")
    make_user(username="judy")
    assert [u["username"] for u in auth.list_users(db, role="manager")] == ["ivan"]
    assert [u["username"] for u in auth.list_users(db, search="JUD")] == ["judy"]


def test_role_levels():
    assert auth.role_level("viewer") == 1
    assert auth.role_level("admin") == 5
    assert auth.role_level("unknown") == auth.role_level("analyst")
