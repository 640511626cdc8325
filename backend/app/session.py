"""Sign-in for allow-listed staff.

New users sign in with a shared bootstrap password and are asked to set a
personal one; from then on only the personal password works for them.
"""
import os
import re
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import bcrypt
import jwt
from fastapi import APIRouter
from sqlalchemy import text

from .auth import session_secret
from .db import get_engine
from .errors import AuthFailed, ConfigurationError, ValidationFailed
from .logging_config import log_event
from .schemas import MessageResponse, ResetPasswordRequest, SignInRequest, SignInResponse

MIN_PASSWORD_LENGTH = 8


def _csv_env(name: str) -> List[str]:
    return [p.strip().lower() for p in os.getenv(name, "").split(",") if p.strip()]


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=12)).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # Malformed hash
        return False


def _shared_hash() -> str:
    shared = os.getenv("SHARED_PASSWORD_HASH")
    if not shared:
        raise ConfigurationError("Shared password is not configured")
    return shared


def check_email(raw: str) -> str:
    """Normalise an address and make sure it may sign in at all."""
    email = (raw or "").strip().lower()
    domain = (os.getenv("ALLOWED_EMAIL_DOMAIN") or "").strip().lower()
    if domain and not re.fullmatch(r"[a-z0-9._%+-]+@" + re.escape(domain), email):
        raise ValidationFailed(
            f"Only @{domain} email addresses are allowed.",
            errors=[{"field": "email", "message": "outside the allowed domain"}],
        )
    if email not in _csv_env("ALLOWED_EMAILS"):
        log_event("signin_rejected", email=email, reason="not_allow_listed")
        raise AuthFailed("Access denied. Contact admin to request access.")
    return email


def _default_role(email: str) -> str:
    return "admin" if email in _csv_env("ADMIN_EMAILS") else "editor"


def _credential(conn, email: str) -> Optional[dict]:
    row = conn.execute(
        text("SELECT email, password_hash, role FROM credentials WHERE email = :email"), {"email": email}
    ).mappings().first()
    return dict(row) if row else None


def _verify(email: str, password: str, cred: Optional[dict]) -> bool:
    """True when the password matches; a personal password replaces the shared one."""
    if cred:
        return verify_password(password, cred["password_hash"])
    return verify_password(password, _shared_hash())


def issue_token(email: str, role: str) -> str:
    secret = session_secret()
    if not secret:
        raise ConfigurationError("Session signing is not configured")
    ttl = int(os.getenv("SESSION_TTL_MINUTES", "60"))
    now = datetime.now(timezone.utc)
    claims = {"sub": email, "roles": [role], "iat": now, "exp": now + timedelta(minutes=ttl)}
    return jwt.encode(claims, secret, algorithm="HS256")


def sign_in(email: str, password: str) -> dict:
    email = check_email(email)
    with get_engine().connect() as conn:
        cred = _credential(conn, email)
    if not _verify(email, password, cred):
        log_event("signin_rejected", email=email, reason="bad_password")
        raise AuthFailed("Invalid email or password")
    role = cred["role"] if cred else _default_role(email)
    token = issue_token(email, role)
    log_event("signin_succeeded", email=email, bootstrap=cred is None)
    return {
        "message": "Login successful",
        "token": token,
        "email": email,
        "role": role,
        "must_reset_password": cred is None,
    }


def reset_password(email: str, old_password: str, new_password: str, confirm_new_password: str) -> None:
    if new_password != confirm_new_password:
        raise ValidationFailed(
            "New password and confirm password must match.",
            errors=[{"field": "confirm_new_password", "message": "does not match new_password"}],
        )
    email = check_email(email)
    with get_engine().begin() as conn:
        cred = _credential(conn, email)
        if not _verify(email, old_password, cred):
            log_event("signin_rejected", email=email, reason="bad_password")
            raise AuthFailed("Invalid email or password")
        if len(new_password) < MIN_PASSWORD_LENGTH:
            raise ValidationFailed(
                f"Password must be at least {MIN_PASSWORD_LENGTH} characters.",
                errors=[{"field": "new_password", "message": "too short"}],
            )
        shared = os.getenv("SHARED_PASSWORD_HASH")
        if shared and verify_password(new_password, shared):
            raise ValidationFailed(
                "New password must differ from the shared password.",
                errors=[{"field": "new_password", "message": "reuses the shared password"}],
            )
        now = datetime.utcnow().isoformat()
        params = {"email": email, "hash": hash_password(new_password), "now": now}
        if cred:
            conn.execute(
                text("UPDATE credentials SET password_hash = :hash, updated_at = :now WHERE email = :email"), params
            )
        else:
            conn.execute(
                text(
                    "INSERT INTO credentials (email, password_hash, role, created_at, updated_at) "
                    "VALUES (:email, :hash, :role, :now, :now)"
                ),
                {**params, "role": _default_role(email)},
            )
    log_event("password_reset", email=email, migrated_from_shared=cred is None)


router = APIRouter(prefix="/api/auth", tags=["Auth"])


@router.post("/signin", response_model=SignInResponse)
def signin(payload: SignInRequest):
    return sign_in(payload.email, payload.password)


@router.post("/reset-password", response_model=MessageResponse)
def reset(payload: ResetPasswordRequest):
    reset_password(payload.email, payload.old_password, payload.new_password, payload.confirm_new_password)
    return {"message": "Password reset successful. Please log in again."}
