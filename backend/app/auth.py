"""Bearer authentication for write routes.

Three modes, picked from the environment on every request:

* neither ``API_TOKEN`` nor ``SESSION_SECRET`` set: dev mode, every caller
  is an admin;
* ``API_TOKEN``: a shared static token granting ``API_ROLE``;
* ``SESSION_SECRET``: HS256 tokens issued by ``/api/auth/signin``.

Reads are not authenticated.
"""
import os
from dataclasses import dataclass, field
from typing import Iterable, Optional, Set

import jwt
from fastapi import Header, HTTPException

ROLE_ORDER = {"viewer": 0, "editor": 1, "admin": 2}


@dataclass
class Principal:
    method: str  # dev-mode | static-token | session
    roles: Set[str] = field(default_factory=set)
    subject: Optional[str] = None

    def rank(self) -> int:
        return max((ROLE_ORDER.get(r, -1) for r in self.roles), default=-1)


def session_secret() -> Optional[str]:
    return os.getenv("SESSION_SECRET")


def _bearer_token(authorization: Optional[str]) -> str:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme != "Bearer" or not token.strip():
        raise HTTPException(status_code=401, detail="Missing or invalid Authorization header")
    return token.strip()


def _normalise_roles(values: Iterable) -> Set[str]:
    return {str(v).strip().lower() for v in values if str(v).strip()}


def _roles_from_claims(claims: dict) -> Set[str]:
    roles: Set[str] = set()
    for key in ("roles", "role", "scope"):
        val = claims.get(key)
        if isinstance(val, str):
            roles |= _normalise_roles(val.split())
        elif isinstance(val, (list, tuple)):
            roles |= _normalise_roles(val)
    return roles or {"viewer"}


def _static_principal(token: str, api_token: str) -> Principal:
    if token != api_token:
        raise HTTPException(status_code=403, detail="Invalid token")
    role = os.getenv("API_ROLE", "admin").strip().lower()
    return Principal("static-token", {role if role in ROLE_ORDER else "admin"})


def _session_principal(token: str, secret: str) -> Principal:
    try:
        claims = jwt.decode(token, secret, algorithms=["HS256"], options={"require": ["sub", "exp"]})
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError as e:
        raise HTTPException(status_code=403, detail=f"Invalid token: {e}")
    return Principal("session", _roles_from_claims(claims), subject=claims["sub"])


def current_principal(authorization: Optional[str] = Header(default=None)) -> Principal:
    api_token = os.getenv("API_TOKEN")
    secret = session_secret()
    if not (api_token or secret):
        return Principal("dev-mode", {"admin"})

    token = _bearer_token(authorization)
    # Static tokens never contain the two dots of a JWT
    if api_token and token.count(".") < 2:
        return _static_principal(token, api_token)
    if not secret:
        raise HTTPException(status_code=403, detail="Invalid token")
    return _session_principal(token, secret)


def role_required(min_role: str):
    min_role = min_role.lower()
    if min_role not in ROLE_ORDER:
        raise ValueError(f"Unknown role: {min_role}")

    def _dep(authorization: Optional[str] = Header(default=None)) -> Principal:
        principal = current_principal(authorization)
        if principal.rank() < ROLE_ORDER[min_role]:
            raise HTTPException(status_code=403, detail="Insufficient role")
        return principal

    return _dep
