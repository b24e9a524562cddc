"""
mvkeeper.api.deps — FastAPI dependency injection
==================================================
"""

from __future__ import annotations

import os
from functools import lru_cache
from typing import Annotated

import jwt
from fastapi import Depends, Header, HTTPException, Request, status
from jwt.exceptions import InvalidTokenError
from sqlalchemy import Engine

from mvkeeper.config import MvKeeperConfig, load_config
from mvkeeper.database.engine import create_db_engine
from mvkeeper.services.maintenance import MaintenanceService

_WEAK_SECRETS = frozenset({
    "mvkeeper-dev-secret-change-me",
    "change-me",
    "secret",
    "dev",
    "",
})

_MIN_SECRET_LENGTH = 32

JWT_ALGORITHM = "HS256"


def _load_jwt_secret() -> str:
    """Load and validate JWT_SECRET from the environment.

    Raises RuntimeError at import time if the secret is missing, blank,
    too short (< 32 chars), or a known weak default.
    """
    secret = os.getenv("JWT_SECRET", "")
    if not secret:
        raise RuntimeError(
            "JWT_SECRET environment variable is not set. "
            "Generate one with: python -c \"import secrets; print(secrets.token_urlsafe(64))\""
        )
    if secret in _WEAK_SECRETS:
        raise RuntimeError(
            f"JWT_SECRET is set to a known weak default ('{secret}'). "
            "Please set a strong, unique secret."
        )
    if len(secret) < _MIN_SECRET_LENGTH:
        raise RuntimeError(
            f"JWT_SECRET is too short ({len(secret)} chars). "
            f"Minimum length is {_MIN_SECRET_LENGTH} characters."
        )
    return secret


JWT_SECRET: str = _load_jwt_secret()


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    return create_db_engine()


@lru_cache(maxsize=1)
def get_config() -> MvKeeperConfig:
    return load_config(os.getenv("MVKEEPER_CONFIG", "config.yaml"))


@lru_cache(maxsize=1)
def get_maintenance() -> MaintenanceService:
    return MaintenanceService(get_engine(), get_config())


def get_scheduler(request: Request):
    """The running scheduler, or ``None`` outside the app lifespan."""
    return getattr(request.app.state, "scheduler", None)


def get_current_admin(
    authorization: Annotated[str | None, Header()] = None,
) -> dict:
    """Validate JWT and return admin user payload. Raises 401 if invalid."""
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Missing token")
    token = authorization.split(" ", 1)[1]
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except InvalidTokenError:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid token")
    if not payload.get("is_admin"):
        raise HTTPException(status.HTTP_403_FORBIDDEN, "Not admin")
    return payload


def admin_identity(admin: dict) -> str:
    """Name recorded as ``initiated_by`` / ``updated_by``."""
    return str(admin.get("username") or admin.get("sub") or "admin")


Maintenance = Annotated[MaintenanceService, Depends(get_maintenance)]
Admin = Annotated[dict, Depends(get_current_admin)]
