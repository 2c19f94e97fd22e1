"""
clockwork.api.deps — FastAPI dependency injection
==================================================

Identity is issued by the external auth service; this layer only decodes
the bearer JWT it signed.  Claims used:

* ``sub`` — the user id (string of an integer);
* ``is_admin`` — catalog administration and manual grants;
* ``is_service`` — feature collaborators allowed to report progress.
"""

from __future__ import annotations

import os
from functools import lru_cache
from typing import Annotated

import jwt
from fastapi import Depends, Header, HTTPException, status
from jwt.exceptions import InvalidTokenError
from sqlalchemy import Engine
from sqlalchemy.orm import Session

from clockwork.config import ClockworkConfig, load_config
from clockwork.database.engine import create_db_engine
from clockwork.engine.cache import CatalogCache
from clockwork.services.price_service import TokenPriceService

_WEAK_SECRETS = frozenset({
    "clockwork-dev-secret-change-me",
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
def get_config() -> ClockworkConfig:
    return load_config()


@lru_cache(maxsize=1)
def get_cache() -> CatalogCache:
    cache = CatalogCache(get_engine())
    cache.load_all()
    return cache


@lru_cache(maxsize=1)
def get_price_service() -> TokenPriceService:
    cfg = get_config()
    return TokenPriceService(
        symbol=cfg.price_symbol,
        api_url=cfg.price_api_url,
        ttl_seconds=cfg.price_cache_ttl_seconds,
        fallback_price=cfg.price_fallback,
    )


def get_session(engine: Annotated[Engine, Depends(get_engine)]):
    with Session(engine) as session:
        yield session


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------
def _decode_bearer(authorization: str | None) -> dict:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Missing token")
    token = authorization.split(" ", 1)[1]
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except InvalidTokenError:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid token")
    try:
        payload["user_id"] = int(payload["sub"])
    except (KeyError, TypeError, ValueError):
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid token subject")
    return payload


def get_current_user(
    authorization: Annotated[str | None, Header()] = None,
) -> dict:
    """Validate JWT and return its payload with an integer ``user_id``."""
    return _decode_bearer(authorization)


def get_current_admin(
    authorization: Annotated[str | None, Header()] = None,
) -> dict:
    """Validate JWT and return admin user payload. Raises 401/403."""
    payload = _decode_bearer(authorization)
    if not payload.get("is_admin"):
        raise HTTPException(status.HTTP_403_FORBIDDEN, "Not admin")
    return payload


def get_service_caller(
    authorization: Annotated[str | None, Header()] = None,
) -> dict:
    """Validate JWT of a progress reporter (service or admin token)."""
    payload = _decode_bearer(authorization)
    if not (payload.get("is_service") or payload.get("is_admin")):
        raise HTTPException(status.HTTP_403_FORBIDDEN, "Not a progress reporter")
    return payload
