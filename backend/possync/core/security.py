"""JWT bearer tokens.

Logins and password storage belong to the POS auth service. This service
checks the tokens it issues and reads the operator (and, for terminal
tokens, the device) from the claims. Terminals that have been offline can
drift, so expiry and issued-at checks allow a small clock skew.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any

import jwt
from jwt.exceptions import PyJWTError

from possync.core.config import settings

logger = logging.getLogger(__name__)

CLOCK_SKEW = timedelta(seconds=60)


def create_access_token(claims: dict[str, Any], expires_delta: timedelta | None = None) -> str:
    """Sign ``claims`` with an expiry and a unique ``jti``.

    Production tokens come from the auth service; this mints equivalent ones
    for local terminals and tests.
    """
    issued_at = datetime.now(timezone.utc)
    lifetime = expires_delta or timedelta(minutes=settings.access_token_expire_minutes)
    token_claims = {
        **claims,
        "iat": issued_at,
        "exp": issued_at + lifetime,
        "jti": secrets.token_urlsafe(16),
    }
    return jwt.encode(token_claims, settings.secret_key, algorithm=settings.algorithm)


def decode_access_token(token: str) -> dict[str, Any] | None:
    """Return the verified claims, or None for a bad, expired or subject-less token."""
    try:
        return jwt.decode(
            token,
            settings.secret_key,
            algorithms=[settings.algorithm],
            leeway=CLOCK_SKEW,
            options={"require": ["exp", "sub"]},
        )
    except PyJWTError as e:
        logger.debug(f"Rejected bearer token: {e}")
        return None
