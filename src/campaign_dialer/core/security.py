"""JWT identities shared by the REST API and the realtime socket.

Tokens are HS256-signed and carry ``sub`` (user id), ``account_id`` and
``role``. Webhooks never use these; they are verified by signature.
"""

from __future__ import annotations

import warnings
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

import jwt

from campaign_dialer.core.exceptions import AuthenticationError

ROLES = ("admin", "supervisor", "agent", "viewer")
ELEVATED_ROLES = frozenset({"admin", "supervisor"})
CALL_VIEWER_ROLES = frozenset({"admin", "supervisor", "agent"})

INSECURE_DEV_SECRET = "INSECURE-DEV-SECRET-DO-NOT-USE-IN-PRODUCTION"


@dataclass(frozen=True)
class Identity:
    """Authenticated caller."""

    user_id: str
    account_id: str
    role: str
    permissions: tuple[str, ...] = field(default_factory=tuple)

    @property
    def is_elevated(self) -> bool:
        return self.role in ELEVATED_ROLES

    def can_access_call(self, call_id: str | None = None) -> bool:
        return self.role in CALL_VIEWER_ROLES

    def can_access_campaign(self, campaign_id: str | None = None) -> bool:
        return self.role in ELEVATED_ROLES

    def can_intervene(self) -> bool:
        return self.role in ELEVATED_ROLES


def resolve_secret(secret: str | None, environment: str = "development") -> str:
    """Return the signing secret, refusing to run without one in production."""
    if secret:
        return secret
    if environment in ("production", "staging", "prod"):
        raise ValueError(
            "JWT secret key must be configured in production! "
            "Set DIALER_JWT_SECRET_KEY environment variable."
        )
    warnings.warn(
        "Using insecure default JWT secret. Set DIALER_JWT_SECRET_KEY for production!",
        RuntimeWarning,
        stacklevel=2,
    )
    return INSECURE_DEV_SECRET


def create_access_token(
    subject: str,
    *,
    account_id: str,
    role: str,
    secret: str,
    algorithm: str = "HS256",
    expires_delta: timedelta = timedelta(minutes=60),
    permissions: list[str] | None = None,
) -> str:
    """Create a signed access token for ``subject``."""
    now = datetime.now(timezone.utc)
    payload: dict[str, Any] = {
        "sub": subject,
        "account_id": account_id,
        "role": role,
        "permissions": permissions or [],
        "iat": now,
        "exp": now + expires_delta,
        "type": "access",
    }
    return jwt.encode(payload, secret, algorithm=algorithm)


def decode_identity(token: str | None, *, secret: str, algorithm: str = "HS256") -> Identity:
    """Verify ``token`` and return the identity it carries.

    Raises:
        AuthenticationError: missing, expired or invalid token
    """
    if not token:
        raise AuthenticationError("Authentication token required")

    try:
        claims = jwt.decode(token, secret, algorithms=[algorithm])
    except jwt.ExpiredSignatureError as e:
        raise AuthenticationError("Token has expired", cause=e) from e
    except jwt.InvalidTokenError as e:
        raise AuthenticationError(f"Invalid token: {e}", cause=e) from e

    subject = claims.get("sub")
    account_id = claims.get("account_id")
    if not subject or not account_id:
        raise AuthenticationError("Token lacks subject or account")

    return Identity(
        user_id=str(subject),
        account_id=str(account_id),
        role=str(claims.get("role") or "viewer"),
        permissions=tuple(claims.get("permissions") or ()),
    )


def bearer_token(authorization: str | None) -> str | None:
    """Extract the token from an ``Authorization: Bearer ...`` header."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    return token.strip()
