"""Signed session tokens.

Tokens are compact HS256 JWTs carrying the identity claim. Verification is
silent: any failure (bad signature, other algorithm, expired, malformed
payload) yields ``None`` so callers cannot tell tampering from absence.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import jwt

from dreamdiary.config import Settings
from dreamdiary.models import Role

settings = Settings()

ALGORITHM = "HS256"


@dataclass(frozen=True)
class IdentityClaim:
    account_id: int
    email: str
    role: Role
    display_name: str | None = None

    @property
    def is_superadmin(self) -> bool:
        return self.role is Role.SUPERADMIN


def issue_token(
    claim: IdentityClaim,
    *,
    secret: str | None = None,
    now: datetime | None = None,
    ttl: timedelta | None = None,
) -> str:
    """Sign ``claim`` into a token expiring ``ttl`` (default 7 days) after ``now``."""
    issued_at = now or datetime.now(timezone.utc)
    lifetime = ttl if ttl is not None else timedelta(days=settings.session_ttl_days)
    payload = {
        "sub": str(claim.account_id),
        "email": claim.email,
        "name": claim.display_name,
        "role": claim.role.value,
        "iat": issued_at,
        "exp": issued_at + lifetime,
    }
    return jwt.encode(payload, secret or settings.jwt_secret, algorithm=ALGORITHM)


def verify_token(token: str, *, secret: str | None = None) -> IdentityClaim | None:
    """Return the embedded claim, or ``None`` if the token is not acceptable."""
    if not token:
        return None
    try:
        payload = jwt.decode(
            token,
            secret or settings.jwt_secret,
            algorithms=[ALGORITHM],
            options={"require": ["sub", "exp", "iat"], "verify_exp": True},
        )
    except jwt.PyJWTError:
        return None

    try:
        account_id = int(payload["sub"])
        email = payload["email"]
        role = Role(payload["role"])
    except (KeyError, TypeError, ValueError):
        return None
    if not isinstance(email, str):
        return None
    name = payload.get("name")
    return IdentityClaim(
        account_id=account_id,
        email=email,
        role=role,
        display_name=name if isinstance(name, str) else None,
    )


__all__ = ["ALGORITHM", "IdentityClaim", "issue_token", "verify_token"]
