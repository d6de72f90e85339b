"""Resolve the caller's identity from the request.

Credentials arrive either as ``Authorization: Bearer <token>`` (mobile and
other non-browser clients) or as the ``session_token`` cookie (browser
sessions). Providers are consulted in order and the first token that
verifies wins, so an explicit bearer credential is never overridden by a
stale cookie.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Protocol, Sequence

from starlette.requests import HTTPConnection
from starlette.responses import Response

from dreamdiary.config import Settings
from dreamdiary.services.tokens import IdentityClaim, issue_token, verify_token

settings = Settings()


class CredentialProvider(Protocol):
    name: str

    def extract(self, request: HTTPConnection) -> str | None:
        ...


class BearerHeaderProvider:
    name = "bearer"

    def extract(self, request: HTTPConnection) -> str | None:
        header = request.headers.get("Authorization")
        if not header:
            return None
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer":
            return None
        token = token.strip()
        return token or None


class CookieProvider:
    name = "cookie"

    def __init__(self, cookie_name: str | None = None) -> None:
        self.cookie_name = cookie_name or settings.session_cookie_name

    def extract(self, request: HTTPConnection) -> str | None:
        return request.cookies.get(self.cookie_name) or None


DEFAULT_CHAIN: tuple[CredentialProvider, ...] = (
    BearerHeaderProvider(),
    CookieProvider(),
)


def resolve(
    request: HTTPConnection,
    providers: Sequence[CredentialProvider] = DEFAULT_CHAIN,
) -> IdentityClaim | None:
    """Return the first verified claim from ``providers`` or ``None``."""
    for provider in providers:
        token = provider.extract(request)
        if token is None:
            continue
        claim = verify_token(token)
        if claim is not None:
            return claim
    return None


def start_session(response: Response, claim: IdentityClaim) -> str:
    """Issue a token for ``claim`` and set it as the session cookie."""
    now = datetime.now(timezone.utc)
    ttl = timedelta(days=settings.session_ttl_days)
    token = issue_token(claim, now=now, ttl=ttl)
    response.set_cookie(
        settings.session_cookie_name,
        token,
        expires=now + ttl,
        path="/",
        secure=settings.is_production,
        httponly=True,
        samesite="lax",
    )
    return token


def end_session(response: Response) -> None:
    response.delete_cookie(
        settings.session_cookie_name,
        path="/",
        secure=settings.is_production,
        httponly=True,
        samesite="lax",
    )


__all__ = [
    "BearerHeaderProvider",
    "CookieProvider",
    "CredentialProvider",
    "DEFAULT_CHAIN",
    "end_session",
    "resolve",
    "start_session",
]
