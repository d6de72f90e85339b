from __future__ import annotations

from starlette.requests import Request

from dreamdiary.models import Role
from dreamdiary.services.sessions import resolve
from dreamdiary.services.tokens import issue_token

from tests.utils.accounts import claim


def _request(authorization: str | None = None, cookie: str | None = None) -> Request:
    headers = []
    if authorization is not None:
        headers.append((b"authorization", authorization.encode()))
    if cookie is not None:
        headers.append((b"cookie", f"session_token={cookie}".encode()))
    return Request({"type": "http", "method": "GET", "path": "/", "headers": headers})


def test_bearer_header_wins_over_cookie():
    header_token = issue_token(claim(1))
    cookie_token = issue_token(claim(2, Role.SUPERADMIN))
    identity = resolve(_request(f"Bearer {header_token}", cookie_token))
    assert identity.account_id == 1
    assert identity.role is Role.STANDARD


def test_cookie_used_without_header():
    identity = resolve(_request(cookie=issue_token(claim(7))))
    assert identity.account_id == 7


def test_invalid_header_falls_back_to_cookie():
    identity = resolve(_request("Bearer garbage", issue_token(claim(3))))
    assert identity.account_id == 3


def test_non_bearer_scheme_ignored():
    token = issue_token(claim(5))
    assert resolve(_request(f"Basic {token}")) is None


def test_no_credentials():
    assert resolve(_request()) is None
    assert resolve(_request("Bearer ")) is None
