from __future__ import annotations

from datetime import datetime, timedelta, timezone

from dreamdiary.models import Plan, User, WeeklyReport
from dreamdiary.db import SessionLocal
from dreamdiary.services import sessions

from tests.utils.accounts import PASSWORD, add_dreams, bearer, make_account, reload

REGISTRATION = {
    "email": "Luna@Example.com",
    "password": "moonlight",
    "confirm_password": "moonlight",
    "name": "Luna",
    "username": "luna_dreams",
}


def test_register_sets_session_cookie(browser):
    resp = browser.post("/v1/auth/register", json=REGISTRATION)
    assert resp.status_code == 200
    body = resp.json()
    assert body["user"]["email"] == "luna@example.com"
    assert body["user"]["plan"] == "FREE"
    assert body["token"]

    set_cookie = resp.headers["set-cookie"].lower()
    assert "session_token=" in set_cookie
    assert "httponly" in set_cookie
    assert "samesite=lax" in set_cookie
    assert "path=/" in set_cookie

    me = browser.get("/v1/auth/me")
    assert me.status_code == 200
    assert me.json()["remaining_analyses"] == 20
    assert me.json()["has_seen_upgrade_notice"] is True


def test_register_validation(client):
    resp = client.post("/v1/auth/register", json={**REGISTRATION, "password": "abc", "confirm_password": "abc"})
    assert resp.status_code == 400
    resp = client.post("/v1/auth/register", json={**REGISTRATION, "confirm_password": "sunlight"})
    assert resp.status_code == 400
    resp = client.post("/v1/auth/register", json={**REGISTRATION, "username": "no spaces!"})
    assert resp.status_code == 400
    resp = client.post("/v1/auth/register", content=b"{not json", headers={"Content-Type": "application/json"})
    assert resp.status_code == 400
    assert resp.json()["detail"]["code"] == "BAD_REQUEST"


def test_register_duplicates_conflict(client):
    make_account("luna@example.com")
    resp = client.post("/v1/auth/register", json=REGISTRATION)
    assert resp.status_code == 409

    make_account("other@example.com", username="taken_name")
    resp = client.post(
        "/v1/auth/register",
        json={**REGISTRATION, "email": "new@example.com", "username": "taken_name"},
    )
    assert resp.status_code == 409


def test_login_by_email_or_username(browser):
    make_account("sol@example.com", username="sol")
    for identifier in ("SOL@example.com", "sol"):
        resp = browser.post("/v1/auth/login", json={"identifier": identifier, "password": PASSWORD})
        assert resp.status_code == 200
        assert resp.json()["user"]["email"] == "sol@example.com"


def test_login_failures_are_uniform(browser):
    make_account("sol@example.com", username="sol")
    wrong = browser.post("/v1/auth/login", json={"identifier": "sol", "password": "nope-nope"})
    missing = browser.post("/v1/auth/login", json={"identifier": "ghost", "password": PASSWORD})
    assert wrong.status_code == missing.status_code == 401
    assert wrong.json() == missing.json()


def test_logout_clears_cookie(browser):
    browser.post("/v1/auth/register", json=REGISTRATION)
    resp = browser.post("/v1/auth/logout")
    assert resp.status_code == 204
    assert "max-age=0" in resp.headers["set-cookie"].lower()
    assert browser.get("/v1/auth/me").status_code == 401


def test_secure_cookie_in_production(browser, monkeypatch):
    monkeypatch.setattr(sessions.settings, "environment", "production")
    resp = browser.post("/v1/auth/register", json=REGISTRATION)
    assert "secure" in resp.headers["set-cookie"].lower()


def test_me_applies_lazy_expiry(client):
    account_id = make_account(
        plan=Plan.DEEP, expires_at=datetime.now(timezone.utc) - timedelta(minutes=1)
    )
    body = client.get("/v1/auth/me", headers=bearer(account_id)).json()
    assert body["plan"] == "FREE"
    assert body["plan_expires_at"] is None
    assert reload(account_id).plan == Plan.FREE.value


def test_me_requires_credentials(client):
    assert client.get("/v1/auth/me").status_code == 401
    assert client.get("/v1/auth/me", headers={"Authorization": "Bearer junk"}).status_code == 401


def test_dream_analysis_redacted_for_free_plan(client):
    account_id = make_account()
    analysis = {"summary": "s", "analysis": [{"title": "t", "content": "c"}], "vibe": "v", "reflection": "r"}
    resp = client.post(
        "/v1/dreams",
        json={"content": "Falling", "type": "nightmare", "date": "2026-10-18", "tags": ["fall"], "analysis": analysis},
        headers=bearer(account_id),
    )
    assert resp.status_code == 201
    assert resp.json()["analysis"]["analysis"] is None

    dreams = client.get("/v1/dreams", headers=bearer(account_id)).json()["dreams"]
    assert len(dreams) == 1
    assert dreams[0]["analysis"]["summary"] == "s"
    assert dreams[0]["analysis"]["reflection"] is None

    # the stored analysis is intact; upgrading reveals it
    with SessionLocal() as db:
        user = db.get(User, account_id)
        user.plan = Plan.DEEP.value
        user.plan_expires_at = datetime.now(timezone.utc) + timedelta(days=30)
        db.commit()
    dreams = client.get("/v1/dreams", headers=bearer(account_id)).json()["dreams"]
    assert dreams[0]["analysis"]["reflection"] == "r"


def test_delete_account_cascades(client):
    account_id = make_account()
    add_dreams(account_id, [datetime(2026, 10, 18).date()])
    with SessionLocal() as db:
        db.add(
            WeeklyReport(
                user_id=account_id,
                start_date=datetime(2026, 10, 18).date(),
                end_date=datetime(2026, 10, 24).date(),
                analysis={"summary": "x"},
            )
        )
        db.commit()

    resp = client.delete("/v1/me", headers=bearer(account_id))
    assert resp.status_code == 204
    assert reload(account_id) is None
    assert client.get("/v1/dreams", headers=bearer(account_id)).status_code == 404
    with SessionLocal() as db:
        assert db.query(WeeklyReport).filter_by(user_id=account_id).count() == 0
