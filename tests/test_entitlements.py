from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from dreamdiary.models import Plan, Role
from dreamdiary.services.entitlements import (
    AdminDowngrade,
    AdminExpiryUpdate,
    AdminTrialGrant,
    InvalidPlanChange,
    PlanState,
    SelfModificationForbidden,
    add_months,
    admin_change_plan,
    admin_change_role,
    admin_reset_usage,
    as_utc,
    load_entitlement,
    plan_change_intent,
    plan_state,
)

from tests.utils.accounts import bearer, make_account, reload

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


def test_add_months_clamps_to_month_end():
    assert add_months(datetime(2026, 1, 31, tzinfo=timezone.utc), 1).day == 28
    assert add_months(datetime(2026, 11, 15, tzinfo=timezone.utc), 12).year == 2027


def test_plan_state_classification():
    free = reload(make_account("free@example.com"))
    active = reload(make_account("deep@example.com", plan=Plan.DEEP, expires_at=NOW + timedelta(days=1)))
    stale = reload(make_account("old@example.com", plan=Plan.DEEP, expires_at=NOW - timedelta(seconds=1)))
    assert plan_state(free, NOW) is PlanState.FREE
    assert plan_state(active, NOW) is PlanState.DEEP_ACTIVE
    assert plan_state(stale, NOW) is PlanState.DEEP_EXPIRED


def test_lazy_expiry_is_persisted(db):
    account_id = make_account(
        plan=Plan.DEEP,
        expires_at=datetime.now(timezone.utc) - timedelta(days=1),
        analysis_count=4,
    )
    user = load_entitlement(db, account_id)
    assert user.plan == Plan.FREE.value
    assert user.plan_expires_at is None

    stored = reload(account_id)
    assert stored.plan == Plan.FREE.value
    assert stored.plan_expires_at is None
    assert stored.lifetime_analysis_count == 4


def test_load_entitlement_leaves_active_plan_alone(db):
    expiry = datetime.now(timezone.utc) + timedelta(days=3)
    account_id = make_account(plan=Plan.DEEP, expires_at=expiry)
    user = load_entitlement(db, account_id)
    assert user.plan == Plan.DEEP.value
    assert as_utc(user.plan_expires_at) == expiry


def test_load_entitlement_unknown_account(db):
    assert load_entitlement(db, 999999) is None


def test_admin_trial_grant_sets_flags(db):
    admin_id = make_account("admin@example.com", role=Role.SUPERADMIN)
    target_id = make_account()
    user = admin_change_plan(
        db, actor_id=admin_id, target_id=target_id, plan=Plan.DEEP, duration_months=1, now=NOW
    )
    assert user.plan == Plan.DEEP.value
    assert as_utc(user.plan_expires_at) == add_months(NOW, 1)
    assert user.was_admin_upgraded is True
    assert user.has_seen_upgrade_notice is False


def test_regrant_on_active_plan_only_moves_expiry(db):
    admin_id = make_account("admin@example.com", role=Role.SUPERADMIN)
    target_id = make_account(
        plan=Plan.DEEP,
        expires_at=NOW + timedelta(days=5),
        was_admin_upgraded=False,
        has_seen_upgrade_notice=True,
    )
    new_expiry = NOW + timedelta(days=90)
    user = admin_change_plan(
        db, actor_id=admin_id, target_id=target_id, plan=Plan.DEEP, expires_at=new_expiry, now=NOW
    )
    assert as_utc(user.plan_expires_at) == new_expiry
    assert user.was_admin_upgraded is False
    assert user.has_seen_upgrade_notice is True


def test_downgrade_clears_admin_flag(db):
    admin_id = make_account("admin@example.com", role=Role.SUPERADMIN)
    target_id = make_account(plan=Plan.DEEP, was_admin_upgraded=True)
    user = admin_change_plan(db, actor_id=admin_id, target_id=target_id, plan=Plan.FREE)
    assert user.plan == Plan.FREE.value
    assert user.plan_expires_at is None
    assert user.was_admin_upgraded is False


def test_plan_change_intent_selection():
    free = reload(make_account("free@example.com"))
    active = reload(make_account("deep@example.com", plan=Plan.DEEP, expires_at=NOW + timedelta(days=1)))
    later = NOW + timedelta(days=30)
    assert isinstance(plan_change_intent(free, Plan.DEEP, expires_at=later, now=NOW), AdminTrialGrant)
    assert isinstance(plan_change_intent(active, Plan.DEEP, expires_at=later, now=NOW), AdminExpiryUpdate)
    assert isinstance(plan_change_intent(active, Plan.FREE, expires_at=None, now=NOW), AdminDowngrade)


@pytest.mark.parametrize(
    "kwargs",
    [
        {},
        {"duration_months": 0},
        {"duration_months": 13},
        {"expires_at": NOW - timedelta(days=1)},
        {"duration_months": 1, "expires_at": NOW + timedelta(days=1)},
    ],
)
def test_invalid_grants_rejected(db, kwargs):
    admin_id = make_account("admin@example.com", role=Role.SUPERADMIN)
    target_id = make_account()
    with pytest.raises(InvalidPlanChange):
        admin_change_plan(db, actor_id=admin_id, target_id=target_id, plan=Plan.DEEP, now=NOW, **kwargs)
    assert reload(target_id).plan == Plan.FREE.value


def test_self_modification_forbidden(db):
    admin_id = make_account("admin@example.com", role=Role.SUPERADMIN)
    with pytest.raises(SelfModificationForbidden):
        admin_change_plan(db, actor_id=admin_id, target_id=admin_id, plan=Plan.DEEP, duration_months=12)
    with pytest.raises(SelfModificationForbidden):
        admin_change_role(db, actor_id=admin_id, target_id=admin_id, role=Role.STANDARD)
    stored = reload(admin_id)
    assert stored.plan == Plan.FREE.value
    assert stored.role == Role.SUPERADMIN.value


def test_reset_usage_only_touches_counters(db):
    admin_id = make_account("admin@example.com", role=Role.SUPERADMIN)
    target_id = make_account(analysis_count=20, report_count=3, plan=Plan.DEEP)
    user = admin_reset_usage(db, actor_id=admin_id, target_id=target_id)
    assert user.lifetime_analysis_count == 0
    assert user.lifetime_weekly_report_count == 0
    assert user.plan == Plan.DEEP.value


def test_admin_api_grant_and_acknowledge(client):
    admin_id = make_account("admin@example.com", role=Role.SUPERADMIN)
    target_id = make_account()

    resp = client.put(
        f"/v1/admin/users/{target_id}/plan",
        json={"plan": "DEEP", "duration_months": 3},
        headers=bearer(admin_id, Role.SUPERADMIN),
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["plan"] == "DEEP"
    assert body["was_admin_upgraded"] is True
    assert body["has_seen_upgrade_notice"] is False
    assert body["remaining_analyses"] == -1

    resp = client.post("/v1/me/upgrade-notice/ack", headers=bearer(target_id))
    assert resp.status_code == 204
    assert reload(target_id).has_seen_upgrade_notice is True


def test_admin_api_rejects_self_change(client):
    admin_id = make_account("admin@example.com", role=Role.SUPERADMIN)
    headers = bearer(admin_id, Role.SUPERADMIN)

    resp = client.put(f"/v1/admin/users/{admin_id}/role", json={"role": "STANDARD"}, headers=headers)
    assert resp.status_code == 403
    assert resp.json()["detail"]["code"] == "FORBIDDEN"

    resp = client.put(
        f"/v1/admin/users/{admin_id}/plan",
        json={"plan": "DEEP", "duration_months": 12},
        headers=headers,
    )
    assert resp.status_code == 403
    stored = reload(admin_id)
    assert stored.role == Role.SUPERADMIN.value
    assert stored.plan == Plan.FREE.value


def test_admin_api_uses_stored_role(client):
    account_id = make_account()
    target_id = make_account("other@example.com")
    # token still claims SUPERADMIN after a demotion
    resp = client.put(
        f"/v1/admin/users/{target_id}/plan",
        json={"plan": "DEEP", "duration_months": 1},
        headers=bearer(account_id, Role.SUPERADMIN),
    )
    assert resp.status_code == 403
    assert reload(target_id).plan == Plan.FREE.value


def test_admin_api_validation_and_missing_target(client):
    admin_id = make_account("admin@example.com", role=Role.SUPERADMIN)
    headers = bearer(admin_id, Role.SUPERADMIN)
    target_id = make_account()

    resp = client.put(f"/v1/admin/users/{target_id}/plan", json={"plan": "DEEP"}, headers=headers)
    assert resp.status_code == 400

    resp = client.put(f"/v1/admin/users/{target_id}/plan", json={"plan": "GOLD"}, headers=headers)
    assert resp.status_code == 400

    resp = client.put(
        "/v1/admin/users/999999/plan",
        json={"plan": "DEEP", "duration_months": 1},
        headers=headers,
    )
    assert resp.status_code == 404


def test_admin_stats_and_listing(client):
    admin_id = make_account("admin@example.com", role=Role.SUPERADMIN)
    make_account("one@example.com")
    make_account("two@example.com", plan=Plan.DEEP)
    headers = bearer(admin_id, Role.SUPERADMIN)

    stats = client.get("/v1/admin/stats", headers=headers).json()
    assert stats == {"total_users": 3, "free_users": 2, "deep_users": 1, "total_dreams": 0}

    users = client.get("/v1/admin/users", headers=headers).json()
    assert {u["email"] for u in users} == {
        "admin@example.com",
        "one@example.com",
        "two@example.com",
    }
    assert all("password_hash" not in u for u in users)


def test_admin_password_reset(client, browser):
    admin_id = make_account("admin@example.com", role=Role.SUPERADMIN)
    target_id = make_account("target@example.com")
    headers = bearer(admin_id, Role.SUPERADMIN)

    resp = client.post(f"/v1/admin/users/{target_id}/password", json={"password": "abc"}, headers=headers)
    assert resp.status_code == 400

    resp = client.post(
        f"/v1/admin/users/{target_id}/password", json={"password": "brand-new-pass"}, headers=headers
    )
    assert resp.status_code == 204

    resp = browser.post(
        "/v1/auth/login", json={"identifier": "target@example.com", "password": "brand-new-pass"}
    )
    assert resp.status_code == 200
