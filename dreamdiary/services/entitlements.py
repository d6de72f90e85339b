"""Account entitlement state machine.

Per-account states:

* ``FREE``          plan=FREE, no expiry
* ``DEEP_ACTIVE``   plan=DEEP, expiry in the future
* ``DEEP_EXPIRED``  plan=DEEP, expiry in the past; corrected to FREE by the
                    next read through :func:`load_entitlement`

Every write goes through an update intent. Each intent maps to a fixed set
of columns, so a transition never touches fields it does not own.
"""
from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Union

from sqlalchemy import func, select, text, update
from sqlalchemy.orm import Session

from dreamdiary.metrics import plan_expired_total
from dreamdiary.models import Plan, Role, User

logger = logging.getLogger(__name__)

MAX_GRANT_MONTHS = 12


class PlanState(str, Enum):
    FREE = "FREE"
    DEEP_ACTIVE = "DEEP_ACTIVE"
    DEEP_EXPIRED = "DEEP_EXPIRED"


class EntitlementError(Exception):
    """Base class for rejected entitlement transitions."""


class AccountNotFound(EntitlementError):
    pass


class SelfModificationForbidden(EntitlementError):
    pass


class InvalidPlanChange(EntitlementError, ValueError):
    pass


class SuperadminExists(EntitlementError):
    pass


def as_utc(value: datetime | str | None) -> datetime | None:
    """Normalize stored timestamps (SQLite returns naive values) to aware UTC."""
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def add_months(moment: datetime, months: int) -> datetime:
    """Calendar-month arithmetic, clamping to the last day of shorter months."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def plan_state(user: User, now: datetime | None = None) -> PlanState:
    if user.plan != Plan.DEEP.value:
        return PlanState.FREE
    now = now or datetime.now(timezone.utc)
    expires_at = as_utc(user.plan_expires_at)
    if expires_at is not None and expires_at < now:
        return PlanState.DEEP_EXPIRED
    return PlanState.DEEP_ACTIVE


def is_superadmin(user: User) -> bool:
    return user.role == Role.SUPERADMIN.value


def is_premium(user: User, now: datetime | None = None) -> bool:
    """SUPERADMIN or an active paid plan."""
    return is_superadmin(user) or plan_state(user, now) is PlanState.DEEP_ACTIVE


# --- update intents -------------------------------------------------------


@dataclass(frozen=True)
class LazyExpiry:
    def changes(self) -> dict[str, Any]:
        return {"plan": Plan.FREE.value, "plan_expires_at": None}


@dataclass(frozen=True)
class AdminTrialGrant:
    """First FREE -> DEEP transition granted by an administrator."""

    expires_at: datetime

    def changes(self) -> dict[str, Any]:
        return {
            "plan": Plan.DEEP.value,
            "plan_expires_at": as_utc(self.expires_at),
            "was_admin_upgraded": True,
            "has_seen_upgrade_notice": False,
        }


@dataclass(frozen=True)
class AdminExpiryUpdate:
    expires_at: datetime

    def changes(self) -> dict[str, Any]:
        return {"plan": Plan.DEEP.value, "plan_expires_at": as_utc(self.expires_at)}


@dataclass(frozen=True)
class AdminDowngrade:
    def changes(self) -> dict[str, Any]:
        return {
            "plan": Plan.FREE.value,
            "plan_expires_at": None,
            "was_admin_upgraded": False,
        }


@dataclass(frozen=True)
class BillingActivation:
    expires_at: datetime

    def changes(self) -> dict[str, Any]:
        return {"plan": Plan.DEEP.value, "plan_expires_at": as_utc(self.expires_at)}


@dataclass(frozen=True)
class BillingDeactivation:
    def changes(self) -> dict[str, Any]:
        return {
            "plan": Plan.FREE.value,
            "plan_expires_at": None,
            "was_admin_upgraded": False,
        }


@dataclass(frozen=True)
class CounterReset:
    def changes(self) -> dict[str, Any]:
        return {"lifetime_analysis_count": 0, "lifetime_weekly_report_count": 0}


@dataclass(frozen=True)
class RoleChange:
    role: Role

    def changes(self) -> dict[str, Any]:
        return {"role": self.role.value}


@dataclass(frozen=True)
class UpgradeNoticeSeen:
    def changes(self) -> dict[str, Any]:
        return {"has_seen_upgrade_notice": True}


UpdateIntent = Union[
    LazyExpiry,
    AdminTrialGrant,
    AdminExpiryUpdate,
    AdminDowngrade,
    BillingActivation,
    BillingDeactivation,
    CounterReset,
    RoleChange,
    UpgradeNoticeSeen,
]


def apply_intent(user: User, intent: UpdateIntent) -> User:
    for field, value in intent.changes().items():
        setattr(user, field, value)
    return user


# --- reads ------------------------------------------------------------------


def load_entitlement(
    db: Session, account_id: int, now: datetime | None = None
) -> User | None:
    """Load an account, persisting the DEEP_EXPIRED -> FREE correction first."""
    user = db.get(User, account_id)
    if user is None:
        return None
    now = now or datetime.now(timezone.utc)
    if plan_state(user, now) is not PlanState.DEEP_EXPIRED:
        return user

    # Guarded so a renewal committed in between is not overwritten.
    result = db.execute(
        update(User)
        .where(
            User.id == account_id,
            User.plan == Plan.DEEP.value,
            User.plan_expires_at < now,
        )
        .values(**LazyExpiry().changes())
        .execution_options(synchronize_session=False)
    )
    db.commit()
    db.refresh(user)
    if result.rowcount:
        plan_expired_total.inc()
        logger.info("plan expired for account %s", account_id)
    return user


def superadmin_exists(db: Session) -> bool:
    return (
        db.execute(
            select(func.count(User.id)).where(User.role == Role.SUPERADMIN.value)
        ).scalar_one()
        > 0
    )


# --- writes -----------------------------------------------------------------


def lock_account(db: Session, account_id: int) -> None:
    """Take the write lock on one account for the rest of the transaction.

    An UPDATE that rewrites ``role`` unchanged rather than ``SELECT ... FOR
    UPDATE``: SQLite ignores row locks and only takes its RESERVED lock on
    the first write statement.
    """
    db.execute(
        update(User)
        .where(User.id == account_id)
        .values(role=User.role)
        .execution_options(synchronize_session=False)
    )


def lock_accounts(db: Session) -> None:
    """Serialize writers that decide on the accounts table as a whole."""
    if db.get_bind().dialect.name == "postgresql":
        db.execute(text("LOCK TABLE users IN SHARE ROW EXCLUSIVE MODE"))
        return
    db.execute(
        update(User)
        .where(User.role == Role.SUPERADMIN.value)
        .values(role=User.role)
        .execution_options(synchronize_session=False)
    )


def bootstrap_superadmin(
    db: Session, *, email: str, password_hash: str, name: str | None = None
) -> tuple[User, bool]:
    """Create the first SUPERADMIN or promote the account owning ``email``.

    Returns ``(user, created)``. Raises :class:`SuperadminExists` once any
    SUPERADMIN is present; the check and the write share one transaction.
    """
    lock_accounts(db)
    if superadmin_exists(db):
        db.rollback()
        raise SuperadminExists()
    existing = db.execute(select(User).where(User.email == email)).scalar_one_or_none()
    if existing is not None:
        apply_intent(existing, RoleChange(Role.SUPERADMIN))
        db.commit()
        return existing, False
    user = create_account(
        db,
        email=email,
        password_hash=password_hash,
        name=name or "Super Admin",
        role=Role.SUPERADMIN,
    )
    return user, True


def create_account(
    db: Session,
    *,
    email: str,
    password_hash: str,
    name: str | None = None,
    username: str | None = None,
    role: Role = Role.STANDARD,
) -> User:
    """Create an account together with its FREE entitlement."""
    user = User(
        email=email,
        password_hash=password_hash,
        name=name,
        username=username,
        role=role.value,
        plan=Plan.FREE.value,
        plan_expires_at=None,
        lifetime_analysis_count=0,
        lifetime_weekly_report_count=0,
        was_admin_upgraded=False,
        has_seen_upgrade_notice=True,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def resolve_grant_expiry(
    *,
    duration_months: int | None,
    expires_at: datetime | None,
    now: datetime,
) -> datetime:
    if (duration_months is None) == (expires_at is None):
        raise InvalidPlanChange("Provide either duration_months or expires_at")
    if duration_months is not None:
        if not 1 <= duration_months <= MAX_GRANT_MONTHS:
            raise InvalidPlanChange(
                f"duration_months must be between 1 and {MAX_GRANT_MONTHS}"
            )
        return add_months(now, duration_months)
    explicit = as_utc(expires_at)
    if explicit <= now:
        raise InvalidPlanChange("expires_at must be in the future")
    return explicit


def plan_change_intent(
    user: User,
    plan: Plan,
    *,
    expires_at: datetime | None,
    now: datetime,
) -> UpdateIntent:
    """Pick the intent for an administrative plan change on a corrected record."""
    if plan is Plan.FREE:
        return AdminDowngrade()
    if expires_at is None:
        raise InvalidPlanChange("A DEEP plan needs an expiry")
    if plan_state(user, now) is PlanState.FREE:
        return AdminTrialGrant(expires_at)
    return AdminExpiryUpdate(expires_at)


def _guard_self(actor_id: int, target_id: int, what: str) -> None:
    if actor_id == target_id:
        logger.warning(
            "audit: account %s attempted to modify its own %s", actor_id, what
        )
        raise SelfModificationForbidden(f"Cannot modify your own {what}")


def admin_change_plan(
    db: Session,
    *,
    actor_id: int,
    target_id: int,
    plan: Plan,
    duration_months: int | None = None,
    expires_at: datetime | None = None,
    now: datetime | None = None,
) -> User:
    _guard_self(actor_id, target_id, "plan")
    now = now or datetime.now(timezone.utc)
    new_expiry = None
    if plan is Plan.DEEP:
        new_expiry = resolve_grant_expiry(
            duration_months=duration_months, expires_at=expires_at, now=now
        )

    user = load_entitlement(db, target_id, now)
    if user is None:
        raise AccountNotFound(target_id)
    intent = plan_change_intent(user, plan, expires_at=new_expiry, now=now)
    apply_intent(user, intent)
    db.commit()
    logger.info(
        "admin %s set plan of account %s via %s",
        actor_id,
        target_id,
        type(intent).__name__,
    )
    return user


def admin_change_role(
    db: Session, *, actor_id: int, target_id: int, role: Role
) -> User:
    _guard_self(actor_id, target_id, "role")
    user = db.get(User, target_id)
    if user is None:
        raise AccountNotFound(target_id)
    apply_intent(user, RoleChange(role))
    db.commit()
    logger.info("admin %s set role of account %s to %s", actor_id, target_id, role.value)
    return user


def admin_reset_usage(db: Session, *, actor_id: int, target_id: int) -> User:
    user = db.get(User, target_id)
    if user is None:
        raise AccountNotFound(target_id)
    apply_intent(user, CounterReset())
    db.commit()
    logger.info("admin %s reset usage counters of account %s", actor_id, target_id)
    return user


def acknowledge_upgrade_notice(db: Session, account_id: int) -> User:
    user = db.get(User, account_id)
    if user is None:
        raise AccountNotFound(account_id)
    apply_intent(user, UpgradeNoticeSeen())
    db.commit()
    return user


__all__ = [
    "AccountNotFound",
    "AdminDowngrade",
    "AdminExpiryUpdate",
    "AdminTrialGrant",
    "BillingActivation",
    "BillingDeactivation",
    "CounterReset",
    "EntitlementError",
    "InvalidPlanChange",
    "LazyExpiry",
    "PlanState",
    "RoleChange",
    "SelfModificationForbidden",
    "SuperadminExists",
    "UpdateIntent",
    "UpgradeNoticeSeen",
    "acknowledge_upgrade_notice",
    "add_months",
    "admin_change_plan",
    "admin_change_role",
    "admin_reset_usage",
    "apply_intent",
    "as_utc",
    "bootstrap_superadmin",
    "create_account",
    "is_premium",
    "is_superadmin",
    "load_entitlement",
    "lock_account",
    "lock_accounts",
    "plan_change_intent",
    "plan_state",
    "resolve_grant_expiry",
    "superadmin_exists",
]
