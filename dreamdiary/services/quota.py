"""Quota enforcement for metered actions.

``authorize`` makes the allow/deny decision on a freshly corrected
entitlement. It never writes counters: the caller performs the metered work
first and then commits usage through ``record_analysis_usage`` or
``record_weekly_report``. Both commit paths re-check the limit inside the
write itself, so two concurrent requests from one account cannot both pass a
boundary with a single unit of quota left.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, Union
from zoneinfo import ZoneInfo

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from dreamdiary.config import Settings
from dreamdiary.metrics import quota_reject_total
from dreamdiary.models import Dream, User, WeeklyReport
from dreamdiary.services.entitlements import (
    AccountNotFound,
    PlanState,
    is_superadmin,
    load_entitlement,
    lock_account,
    plan_state,
)
from dreamdiary.services.tokens import IdentityClaim

settings = Settings()
logger = logging.getLogger(__name__)

REDACTED_FIELDS = ("analysis", "reflection")


class Action(str, Enum):
    SINGLE_ANALYSIS = "SINGLE_ANALYSIS"
    WEEKLY_REPORT = "WEEKLY_REPORT"


class DenyReason(str, Enum):
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    PRECONDITION_FAILED = "PRECONDITION_FAILED"


@dataclass(frozen=True)
class WeekWindow:
    """Sunday 00:00 to Saturday 23:59:59.999999 in the configured time zone."""

    start: datetime
    end: datetime

    @property
    def start_date(self) -> date:
        return self.start.date()

    @property
    def end_date(self) -> date:
        return self.end.date()

    def utc_bounds(self) -> tuple[datetime, datetime]:
        return self.start.astimezone(timezone.utc), self.end.astimezone(timezone.utc)


@dataclass(frozen=True)
class Allowed:
    consumes_quota: bool
    premium: bool
    weekly_cap: int | None = None
    week: WeekWindow | None = None
    days_recorded: int | None = None


@dataclass(frozen=True)
class Denied:
    reason: DenyReason
    message: str


Decision = Union[Allowed, Denied]


def current_week(now: datetime | None = None, tz: str | None = None) -> WeekWindow:
    zone = ZoneInfo(tz or settings.week_timezone)
    local = (now or datetime.now(timezone.utc)).astimezone(zone)
    days_since_sunday = (local.weekday() + 1) % 7
    start_day = local.date() - timedelta(days=days_since_sunday)
    start = datetime(start_day.year, start_day.month, start_day.day, tzinfo=zone)
    end_day = start_day + timedelta(days=6)
    end = datetime(
        end_day.year, end_day.month, end_day.day, 23, 59, 59, 999999, tzinfo=zone
    )
    return WeekWindow(start=start, end=end)


def count_recorded_days(db: Session, account_id: int, week: WeekWindow) -> int:
    """Distinct dream dates inside the week, regardless of entry count."""
    return db.execute(
        select(func.count(func.distinct(Dream.dream_date))).where(
            Dream.user_id == account_id,
            Dream.dream_date >= week.start_date,
            Dream.dream_date <= week.end_date,
        )
    ).scalar_one()


def count_reports_in_week(db: Session, account_id: int, week: WeekWindow) -> int:
    start, end = week.utc_bounds()
    return db.execute(
        select(func.count(WeeklyReport.id)).where(
            WeeklyReport.user_id == account_id,
            WeeklyReport.created_at >= start,
            WeeklyReport.created_at <= end,
        )
    ).scalar_one()


def remaining_analyses(user: User, now: datetime | None = None) -> int:
    """Analyses left for the account; ``-1`` means unlimited."""
    if _unmetered(user, now):
        return -1
    return max(0, settings.free_analysis_limit - user.lifetime_analysis_count)


def redact_analysis(result: dict[str, Any] | None) -> dict[str, Any] | None:
    """Strip the deep fields; the free tier keeps only summary and vibe."""
    if result is None:
        return None
    redacted = dict(result)
    for field in REDACTED_FIELDS:
        redacted[field] = None
    return redacted


def _unmetered(user: User, now: datetime | None) -> bool:
    if not settings.paywall_enabled or is_superadmin(user):
        return True
    return plan_state(user, now) is PlanState.DEEP_ACTIVE


def _deny(action: Action, reason: DenyReason, message: str, account_id: int) -> Denied:
    quota_reject_total.labels(action=action.value, reason=reason.value).inc()
    logger.info(
        "quota denied for account %s: %s %s", account_id, action.value, reason.value
    )
    return Denied(reason=reason, message=message)


def _authorize_analysis(user: User, now: datetime) -> Decision:
    if _unmetered(user, now):
        return Allowed(consumes_quota=False, premium=True)
    limit = settings.free_analysis_limit
    if user.lifetime_analysis_count >= limit:
        return _deny(
            Action.SINGLE_ANALYSIS,
            DenyReason.QUOTA_EXCEEDED,
            f"You have used all {limit} free AI analyses. "
            "Upgrade to the Deep plan for unlimited analyses.",
            user.id,
        )
    return Allowed(consumes_quota=True, premium=False)


def _authorize_weekly_report(db: Session, user: User, now: datetime) -> Decision:
    week = current_week(now)
    if is_superadmin(user):
        return Allowed(consumes_quota=False, premium=True, week=week)

    deep_active = plan_state(user, now) is PlanState.DEEP_ACTIVE
    if not settings.paywall_enabled:
        premium, cap, consumes = True, None, False
        min_days = settings.deep_min_report_days
    elif deep_active:
        premium, consumes = True, False
        cap = settings.deep_weekly_report_limit
        min_days = settings.deep_min_report_days
        if count_reports_in_week(db, user.id, week) >= cap:
            return _deny(
                Action.WEEKLY_REPORT,
                DenyReason.QUOTA_EXCEEDED,
                f"You have generated {cap} weekly reports this week. "
                "You can generate another one from next Sunday.",
                user.id,
            )
    else:
        premium, cap, consumes = False, None, True
        min_days = settings.free_min_report_days
        limit = settings.free_weekly_report_limit
        if user.lifetime_weekly_report_count >= limit:
            return _deny(
                Action.WEEKLY_REPORT,
                DenyReason.QUOTA_EXCEEDED,
                f"You have used all {limit} free weekly reports. "
                "Upgrade to the Deep plan for weekly reports every week.",
                user.id,
            )

    days = count_recorded_days(db, user.id, week)
    if days < min_days:
        message = (
            f"At least {min_days} days of dreams are needed this week "
            f"to generate a report (currently {days})."
        )
        if not premium:
            message += (
                " The Deep plan only needs "
                f"{settings.deep_min_report_days} days."
            )
        return _deny(
            Action.WEEKLY_REPORT, DenyReason.PRECONDITION_FAILED, message, user.id
        )
    return Allowed(
        consumes_quota=consumes,
        premium=premium,
        weekly_cap=cap,
        week=week,
        days_recorded=days,
    )


def authorize(
    db: Session,
    identity: IdentityClaim,
    action: Action,
    now: datetime | None = None,
) -> Decision:
    """Decide whether ``identity`` may perform ``action`` right now.

    The stored role is authoritative; the role inside the token is only what
    was true when the token was issued.
    """
    now = now or datetime.now(timezone.utc)
    user = load_entitlement(db, identity.account_id, now)
    if user is None:
        raise AccountNotFound(identity.account_id)
    if action is Action.SINGLE_ANALYSIS:
        return _authorize_analysis(user, now)
    return _authorize_weekly_report(db, user, now)


def record_analysis_usage(db: Session, account_id: int) -> bool:
    """Increment the lifetime analysis counter unless the limit was reached.

    Returns ``False`` when a concurrent request consumed the last unit first.
    """
    result = db.execute(
        update(User)
        .where(
            User.id == account_id,
            User.lifetime_analysis_count < settings.free_analysis_limit,
        )
        .values(lifetime_analysis_count=User.lifetime_analysis_count + 1)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount != 1:
        quota_reject_total.labels(
            action=Action.SINGLE_ANALYSIS.value,
            reason=DenyReason.QUOTA_EXCEEDED.value,
        ).inc()
        logger.warning("analysis quota race lost for account %s", account_id)
        return False
    return True


def record_weekly_report(
    db: Session,
    account_id: int,
    decision: Allowed,
    analysis: dict[str, Any],
    now: datetime | None = None,
) -> WeeklyReport | None:
    """Persist a generated report and consume quota in one transaction.

    The account row is write-locked before the weekly count so concurrent
    generations for the same account are serialized. Returns ``None`` if the limit was reached in the
    meantime; nothing is written in that case.
    """
    now = now or datetime.now(timezone.utc)
    week = decision.week or current_week(now)
    lock_account(db, account_id)

    if decision.weekly_cap is not None:
        if count_reports_in_week(db, account_id, week) >= decision.weekly_cap:
            db.rollback()
            logger.warning("weekly report race lost for account %s", account_id)
            return None

    if decision.consumes_quota:
        result = db.execute(
            update(User)
            .where(
                User.id == account_id,
                User.lifetime_weekly_report_count < settings.free_weekly_report_limit,
            )
            .values(
                lifetime_weekly_report_count=User.lifetime_weekly_report_count + 1
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.rollback()
            logger.warning("weekly report race lost for account %s", account_id)
            return None

    report = WeeklyReport(
        user_id=account_id,
        start_date=week.start_date,
        end_date=week.end_date,
        analysis=analysis,
        created_at=now,
    )
    db.add(report)
    db.commit()
    db.refresh(report)
    return report


__all__ = [
    "Action",
    "Allowed",
    "Decision",
    "Denied",
    "DenyReason",
    "WeekWindow",
    "authorize",
    "count_recorded_days",
    "count_reports_in_week",
    "current_week",
    "record_analysis_usage",
    "record_weekly_report",
    "redact_analysis",
    "remaining_analyses",
]
