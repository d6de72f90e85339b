import asyncio
import logging
from datetime import date, datetime
from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from dreamdiary import db as db_module
from dreamdiary.controllers.analysis import authorize_or_raise, call_collaborator
from dreamdiary.dependencies import ErrorResponse, current_identity, http_error
from dreamdiary.models import Dream, ErrorCode, WeeklyReport
from dreamdiary.services.analysis import generate_weekly_report
from dreamdiary.services.quota import Action, record_weekly_report
from dreamdiary.services.tokens import IdentityClaim

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/weekly-reports")


class WeeklyReportOut(BaseModel):
    id: int
    start_date: date
    end_date: date
    analysis: dict[str, Any]
    created_at: datetime


class WeeklyReportResponse(BaseModel):
    success: bool = True
    report: WeeklyReportOut


class WeeklyReportListResponse(BaseModel):
    success: bool = True
    reports: list[WeeklyReportOut]


@router.get(
    "",
    response_model=WeeklyReportListResponse,
    responses={401: {"model": ErrorResponse}},
)
async def list_reports(identity: IdentityClaim = Depends(current_identity)):
    def _db_call() -> list[WeeklyReportOut]:
        with db_module.SessionLocal() as db:
            reports = (
                db.query(WeeklyReport)
                .filter_by(user_id=identity.account_id)
                .order_by(WeeklyReport.created_at.desc(), WeeklyReport.id.desc())
                .all()
            )
            return [
                WeeklyReportOut.model_validate(report, from_attributes=True)
                for report in reports
            ]

    return WeeklyReportListResponse(reports=await asyncio.to_thread(_db_call))


@router.post(
    "",
    response_model=WeeklyReportResponse,
    responses={
        400: {"model": ErrorResponse},
        401: {"model": ErrorResponse},
        402: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    },
)
async def create_report(identity: IdentityClaim = Depends(current_identity)):
    decision = await authorize_or_raise(identity, Action.WEEKLY_REPORT)

    def _load_entries() -> list[Dream]:
        week = decision.week
        with db_module.SessionLocal() as db:
            return (
                db.query(Dream)
                .filter(
                    Dream.user_id == identity.account_id,
                    Dream.dream_date >= week.start_date,
                    Dream.dream_date <= week.end_date,
                )
                .order_by(Dream.dream_date, Dream.created_at)
                .all()
            )

    entries = await asyncio.to_thread(_load_entries)
    analysis = await call_collaborator(
        Action.WEEKLY_REPORT, generate_weekly_report, entries
    )

    def _db_call() -> WeeklyReportOut | None:
        with db_module.SessionLocal() as db:
            report = record_weekly_report(db, identity.account_id, decision, analysis)
            if report is None:
                return None
            return WeeklyReportOut.model_validate(report, from_attributes=True)

    out = await asyncio.to_thread(_db_call)
    if out is None:
        raise http_error(
            402,
            ErrorCode.QUOTA_EXCEEDED,
            "Weekly report limit reached while generating; please try again later.",
        )
    logger.info("weekly report %s generated for account %s", out.id, identity.account_id)
    return WeeklyReportResponse(report=out)
