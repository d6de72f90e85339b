import asyncio
import logging
from typing import Any, NoReturn

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from dreamdiary import db as db_module
from dreamdiary.dependencies import (
    ErrorResponse,
    current_identity,
    http_error,
    parse_body,
)
from dreamdiary.metrics import analysis_fail_total, gpt_timeout_total
from dreamdiary.models import ErrorCode
from dreamdiary.services.analysis import analyze_dream
from dreamdiary.services.entitlements import AccountNotFound
from dreamdiary.services.quota import (
    Action,
    Allowed,
    Denied,
    DenyReason,
    authorize,
    record_analysis_usage,
    redact_analysis,
)
from dreamdiary.services.tokens import IdentityClaim

logger = logging.getLogger(__name__)

router = APIRouter()

DENY_STATUS = {
    DenyReason.QUOTA_EXCEEDED: (402, ErrorCode.QUOTA_EXCEEDED),
    DenyReason.PRECONDITION_FAILED: (400, ErrorCode.PRECONDITION_FAILED),
}


class AnalysisRequest(BaseModel):
    content: str = Field(min_length=1)


class AnalysisResponse(BaseModel):
    success: bool = True
    result: dict[str, Any]


def raise_denied(decision: Denied) -> NoReturn:
    status_code, code = DENY_STATUS[decision.reason]
    raise http_error(status_code, code, decision.message)


async def authorize_or_raise(identity: IdentityClaim, action: Action) -> Allowed:
    """Run the quota decision off the event loop; denials become HTTP errors."""

    def _db_call():
        with db_module.SessionLocal() as db:
            return authorize(db, identity, action)

    try:
        decision = await asyncio.to_thread(_db_call)
    except AccountNotFound as exc:
        raise http_error(404, ErrorCode.NOT_FOUND, "User not found") from exc
    if isinstance(decision, Denied):
        raise_denied(decision)
    return decision


async def call_collaborator(action: Action, func, *args) -> dict[str, Any]:
    """Run an LLM call; failures map to 502 and never reach quota accounting."""
    try:
        return await asyncio.to_thread(func, *args)
    except TimeoutError as exc:
        gpt_timeout_total.inc()
        analysis_fail_total.labels(action=action.value).inc()
        logger.exception("GPT timeout")
        raise http_error(502, ErrorCode.GPT_TIMEOUT, "GPT timeout") from exc
    except ValueError as exc:
        analysis_fail_total.labels(action=action.value).inc()
        logger.exception("Invalid GPT response")
        raise http_error(
            502, ErrorCode.SERVICE_UNAVAILABLE, "Invalid GPT response"
        ) from exc
    except Exception as exc:
        analysis_fail_total.labels(action=action.value).inc()
        logger.exception("GPT error")
        raise http_error(
            503, ErrorCode.SERVICE_UNAVAILABLE, "AI service temporarily unavailable"
        ) from exc


@router.post(
    "/analysis",
    response_model=AnalysisResponse,
    responses={
        400: {"model": ErrorResponse},
        401: {"model": ErrorResponse},
        402: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    },
)
async def analyze(request: Request, identity: IdentityClaim = Depends(current_identity)):
    body = await parse_body(request, AnalysisRequest)
    decision = await authorize_or_raise(identity, Action.SINGLE_ANALYSIS)

    result = await call_collaborator(
        Action.SINGLE_ANALYSIS, analyze_dream, body.content
    )

    if decision.consumes_quota:

        def _db_call() -> bool:
            with db_module.SessionLocal() as db:
                return record_analysis_usage(db, identity.account_id)

        if not await asyncio.to_thread(_db_call):
            raise http_error(
                402,
                ErrorCode.QUOTA_EXCEEDED,
                "You have used all your free AI analyses. "
                "Upgrade to the Deep plan for unlimited analyses.",
            )

    if not decision.premium:
        result = redact_analysis(result)
    return AnalysisResponse(result=result)
