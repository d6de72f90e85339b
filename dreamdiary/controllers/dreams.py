import asyncio
import datetime as dt
from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from dreamdiary import db as db_module
from dreamdiary.dependencies import (
    ErrorResponse,
    current_identity,
    http_error,
    parse_body,
)
from dreamdiary.models import Dream, ErrorCode
from dreamdiary.services.entitlements import is_premium, load_entitlement
from dreamdiary.services.quota import redact_analysis
from dreamdiary.services.tokens import IdentityClaim

BATCH_SIZE = 100

router = APIRouter(prefix="/dreams")


class DreamCreateRequest(BaseModel):
    content: str = Field(min_length=1)
    type: str = Field(min_length=1, max_length=32)
    date: dt.date
    tags: list[str] = Field(default_factory=list)
    analysis: dict[str, Any] | None = None


class DreamOut(BaseModel):
    id: int
    content: str
    type: str
    date: dt.date
    tags: list[str]
    analysis: dict[str, Any] | None = None
    created_at: dt.datetime


class DreamListResponse(BaseModel):
    success: bool = True
    dreams: list[DreamOut]


def _dream_out(dream: Dream, premium: bool) -> DreamOut:
    analysis = dream.analysis if premium else redact_analysis(dream.analysis)
    return DreamOut(
        id=dream.id,
        content=dream.content,
        type=dream.dream_type,
        date=dream.dream_date,
        tags=list(dream.tags or []),
        analysis=analysis,
        created_at=dream.created_at,
    )


@router.post(
    "",
    response_model=DreamOut,
    status_code=201,
    responses={400: {"model": ErrorResponse}, 401: {"model": ErrorResponse}},
)
async def create_dream(
    request: Request, identity: IdentityClaim = Depends(current_identity)
):
    body = await parse_body(request, DreamCreateRequest)

    def _db_call() -> DreamOut | None:
        with db_module.SessionLocal() as db:
            user = load_entitlement(db, identity.account_id)
            if user is None:
                return None
            dream = Dream(
                user_id=user.id,
                content=body.content,
                dream_type=body.type,
                dream_date=body.date,
                tags=body.tags,
                analysis=body.analysis,
            )
            db.add(dream)
            db.commit()
            db.refresh(dream)
            return _dream_out(dream, is_premium(user))

    out = await asyncio.to_thread(_db_call)
    if out is None:
        raise http_error(404, ErrorCode.NOT_FOUND, "User not found")
    return out


@router.get(
    "",
    response_model=DreamListResponse,
    responses={401: {"model": ErrorResponse}},
)
async def list_dreams(identity: IdentityClaim = Depends(current_identity)):
    def _db_call() -> list[DreamOut] | None:
        with db_module.SessionLocal() as db:
            user = load_entitlement(db, identity.account_id)
            if user is None:
                return None
            premium = is_premium(user)
            return [
                _dream_out(dream, premium)
                for dream in (
                    db.query(Dream)
                    .filter_by(user_id=user.id)
                    .order_by(Dream.created_at.desc(), Dream.id.desc())
                    .yield_per(BATCH_SIZE)
                )
            ]

    dreams = await asyncio.to_thread(_db_call)
    if dreams is None:
        raise http_error(404, ErrorCode.NOT_FOUND, "User not found")
    return DreamListResponse(dreams=dreams)
