import asyncio
import logging
from datetime import datetime

from fastapi import APIRouter, Depends, Request, Response
from pydantic import BaseModel
from sqlalchemy import func, select

from dreamdiary import db as db_module
from dreamdiary.controllers.auth import AccountOut, EntitlementOut, entitlement_out
from dreamdiary.dependencies import (
    ErrorResponse,
    http_error,
    parse_body,
    require_superadmin,
)
from dreamdiary.models import Dream, ErrorCode, Plan, Role, User
from dreamdiary.services.entitlements import (
    AccountNotFound,
    InvalidPlanChange,
    SelfModificationForbidden,
    admin_change_plan,
    admin_change_role,
    admin_reset_usage,
)
from dreamdiary.services.passwords import hash_password, validate_password
from dreamdiary.services.tokens import IdentityClaim

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin")

ADMIN_RESPONSES = {
    401: {"model": ErrorResponse},
    403: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
}


class AdminUserOut(AccountOut):
    created_at: datetime
    updated_at: datetime | None = None


class UserStats(BaseModel):
    total_users: int
    free_users: int
    deep_users: int
    total_dreams: int


class PlanUpdateRequest(BaseModel):
    plan: Plan
    duration_months: int | None = None
    expires_at: datetime | None = None


class RoleUpdateRequest(BaseModel):
    role: Role


class PasswordResetRequest(BaseModel):
    password: str


async def _run_transition(func, **kwargs) -> EntitlementOut:
    """Run an entitlement transition and map its domain errors to HTTP."""

    def _db_call() -> EntitlementOut:
        with db_module.SessionLocal() as db:
            return entitlement_out(func(db, **kwargs))

    try:
        return await asyncio.to_thread(_db_call)
    except SelfModificationForbidden as exc:
        raise http_error(403, ErrorCode.FORBIDDEN, str(exc)) from exc
    except AccountNotFound as exc:
        raise http_error(404, ErrorCode.NOT_FOUND, "User not found") from exc
    except InvalidPlanChange as exc:
        raise http_error(400, ErrorCode.BAD_REQUEST, str(exc)) from exc


@router.get("/users", response_model=list[AdminUserOut], responses=ADMIN_RESPONSES)
async def list_users(_: IdentityClaim = Depends(require_superadmin)):
    def _db_call() -> list[AdminUserOut]:
        with db_module.SessionLocal() as db:
            users = db.query(User).order_by(User.created_at.desc(), User.id.desc()).all()
            return [AdminUserOut.model_validate(u, from_attributes=True) for u in users]

    return await asyncio.to_thread(_db_call)


@router.get("/stats", response_model=UserStats, responses=ADMIN_RESPONSES)
async def user_stats(_: IdentityClaim = Depends(require_superadmin)):
    def _db_call() -> UserStats:
        with db_module.SessionLocal() as db:
            by_plan = dict(
                db.execute(select(User.plan, func.count(User.id)).group_by(User.plan)).all()
            )
            total_dreams = db.execute(select(func.count(Dream.id))).scalar_one()
            return UserStats(
                total_users=sum(by_plan.values()),
                free_users=by_plan.get(Plan.FREE.value, 0),
                deep_users=by_plan.get(Plan.DEEP.value, 0),
                total_dreams=total_dreams,
            )

    return await asyncio.to_thread(_db_call)


@router.put(
    "/users/{user_id}/plan",
    response_model=EntitlementOut,
    responses={**ADMIN_RESPONSES, 400: {"model": ErrorResponse}},
)
async def update_plan(
    user_id: int,
    request: Request,
    admin: IdentityClaim = Depends(require_superadmin),
):
    body = await parse_body(request, PlanUpdateRequest)
    return await _run_transition(
        admin_change_plan,
        actor_id=admin.account_id,
        target_id=user_id,
        plan=body.plan,
        duration_months=body.duration_months,
        expires_at=body.expires_at,
    )


@router.put(
    "/users/{user_id}/role",
    response_model=EntitlementOut,
    responses={**ADMIN_RESPONSES, 400: {"model": ErrorResponse}},
)
async def update_role(
    user_id: int,
    request: Request,
    admin: IdentityClaim = Depends(require_superadmin),
):
    body = await parse_body(request, RoleUpdateRequest)
    return await _run_transition(
        admin_change_role,
        actor_id=admin.account_id,
        target_id=user_id,
        role=body.role,
    )


@router.post(
    "/users/{user_id}/reset-usage",
    response_model=EntitlementOut,
    responses=ADMIN_RESPONSES,
)
async def reset_usage(
    user_id: int, admin: IdentityClaim = Depends(require_superadmin)
):
    return await _run_transition(
        admin_reset_usage, actor_id=admin.account_id, target_id=user_id
    )


@router.post(
    "/users/{user_id}/password",
    status_code=204,
    responses={**ADMIN_RESPONSES, 400: {"model": ErrorResponse}},
)
async def reset_password(
    user_id: int,
    request: Request,
    admin: IdentityClaim = Depends(require_superadmin),
):
    body = await parse_body(request, PasswordResetRequest)
    if problem := validate_password(body.password):
        raise http_error(400, ErrorCode.BAD_REQUEST, problem)
    password_hash = await asyncio.to_thread(hash_password, body.password)

    def _db_call() -> bool:
        with db_module.SessionLocal() as db:
            user = db.get(User, user_id)
            if user is None:
                return False
            user.password_hash = password_hash
            db.commit()
            return True

    if not await asyncio.to_thread(_db_call):
        raise http_error(404, ErrorCode.NOT_FOUND, "User not found")
    logger.info("admin %s reset password of account %s", admin.account_id, user_id)
    return Response(status_code=204)
