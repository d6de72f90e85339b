import asyncio
import logging
import re
from datetime import datetime

from fastapi import APIRouter, Depends, Request, Response
from pydantic import BaseModel
from sqlalchemy import select

from dreamdiary import db as db_module
from dreamdiary.dependencies import (
    ErrorResponse,
    current_identity,
    http_error,
    parse_body,
)
from dreamdiary.models import ErrorCode, Role, User
from dreamdiary.services.entitlements import (
    AccountNotFound,
    acknowledge_upgrade_notice,
    create_account,
    load_entitlement,
)
from dreamdiary.services.passwords import hash_password, validate_password, verify_password
from dreamdiary.services.quota import remaining_analyses
from dreamdiary.services.sessions import end_session, start_session
from dreamdiary.services.tokens import IdentityClaim

logger = logging.getLogger(__name__)

USERNAME_RE = re.compile(r"^[a-zA-Z0-9_]{3,20}$")

router = APIRouter()


class RegisterRequest(BaseModel):
    email: str
    password: str
    confirm_password: str
    name: str
    username: str | None = None


class LoginRequest(BaseModel):
    identifier: str
    password: str


class AccountOut(BaseModel):
    id: int
    email: str
    name: str | None = None
    username: str | None = None
    role: str
    plan: str
    plan_expires_at: datetime | None = None


class EntitlementOut(AccountOut):
    lifetime_analysis_count: int
    lifetime_weekly_report_count: int
    was_admin_upgraded: bool
    has_seen_upgrade_notice: bool
    remaining_analyses: int


class AuthResponse(BaseModel):
    success: bool = True
    token: str
    user: AccountOut


def claim_for(user: User) -> IdentityClaim:
    return IdentityClaim(
        account_id=user.id,
        email=user.email,
        role=Role(user.role),
        display_name=user.name,
    )


def entitlement_out(user: User) -> EntitlementOut:
    return EntitlementOut.model_validate(
        {
            **AccountOut.model_validate(user, from_attributes=True).model_dump(),
            "lifetime_analysis_count": user.lifetime_analysis_count,
            "lifetime_weekly_report_count": user.lifetime_weekly_report_count,
            "was_admin_upgraded": user.was_admin_upgraded,
            "has_seen_upgrade_notice": user.has_seen_upgrade_notice,
            "remaining_analyses": remaining_analyses(user),
        }
    )


@router.post(
    "/auth/register",
    response_model=AuthResponse,
    responses={400: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def register(request: Request, response: Response):
    body = await parse_body(request, RegisterRequest)
    email = body.email.strip().lower()
    name = body.name.strip()
    if not email or not body.password or not name:
        raise http_error(400, ErrorCode.BAD_REQUEST, "All fields are required")
    if "@" not in email:
        raise http_error(400, ErrorCode.BAD_REQUEST, "Invalid email address")
    if problem := validate_password(body.password):
        raise http_error(400, ErrorCode.BAD_REQUEST, problem)
    if body.password != body.confirm_password:
        raise http_error(400, ErrorCode.BAD_REQUEST, "Passwords do not match")
    username = (body.username or "").strip() or None
    if username and not USERNAME_RE.match(username):
        raise http_error(
            400,
            ErrorCode.BAD_REQUEST,
            "Username may only use 3-20 letters, digits or underscores",
        )

    password_hash = await asyncio.to_thread(hash_password, body.password)

    def _db_call() -> User:
        with db_module.SessionLocal() as db:
            if db.execute(select(User.id).where(User.email == email)).first():
                raise http_error(409, ErrorCode.CONFLICT, "Email already registered")
            if username and db.execute(
                select(User.id).where(User.username == username)
            ).first():
                raise http_error(409, ErrorCode.CONFLICT, "Username already taken")
            return create_account(
                db,
                email=email,
                password_hash=password_hash,
                name=name,
                username=username,
            )

    user = await asyncio.to_thread(_db_call)
    logger.info("account %s registered", user.id)
    token = start_session(response, claim_for(user))
    return AuthResponse(
        token=token, user=AccountOut.model_validate(user, from_attributes=True)
    )


@router.post(
    "/auth/login",
    response_model=AuthResponse,
    responses={400: {"model": ErrorResponse}, 401: {"model": ErrorResponse}},
)
async def login(request: Request, response: Response):
    body = await parse_body(request, LoginRequest)
    identifier = body.identifier.strip()
    if not identifier or not body.password:
        raise http_error(
            400, ErrorCode.BAD_REQUEST, "Email/username and password are required"
        )

    def _db_call() -> User | None:
        with db_module.SessionLocal() as db:
            if "@" in identifier:
                stmt = select(User).where(User.email == identifier.lower())
            else:
                stmt = select(User).where(User.username == identifier)
            return db.execute(stmt).scalar_one_or_none()

    user = await asyncio.to_thread(_db_call)
    valid = user is not None and await asyncio.to_thread(
        verify_password, body.password, user.password_hash
    )
    if not valid:
        raise http_error(
            401, ErrorCode.UNAUTHORIZED, "Incorrect email/username or password"
        )
    token = start_session(response, claim_for(user))
    return AuthResponse(
        token=token, user=AccountOut.model_validate(user, from_attributes=True)
    )


@router.post("/auth/logout", status_code=204)
async def logout():
    response = Response(status_code=204)
    end_session(response)
    return response


@router.get(
    "/auth/me",
    response_model=EntitlementOut,
    responses={401: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def me(identity: IdentityClaim = Depends(current_identity)):
    def _db_call() -> EntitlementOut | None:
        with db_module.SessionLocal() as db:
            user = load_entitlement(db, identity.account_id)
            return entitlement_out(user) if user else None

    out = await asyncio.to_thread(_db_call)
    if out is None:
        raise http_error(404, ErrorCode.NOT_FOUND, "User not found")
    return out


@router.post(
    "/me/upgrade-notice/ack",
    status_code=204,
    responses={401: {"model": ErrorResponse}},
)
async def ack_upgrade_notice(identity: IdentityClaim = Depends(current_identity)):
    def _db_call() -> None:
        with db_module.SessionLocal() as db:
            acknowledge_upgrade_notice(db, identity.account_id)

    try:
        await asyncio.to_thread(_db_call)
    except AccountNotFound as exc:
        raise http_error(404, ErrorCode.NOT_FOUND, "User not found") from exc
    return Response(status_code=204)


@router.delete(
    "/me",
    status_code=204,
    responses={401: {"model": ErrorResponse}},
)
async def delete_account(identity: IdentityClaim = Depends(current_identity)):
    def _db_delete() -> None:
        with db_module.SessionLocal() as db:
            user = db.get(User, identity.account_id)
            if user is not None:
                db.delete(user)
                db.commit()

    await asyncio.to_thread(_db_delete)
    logger.info("account %s deleted", identity.account_id)
    response = Response(status_code=204)
    end_session(response)
    return response
