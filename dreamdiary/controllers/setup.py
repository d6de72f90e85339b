"""One-time superadmin bootstrap guarded by a shared secret header.

Usage::

    curl -X POST https://host/v1/setup-admin \\
      -H "Content-Type: application/json" \\
      -H "X-Admin-Setup-Secret: $ADMIN_SETUP_SECRET" \\
      -d '{"email": "admin@example.com", "password": "securepassword"}'
"""
import asyncio
import logging

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from dreamdiary import db as db_module
from dreamdiary.controllers.auth import AccountOut
from dreamdiary.dependencies import (
    ErrorResponse,
    http_error,
    parse_body,
    verify_setup_secret,
)
from dreamdiary.models import ErrorCode, User
from dreamdiary.services.entitlements import (
    SuperadminExists,
    bootstrap_superadmin,
    superadmin_exists,
)
from dreamdiary.services.passwords import hash_password, validate_password

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/setup-admin")

SETUP_RESPONSES = {
    401: {"model": ErrorResponse},
    503: {"model": ErrorResponse},
}


class SetupAdminRequest(BaseModel):
    email: str
    password: str
    name: str | None = None


class SetupAdminResponse(BaseModel):
    success: bool = True
    message: str
    user: AccountOut


class SetupStatusResponse(BaseModel):
    superadmin_exists: bool


@router.post(
    "",
    response_model=SetupAdminResponse,
    responses={**SETUP_RESPONSES, 400: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
    dependencies=[Depends(verify_setup_secret)],
)
async def setup_admin(request: Request):
    body = await parse_body(request, SetupAdminRequest)
    email = body.email.strip().lower()
    if not email or not body.password:
        raise http_error(400, ErrorCode.BAD_REQUEST, "Email and password are required")
    if problem := validate_password(body.password):
        raise http_error(400, ErrorCode.BAD_REQUEST, problem)
    password_hash = await asyncio.to_thread(hash_password, body.password)

    def _db_call() -> tuple[User, bool]:
        with db_module.SessionLocal() as db:
            return bootstrap_superadmin(
                db, email=email, password_hash=password_hash, name=body.name
            )

    try:
        user, created = await asyncio.to_thread(_db_call)
    except SuperadminExists as exc:
        raise http_error(409, ErrorCode.CONFLICT, "Superadmin already exists") from exc
    message = (
        "Superadmin account created successfully"
        if created
        else "Existing user promoted to superadmin"
    )
    logger.warning("audit: superadmin bootstrap for account %s", user.id)
    return SetupAdminResponse(
        message=message, user=AccountOut.model_validate(user, from_attributes=True)
    )


@router.get(
    "",
    response_model=SetupStatusResponse,
    responses=SETUP_RESPONSES,
    dependencies=[Depends(verify_setup_secret)],
)
async def setup_status():
    def _db_call() -> bool:
        with db_module.SessionLocal() as db:
            return superadmin_exists(db)

    return SetupStatusResponse(superadmin_exists=await asyncio.to_thread(_db_call))
