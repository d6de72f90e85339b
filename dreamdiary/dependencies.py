from __future__ import annotations

import asyncio
import hmac
import json
import logging
from typing import TypeVar

from fastapi import Depends, Header, HTTPException, Request
from pydantic import BaseModel, ValidationError

from dreamdiary import db as db_module
from dreamdiary.config import Settings
from dreamdiary.models import ErrorCode, Role, User
from dreamdiary.services.sessions import resolve
from dreamdiary.services.tokens import IdentityClaim

settings = Settings()
logger = logging.getLogger(__name__)


class ErrorResponse(BaseModel):
    code: str
    message: str


def http_error(status_code: int, code: ErrorCode, message: str) -> HTTPException:
    err = ErrorResponse(code=code.value, message=message)
    return HTTPException(status_code=status_code, detail=err.model_dump())


ModelT = TypeVar("ModelT", bound=BaseModel)


async def parse_body(request: Request, model: type[ModelT]) -> ModelT:
    """Decode the JSON body into ``model``; malformed input is a 400."""
    try:
        payload = await request.json()
    except json.JSONDecodeError as exc:
        raise http_error(400, ErrorCode.BAD_REQUEST, "Invalid JSON payload") from exc
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise http_error(400, ErrorCode.BAD_REQUEST, "Invalid request data") from exc


async def optional_identity(request: Request) -> IdentityClaim | None:
    return resolve(request)


async def current_identity(
    identity: IdentityClaim | None = Depends(optional_identity),
) -> IdentityClaim:
    """Require a verified credential from the bearer header or the cookie."""
    if identity is None:
        raise http_error(401, ErrorCode.UNAUTHORIZED, "Not authenticated")
    return identity


async def require_superadmin(
    identity: IdentityClaim = Depends(current_identity),
) -> IdentityClaim:
    """Check the stored role, so a demoted admin's old token stops working."""

    def _db_call() -> str | None:
        with db_module.SessionLocal() as db:
            user = db.get(User, identity.account_id)
            return user.role if user else None

    role = await asyncio.to_thread(_db_call)
    if role != Role.SUPERADMIN.value:
        logger.warning(
            "audit: account %s denied superadmin access", identity.account_id
        )
        raise http_error(403, ErrorCode.FORBIDDEN, "Superadmin access required")
    return identity


async def verify_setup_secret(
    x_admin_setup_secret: str | None = Header(None, alias="X-Admin-Setup-Secret"),
) -> None:
    expected = settings.admin_setup_secret
    if not expected:
        raise http_error(
            503, ErrorCode.SERVICE_UNAVAILABLE, "Admin setup is not configured"
        )
    if not hmac.compare_digest(
        (x_admin_setup_secret or "").encode(), expected.encode()
    ):
        logger.warning("audit: invalid admin setup secret")
        raise http_error(
            401, ErrorCode.UNAUTHORIZED, "Invalid or missing admin setup secret"
        )
