import asyncio
import json
import logging
from typing import Literal

import stripe
from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel

from dreamdiary import db as db_module
from dreamdiary.dependencies import (
    ErrorResponse,
    current_identity,
    http_error,
    parse_body,
)
from dreamdiary.metrics import webhook_forbidden_total
from dreamdiary.models import ErrorCode, User
from dreamdiary.services.billing import (
    BillingNotConfigured,
    apply_billing_event,
    create_checkout_session,
    event_from_stripe,
    verify_webhook,
)
from dreamdiary.services.tokens import IdentityClaim

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing")


class CheckoutRequest(BaseModel):
    billing_period: Literal["monthly", "yearly"]


class CheckoutResponse(BaseModel):
    session_id: str
    url: str | None = None


@router.post(
    "/checkout",
    response_model=CheckoutResponse,
    responses={
        400: {"model": ErrorResponse},
        401: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    },
)
async def checkout(request: Request, identity: IdentityClaim = Depends(current_identity)):
    body = await parse_body(request, CheckoutRequest)

    def _db_call() -> str | None:
        with db_module.SessionLocal() as db:
            user = db.get(User, identity.account_id)
            return user.email if user else None

    email = await asyncio.to_thread(_db_call)
    if email is None:
        raise http_error(404, ErrorCode.NOT_FOUND, "User not found")

    origin = request.headers.get("origin") or str(request.base_url).rstrip("/")
    try:
        session_id, url = await asyncio.to_thread(
            lambda: create_checkout_session(
                account_id=identity.account_id,
                email=email,
                billing_period=body.billing_period,
                origin=origin,
            )
        )
    except BillingNotConfigured as exc:
        logger.error("checkout unavailable: %s", exc)
        raise http_error(503, ErrorCode.SERVICE_UNAVAILABLE, str(exc)) from exc
    except stripe.StripeError as exc:
        logger.exception("Stripe checkout failed")
        raise http_error(
            502, ErrorCode.SERVICE_UNAVAILABLE, "Payment provider error"
        ) from exc
    return CheckoutResponse(session_id=session_id, url=url)


@router.post(
    "/webhook",
    status_code=200,
    responses={400: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)
async def billing_webhook(
    request: Request,
    stripe_signature: str | None = Header(None, alias="Stripe-Signature"),
):
    raw_body = await request.body()
    try:
        event = verify_webhook(raw_body, stripe_signature)
    except BillingNotConfigured as exc:
        logger.error("webhook unavailable: %s", exc)
        raise http_error(503, ErrorCode.SERVICE_UNAVAILABLE, str(exc)) from exc
    except stripe.SignatureVerificationError as exc:
        webhook_forbidden_total.inc()
        logger.warning("audit: invalid webhook signature")
        raise http_error(
            400, ErrorCode.BAD_REQUEST, "Invalid webhook signature"
        ) from exc
    except (UnicodeDecodeError, json.JSONDecodeError, ValueError) as exc:
        webhook_forbidden_total.inc()
        logger.warning("audit: malformed webhook payload")
        raise http_error(
            400, ErrorCode.BAD_REQUEST, "Malformed webhook payload"
        ) from exc

    logger.info("stripe event %s (%s)", event.get("id"), event.get("type"))
    billing_event = event_from_stripe(event)
    if billing_event is not None:

        def _db_call() -> None:
            with db_module.SessionLocal() as db:
                apply_billing_event(db, billing_event)

        await asyncio.to_thread(_db_call)
    return {"received": True}
