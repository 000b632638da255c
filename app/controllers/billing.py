from __future__ import annotations

import asyncio
import logging

import stripe
from fastapi import APIRouter, BackgroundTasks, Depends, Header, Request
from pydantic import BaseModel

from app.dependencies import (
    ApiError,
    ErrorResponse,
    json_body,
    optional_identity,
    require_identity,
)
from app.metrics import webhook_rejected_total
from app.services import billing
from app.services.auth import Identity
from app.services.entitlements import customer_for_user_sync

logger = logging.getLogger(__name__)

router = APIRouter()


class UrlResponse(BaseModel):
    url: str


class VerifySessionResponse(BaseModel):
    ok: bool = True
    customer: str
    subscription: str


class WebhookAck(BaseModel):
    received: bool = True


def _text(body: dict, key: str) -> str | None:
    value = body.get(key)
    if not isinstance(value, str):
        return None
    return value.strip() or None


@router.post(
    "/checkout",
    response_model=UrlResponse,
    responses={401: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
async def checkout(identity: Identity = Depends(require_identity)):
    url = await asyncio.to_thread(
        billing.create_checkout_session, identity.user_id, identity.email
    )
    logger.info("checkout session created", extra={"user_id": identity.user_id})
    return UrlResponse(url=url)


@router.post(
    "/portal",
    response_model=UrlResponse,
    responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
async def portal(
    body: dict = Depends(json_body),
    identity: Identity | None = Depends(optional_identity),
):
    customer_id = _text(body, "customer")
    session_id = _text(body, "session_id")
    if customer_id is None and session_id is not None:
        customer_id = await asyncio.to_thread(
            billing.customer_from_checkout_session, session_id
        )
    if customer_id is None and identity is not None:
        customer_id = await asyncio.to_thread(customer_for_user_sync, identity.user_id)
    if customer_id is None:
        raise ApiError(400, "Missing session_id or customer.")
    url = await asyncio.to_thread(billing.create_portal_session, customer_id)
    return UrlResponse(url=url)


@router.post(
    "/verify-session",
    response_model=VerifySessionResponse,
    responses={
        400: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
        500: {"model": ErrorResponse},
    },
)
async def verify_session(body: dict = Depends(json_body)):
    session_id = _text(body, "session_id")
    if session_id is None:
        raise ApiError(400, "Missing session_id")
    customer_id, subscription_id = await asyncio.to_thread(
        billing.verify_checkout_session, session_id
    )
    return VerifySessionResponse(customer=customer_id, subscription=subscription_id)


@router.post(
    "/stripe/webhook",
    response_model=WebhookAck,
    responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
async def stripe_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    stripe_signature: str | None = Header(None, alias="Stripe-Signature"),
):
    billing.webhook_secret()
    payload = await request.body()
    if not stripe_signature:
        webhook_rejected_total.inc()
        logger.warning("webhook without signature")
        raise ApiError(400, "Missing stripe-signature")
    try:
        event = billing.construct_event(payload, stripe_signature)
    except stripe.SignatureVerificationError as exc:
        webhook_rejected_total.inc()
        logger.warning("webhook signature rejected: %s", exc)
        raise ApiError(400, str(exc) or "Invalid signature") from exc
    except ValueError as exc:
        webhook_rejected_total.inc()
        logger.warning("webhook payload rejected: %s", exc)
        raise ApiError(400, "Invalid body") from exc

    logger.info("webhook received", extra={"event_type": event.get("type")})
    background_tasks.add_task(billing.process_webhook_event, event)
    return WebhookAck()
