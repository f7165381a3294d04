from __future__ import annotations

import hashlib
import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.dependencies import get_db_session, get_identity_directory, get_stripe_client
from app.domain.bookings import payments
from app.domain.bookings.db_models import PaymentEvent
from app.infra.identity_directory import IdentityDirectory
from app.infra.metrics import metrics
from app.infra.stripe_client import StripeClient
from app.settings import settings

router = APIRouter()
logger = logging.getLogger(__name__)

_NOT_PROCESSED = {"ignored", "duplicate"}


async def _dispatch(
    session: AsyncSession, event: Any, identity_directory: IdentityDirectory
) -> payments.PaymentOutcome:
    parsed = await payments.payment_event_from_stripe(event, identity_directory)
    if parsed is None:
        logger.info(
            "stripe_webhook_ignored",
            extra={"extra": {"event_type": payments.safe_get(event, "type")}},
        )
        metrics.record_payment_event("ignored")
        return payments.PaymentOutcome(outcome="ignored")
    if isinstance(parsed, payments.PaymentFailed):
        return await payments.handle_payment_failed(session, parsed)
    return await payments.handle_payment_succeeded(session, parsed)


@router.post("/v1/payments/stripe/webhook", status_code=status.HTTP_200_OK)
async def stripe_webhook(
    http_request: Request,
    session: AsyncSession = Depends(get_db_session),
    stripe_client: StripeClient = Depends(get_stripe_client),
    identity_directory: IdentityDirectory = Depends(get_identity_directory),
) -> dict[str, Any]:
    app_settings = getattr(http_request.app.state, "app_settings", None) or settings
    if not app_settings.stripe_webhook_secret:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Stripe webhook disabled")

    payload = await http_request.body()
    try:
        event = await stripe_client.verify_webhook(payload, http_request.headers.get("Stripe-Signature"))
    except Exception as exc:  # noqa: BLE001
        metrics.record_payment_event("invalid_signature")
        logger.warning("stripe_webhook_invalid", extra={"extra": {"reason": type(exc).__name__}})
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid Stripe webhook") from exc

    event_id = payments.safe_get(event, "id")
    if not event_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing event id")
    event_type = payments.safe_get(event, "type") or "unknown"
    payload_hash = hashlib.sha256(payload or b"").hexdigest()

    existing = await session.get(PaymentEvent, str(event_id))
    if existing is not None:
        if existing.payload_hash != payload_hash:
            logger.warning("stripe_webhook_replayed_mismatch", extra={"extra": {"event_id": event_id}})
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Event payload mismatch")
        logger.info(
            "stripe_webhook_duplicate",
            extra={"extra": {"event_id": event_id, "outcome": existing.outcome}},
        )
        metrics.record_payment_event("duplicate")
        return {"received": True, "processed": False, "outcome": existing.outcome}

    try:
        outcome = await _dispatch(session, event, identity_directory)
    except Exception as exc:  # noqa: BLE001
        await session.rollback()
        logger.exception(
            "stripe_webhook_error",
            extra={"extra": {"event_id": event_id, "reason": type(exc).__name__}},
        )
        metrics.record_payment_event("error")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Stripe webhook processing error",
        ) from exc

    data = payments.safe_get(event, "data", {}) or {}
    intent = payments.safe_get(data, "object", {}) or {}
    session.add(
        PaymentEvent(
            event_id=str(event_id),
            event_type=str(event_type),
            payment_intent_id=payments.safe_get(intent, "id"),
            outcome=outcome.outcome,
            booking_id=outcome.booking_id,
            payload_hash=payload_hash,
        )
    )
    try:
        await session.commit()
    except IntegrityError:
        # A concurrent delivery of the same event recorded it first.
        await session.rollback()
        return {"received": True, "processed": False, "outcome": "duplicate"}

    logger.info(
        "stripe_webhook_processed",
        extra={"extra": {"event_id": event_id, "event_type": event_type, "outcome": outcome.outcome}},
    )
    return {
        "received": True,
        "processed": outcome.outcome not in _NOT_PROCESSED,
        "outcome": outcome.outcome,
    }
