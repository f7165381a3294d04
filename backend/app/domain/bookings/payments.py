"""Payment gateway events that create or cancel bookings.

A ``payment_intent.succeeded`` event either materializes a slot booking (when
the checkout carried a slot id) or records a CONFIRMED direct booking priced
from the charged amount. Both are idempotent on the payment intent id.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.availability import pricing
from app.domain.bookings import service as booking_service
from app.domain.bookings.statuses import BookingStatus
from app.domain.errors import DomainError, InsufficientCapacity
from app.infra.identity_directory import IdentityDirectory
from app.infra.metrics import metrics
from app.settings import settings

logger = logging.getLogger(__name__)

SUCCEEDED_EVENT_TYPES = {"payment_intent.succeeded"}
FAILED_EVENT_TYPES = {"payment_intent.payment_failed", "payment_intent.canceled"}


@dataclass(frozen=True)
class PaymentSucceeded:
    payment_intent_id: str
    parent_id: str
    children_count: int
    amount_cents: int
    platform_fee_cents: int | None = None
    caregiver_id: str | None = None
    starts_at: datetime | None = None
    ends_at: datetime | None = None
    address: str | None = None
    special_requests: str | None = None
    slot_id: str | None = None
    reservation_id: str | None = None


@dataclass(frozen=True)
class PaymentFailed:
    payment_intent_id: str


@dataclass(frozen=True)
class PaymentOutcome:
    outcome: str
    booking_id: str | None = None
    detail: str | None = None


def safe_get(source: object, key: str, default: Any | None = None) -> Any:
    if isinstance(source, dict):
        return source.get(key, default)
    return getattr(source, key, default)


def _parse_datetime(raw: Any) -> datetime | None:
    if not raw:
        return None
    if isinstance(raw, datetime):
        return raw
    try:
        return datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    except ValueError:
        return None


def _parse_int(raw: Any) -> int | None:
    if raw is None or raw == "":
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


async def payment_event_from_stripe(
    event: Any, identity_directory: IdentityDirectory
) -> PaymentSucceeded | PaymentFailed | None:
    """Translate a verified Stripe event into a payment event, or None if it is not actionable.

    Checkout metadata identifies the payer by ``parent_id`` or, failing that,
    ``parent_email``, which is resolved through the Identity Service.
    """
    event_type = safe_get(event, "type")
    data = safe_get(event, "data", {}) or {}
    intent = safe_get(data, "object", {}) or {}
    payment_intent_id = safe_get(intent, "id")
    if not payment_intent_id:
        return None
    if event_type in FAILED_EVENT_TYPES:
        return PaymentFailed(payment_intent_id=str(payment_intent_id))
    if event_type not in SUCCEEDED_EVENT_TYPES:
        return None

    metadata = safe_get(intent, "metadata", {}) or {}
    if not isinstance(metadata, dict):
        metadata = dict(metadata)
    parent_id = metadata.get("parent_id")
    if not parent_id and metadata.get("parent_email"):
        parent_id = await identity_directory.resolve_parent_id(metadata["parent_email"])
    children_count = _parse_int(metadata.get("children_count"))
    amount = _parse_int(safe_get(intent, "amount_received")) or _parse_int(safe_get(intent, "amount"))
    if not parent_id or not children_count or amount is None:
        logger.info(
            "payment_event_incomplete",
            extra={"extra": {"payment_intent_id": payment_intent_id, "event_type": event_type}},
        )
        return None

    platform_fee = _parse_int(metadata.get("platform_fee_amount"))
    if platform_fee is None:
        platform_fee = _parse_int(safe_get(intent, "application_fee_amount"))
    return PaymentSucceeded(
        payment_intent_id=str(payment_intent_id),
        parent_id=str(parent_id),
        children_count=children_count,
        amount_cents=amount,
        platform_fee_cents=platform_fee,
        caregiver_id=metadata.get("caregiver_id"),
        starts_at=_parse_datetime(metadata.get("starts_at")),
        ends_at=_parse_datetime(metadata.get("ends_at")),
        address=metadata.get("address"),
        special_requests=metadata.get("special_requests"),
        slot_id=metadata.get("slot_id"),
        reservation_id=metadata.get("reservation_id"),
    )


async def handle_payment_succeeded(
    session: AsyncSession, event: PaymentSucceeded, *, now: datetime | None = None
) -> PaymentOutcome:
    existing = await booking_service.get_booking_by_payment_intent(session, event.payment_intent_id)
    if existing is not None:
        logger.info(
            "payment_event_duplicate",
            extra={"extra": {"payment_intent_id": event.payment_intent_id, "booking_id": existing.booking_id}},
        )
        metrics.record_payment_event("duplicate")
        return PaymentOutcome(outcome="duplicate", booking_id=existing.booking_id)

    if event.slot_id:
        try:
            booking = await booking_service.create_slot_booking(
                session,
                event.slot_id,
                event.parent_id,
                event.children_count,
                event.address,
                reservation_id=event.reservation_id,
                special_requests=event.special_requests,
                payment_intent_id=event.payment_intent_id,
                now=now,
            )
        except InsufficientCapacity as exc:
            # The charge already happened; refunds are handled out of band.
            logger.warning(
                "payment_capacity_conflict",
                extra={
                    "extra": {
                        "payment_intent_id": event.payment_intent_id,
                        "slot_id": event.slot_id,
                        "requested": exc.requested,
                        "available": exc.available,
                    }
                },
            )
            metrics.record_payment_event("capacity_conflict")
            return PaymentOutcome(outcome="capacity_conflict", detail=exc.detail)
        except DomainError as exc:
            logger.warning(
                "payment_slot_booking_failed",
                extra={
                    "extra": {
                        "payment_intent_id": event.payment_intent_id,
                        "slot_id": event.slot_id,
                        "reservation_id": event.reservation_id,
                        "reason": type(exc).__name__,
                    }
                },
            )
            metrics.record_payment_event("slot_booking_failed")
            return PaymentOutcome(outcome="slot_booking_failed", detail=exc.detail)
        metrics.record_payment_event("slot_booking_created")
        return PaymentOutcome(outcome="slot_booking_created", booking_id=booking.booking_id)

    if not (event.caregiver_id and event.starts_at and event.ends_at):
        logger.info(
            "payment_event_incomplete",
            extra={"extra": {"payment_intent_id": event.payment_intent_id, "reason": "missing_window"}},
        )
        metrics.record_payment_event("ignored")
        return PaymentOutcome(outcome="ignored", detail="missing caregiver or booking window")

    quote = pricing.quote_from_charge(
        event.starts_at,
        event.ends_at,
        event.amount_cents,
        platform_fee_cents=event.platform_fee_cents,
    )
    booking = await booking_service.create_direct_booking(
        session,
        event.parent_id,
        event.caregiver_id,
        event.starts_at,
        event.ends_at,
        event.children_count,
        quote=quote,
        status=BookingStatus.CONFIRMED.value,
        address=event.address,
        special_requests=event.special_requests,
        payment_intent_id=event.payment_intent_id,
        reservation_id=event.reservation_id,
        now=now,
    )
    booking_id = booking.booking_id
    if settings.direct_booking_auto_link:
        try:
            await booking_service.reconcile_orphaned_booking(session, booking_id, now=now)
        except DomainError as exc:
            logger.warning(
                "direct_booking_auto_link_failed",
                extra={"extra": {"booking_id": booking_id, "reason": type(exc).__name__}},
            )
    metrics.record_payment_event("direct_booking_created")
    return PaymentOutcome(outcome="direct_booking_created", booking_id=booking_id)


async def handle_payment_failed(
    session: AsyncSession, event: PaymentFailed, *, now: datetime | None = None
) -> PaymentOutcome:
    """Cancel the PENDING booking paid by this intent.

    The cancel goes through the booking lifecycle so any slot an orphan repair
    already linked the booking to gets its spots back.
    """
    booking = await booking_service.get_booking_by_payment_intent(session, event.payment_intent_id)
    if booking is None or booking.status != BookingStatus.PENDING.value:
        metrics.record_payment_event("ignored")
        return PaymentOutcome(outcome="ignored", booking_id=booking.booking_id if booking else None)

    booking_id = booking.booking_id
    await booking_service.update_booking_status(
        session,
        booking_id,
        BookingStatus.CANCELLED.value,
        actor_id="payment_gateway",
        actor_role=booking_service.ROLE_ADMIN,
        reason="payment_failed",
        now=now,
    )
    logger.info(
        "booking_payment_failed",
        extra={"extra": {"booking_id": booking_id, "payment_intent_id": event.payment_intent_id}},
    )
    metrics.record_payment_event("booking_cancelled")
    return PaymentOutcome(outcome="booking_cancelled", booking_id=booking_id)
