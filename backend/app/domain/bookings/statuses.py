from enum import Enum

from app.domain.errors import InvalidTransition


class BookingStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class BookingSource(str, Enum):
    SLOT = "SLOT"
    DIRECT = "DIRECT"


BOOKING_TRANSITIONS: dict[str, set[str]] = {
    BookingStatus.PENDING.value: {BookingStatus.CONFIRMED.value, BookingStatus.CANCELLED.value},
    BookingStatus.CONFIRMED.value: {BookingStatus.IN_PROGRESS.value, BookingStatus.CANCELLED.value},
    BookingStatus.IN_PROGRESS.value: {BookingStatus.COMPLETED.value},
    BookingStatus.COMPLETED.value: set(),
    BookingStatus.CANCELLED.value: set(),
}

# Bookings in these states still occupy their caregiver's time.
OPEN_BOOKING_STATUSES = {
    BookingStatus.PENDING.value,
    BookingStatus.CONFIRMED.value,
    BookingStatus.IN_PROGRESS.value,
}


def assert_valid_booking_transition(current: str, target: str) -> None:
    if target == current:
        return
    allowed = BOOKING_TRANSITIONS.get(current, set())
    if target not in allowed:
        raise InvalidTransition(detail=f"Cannot move booking from {current} to {target}")
