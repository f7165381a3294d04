from dataclasses import dataclass
from typing import Any, List

PROBLEM_BASE = "https://instacares.example/problems"


@dataclass
class DomainError(Exception):
    detail: str
    title: str = "Domain Error"
    type: str = f"{PROBLEM_BASE}/domain-error"
    errors: List[dict] | None = None
    status: int = 400

    def __str__(self) -> str:
        return self.detail


@dataclass
class InvalidRange(DomainError):
    title: str = "Invalid Range"
    type: str = f"{PROBLEM_BASE}/invalid-range"
    status: int = 422


@dataclass
class InvalidRequest(DomainError):
    title: str = "Invalid Request"
    type: str = f"{PROBLEM_BASE}/invalid-request"
    status: int = 422


@dataclass
class InvalidCapacity(DomainError):
    title: str = "Invalid Capacity"
    type: str = f"{PROBLEM_BASE}/invalid-capacity"
    status: int = 409


@dataclass
class NotOwner(DomainError):
    title: str = "Not Owner"
    type: str = f"{PROBLEM_BASE}/not-owner"
    status: int = 403


@dataclass
class Forbidden(DomainError):
    title: str = "Forbidden"
    type: str = f"{PROBLEM_BASE}/forbidden"
    status: int = 403


@dataclass
class NotFound(DomainError):
    title: str = "Not Found"
    type: str = f"{PROBLEM_BASE}/not-found"
    status: int = 404


@dataclass
class InsufficientCapacity(DomainError):
    title: str = "Insufficient Capacity"
    type: str = f"{PROBLEM_BASE}/insufficient-capacity"
    status: int = 409
    requested: int = 0
    available: int = 0


@dataclass
class HasDependents(DomainError):
    title: str = "Has Dependents"
    type: str = f"{PROBLEM_BASE}/has-dependents"
    status: int = 409


@dataclass
class DuplicateSlot(DomainError):
    title: str = "Duplicate Slot"
    type: str = f"{PROBLEM_BASE}/duplicate-slot"
    status: int = 409


@dataclass
class InvalidTransition(DomainError):
    title: str = "Invalid Transition"
    type: str = f"{PROBLEM_BASE}/invalid-transition"
    status: int = 409


@dataclass
class ReservationNotActive(DomainError):
    title: str = "Reservation Not Active"
    type: str = f"{PROBLEM_BASE}/reservation-not-active"
    status: int = 409


class DriftDetected(Exception):
    """Cached slot counters disagree with the slot's booking rows.

    Raised only by verification helpers for operators and jobs; request
    handlers never surface it.
    """

    def __init__(self, drift: Any) -> None:
        super().__init__("slot_drift_detected")
        self.drift = drift
