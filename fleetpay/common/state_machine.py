"""Resource and payment state machines enforced by the transition authority."""

from enum import Enum

from fleetpay.common.errors import PaymentInvariantViolation


class ResourceKind(str, Enum):
    DELIVERY = "delivery"
    RENTAL = "rental"


class ActorRole(str, Enum):
    CUSTOMER = "customer"
    DRIVER = "driver"
    ADMIN = "admin"
    SYSTEM = "system"


class PaymentState(str, Enum):
    NONE = "none"
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    VOIDED = "voided"


class DeliveryStatus(str, Enum):
    DRAFT = "draft"
    AUTHORIZED = "authorized"
    AWAITING_PICKUP_PHOTO = "awaiting_pickup_photo"
    READY_FOR_DISPATCH = "ready_for_dispatch"
    ASSIGNED = "assigned"
    IN_TRANSIT = "in_transit"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class RentalStatus(str, Enum):
    DRAFT = "draft"
    SUBMITTED = "submitted"
    APPROVED = "approved"
    DENIED = "denied"
    AWAITING_PAYMENT = "awaiting_payment"
    ACTIVE = "active"
    PICKUP_CONFIRMED = "pickup_confirmed"
    COMPLETED = "completed"
    DEPOSIT_RESOLVED = "deposit_resolved"
    CANCELLED = "cancelled"


class VerificationStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"


class DepositStatus(str, Enum):
    NONE = "none"
    PENDING = "pending"
    REFUNDED = "refunded"
    WITHHELD = "withheld"


DELIVERY_TRANSITIONS: dict[str, set[str]] = {
    "draft": {"authorized", "cancelled"},
    "authorized": {"awaiting_pickup_photo", "ready_for_dispatch", "cancelled"},
    "awaiting_pickup_photo": {"ready_for_dispatch", "cancelled"},
    "ready_for_dispatch": {"assigned", "cancelled"},
    "assigned": {"ready_for_dispatch", "in_transit", "cancelled"},
    "in_transit": {"completed", "cancelled"},
    "completed": set(),
    "cancelled": set(),
}

RENTAL_TRANSITIONS: dict[str, set[str]] = {
    "draft": {"submitted", "cancelled"},
    "submitted": {"approved", "denied", "cancelled"},
    "approved": {"awaiting_payment", "cancelled"},
    "denied": {"cancelled"},
    "awaiting_payment": {"active", "cancelled"},
    "active": {"pickup_confirmed", "cancelled"},
    "pickup_confirmed": {"completed"},
    "completed": {"deposit_resolved"},
    "deposit_resolved": set(),
    "cancelled": set(),
}

# Forward-only: none -> authorized -> captured, or authorized -> voided. A
# checkout the provider settles in one step goes none -> captured.
PAYMENT_TRANSITIONS: dict[str, set[str]] = {
    "none": {"authorized", "captured"},
    "authorized": {"captured", "voided"},
    "captured": set(),
    "voided": set(),
}

TERMINAL_DELIVERY_STATUSES = {"completed", "cancelled"}

ALLOWED_TRANSITIONS: dict[str, dict[str, set[str]]] = {
    ResourceKind.DELIVERY.value: DELIVERY_TRANSITIONS,
    ResourceKind.RENTAL.value: RENTAL_TRANSITIONS,
}


class InvalidTransition(ValueError):
    """Raised when a status write would leave the resource state machine."""


def validate_transition(kind: str, current: str, new: str) -> None:
    """Raise when a status transition is not allowed for the resource kind."""

    if current == new:
        return
    if new not in ALLOWED_TRANSITIONS[kind].get(current, set()):
        raise InvalidTransition(f"Invalid {kind} transition: {current} -> {new}")


def validate_payment_transition(current: str, new: str) -> None:
    """Raise when a payment_state write would move backward."""

    if current == new:
        return
    if new not in PAYMENT_TRANSITIONS.get(current, set()):
        raise PaymentInvariantViolation(f"Invalid payment transition: {current} -> {new}")
