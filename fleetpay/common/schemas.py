"""Normalized resource snapshots and the acting principal.

Snapshots are the only shape the gating engine and the payment orchestrator
see; the storage layer builds them from ORM rows so nothing above it has to
guess at relation shapes.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict

from fleetpay.common.state_machine import ActorRole


@dataclass(frozen=True)
class Actor:
    """Who is asking. `actor_id` is None for system/webhook actors."""

    actor_id: str | None
    role: str

    @property
    def is_system(self) -> bool:
        return self.role == ActorRole.SYSTEM.value


SYSTEM_ACTOR = Actor(actor_id=None, role=ActorRole.SYSTEM.value)


class ResourceSnapshot(BaseModel):
    """Fields shared by every resource kind."""

    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: str
    status: str
    owner_id: str
    state_version: int
    amount_cents: int
    currency: str
    payment_intent_ref: str | None = None
    payment_state: str = "none"
    payment_op: str | None = None
    payment_op_started_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    # Returned by authorize for the customer to confirm with; not persisted.
    client_secret: str | None = None
    checkout_url: str | None = None


class DeliverySnapshot(ResourceSnapshot):
    kind: Literal["delivery"] = "delivery"
    assignee_id: str | None = None
    miles: float = 0.0
    weight_lbs: float = 0.0
    stops: int = 0
    rush: bool = False
    signature_required: bool = False
    # Filled from the photo store at evaluation time; not persisted.
    dropoff_photo_present: bool = False
    assigned_at: datetime | None = None
    in_transit_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None
    cancel_reason: str | None = None


class RentalSnapshot(ResourceSnapshot):
    kind: Literal["rental"] = "rental"
    purpose: str | None = None
    rate_cents: int = 0
    deposit_cents: int = 0
    verification_status: str = "pending"
    verification_denial_reason: str | None = None
    docs_complete: bool = False
    agreement_signed: bool = False
    signature_name: str | None = None
    paid: bool = False
    paid_at: datetime | None = None
    lockbox_code: str | None = None
    lockbox_released_at: datetime | None = None
    pickup_confirmed_at: datetime | None = None
    return_confirmed_at: datetime | None = None
    damage_confirmed: bool = False
    damage_notes: str | None = None
    deposit_refund_status: str = "none"
    deposit_withheld_cents: int = 0
    deposit_refunded_cents: int = 0
    deposit_refund_ref: str | None = None
    deposit_reason: str | None = None
    cancelled_at: datetime | None = None
    cancel_reason: str | None = None


Snapshot = DeliverySnapshot | RentalSnapshot
