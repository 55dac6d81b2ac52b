"""Resource tables owned by the transition authority.

`state_version` guards every write (compare-and-set) and `payment_op` is the
in-flight provider call claim that serializes authorize/capture/void per row.
"""

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Boolean, DateTime, Float, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from fleetpay.common.db import Base


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ResourceColumns:
    """Columns shared by every resource kind."""

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    status: Mapped[str] = mapped_column(String, index=True, default="draft")
    owner_id: Mapped[str] = mapped_column(String, index=True)
    state_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    amount_cents: Mapped[int] = mapped_column(Integer)
    currency: Mapped[str] = mapped_column(String(3), default="usd")
    payment_intent_ref: Mapped[str | None] = mapped_column(String, nullable=True, unique=True)
    payment_state: Mapped[str] = mapped_column(String, default="none")
    payment_op: Mapped[str | None] = mapped_column(String, nullable=True)
    payment_op_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now, server_default=func.now())


class Delivery(ResourceColumns, Base):
    """One delivery order from draft to completion."""

    __tablename__ = "deliveries"

    assignee_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    miles: Mapped[float] = mapped_column(Float)
    weight_lbs: Mapped[float] = mapped_column(Float)
    stops: Mapped[int] = mapped_column(Integer, default=0)
    rush: Mapped[bool] = mapped_column(Boolean, default=False)
    signature_required: Mapped[bool] = mapped_column(Boolean, default=False)
    assigned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    in_transit_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancel_reason: Mapped[str | None] = mapped_column(String, nullable=True)


class Rental(ResourceColumns, Base):
    """One vehicle rental from application through deposit resolution."""

    __tablename__ = "rentals"

    purpose: Mapped[str | None] = mapped_column(String, nullable=True)
    rate_cents: Mapped[int] = mapped_column(Integer)
    deposit_cents: Mapped[int] = mapped_column(Integer, default=0)
    verification_status: Mapped[str] = mapped_column(String, default="pending")
    verification_denial_reason: Mapped[str | None] = mapped_column(String, nullable=True)
    docs_complete: Mapped[bool] = mapped_column(Boolean, default=False)
    agreement_signed: Mapped[bool] = mapped_column(Boolean, default=False)
    signature_name: Mapped[str | None] = mapped_column(String, nullable=True)
    paid: Mapped[bool] = mapped_column(Boolean, default=False)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    lockbox_code: Mapped[str | None] = mapped_column(String, nullable=True)
    lockbox_released_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    pickup_confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    return_confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    damage_confirmed: Mapped[bool] = mapped_column(Boolean, default=False)
    damage_notes: Mapped[str | None] = mapped_column(String, nullable=True)
    deposit_refund_status: Mapped[str] = mapped_column(String, default="none")
    deposit_withheld_cents: Mapped[int] = mapped_column(Integer, default=0)
    deposit_refunded_cents: Mapped[int] = mapped_column(Integer, default=0)
    deposit_refund_ref: Mapped[str | None] = mapped_column(String, nullable=True)
    deposit_reason: Mapped[str | None] = mapped_column(String, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancel_reason: Mapped[str | None] = mapped_column(String, nullable=True)
