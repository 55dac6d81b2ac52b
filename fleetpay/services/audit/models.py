"""Audit log persistence model.

`resource_events` is append-only and has no foreign key to the resource tables:
events outlive a deleted draft.
"""

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import BigInteger, DateTime, Index, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from fleetpay.common.db import Base, JsonDocument


class ResourceEvent(Base):
    """Immutable record of one transition attempt and its actor."""

    __tablename__ = "resource_events"
    __table_args__ = (Index("ix_resource_events_resource_order", "resource_id", "occurred_at", "seq"),)

    # Insertion order tiebreaker for events sharing an `occurred_at`.
    seq: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    event_id: Mapped[str] = mapped_column(String, unique=True, default=lambda: str(uuid4()))
    resource_kind: Mapped[str] = mapped_column(String)
    resource_id: Mapped[str] = mapped_column(String, index=True)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    actor_role: Mapped[str] = mapped_column(String)
    event_type: Mapped[str] = mapped_column(String, index=True)
    payload: Mapped[dict] = mapped_column(JsonDocument, default=dict)
    occurred_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), server_default=func.now()
    )
