"""Resource persistence behind the transition authority.

Every write is a conditional update guarded by `(id, status, state_version)`;
a row that moved underneath the caller raises `Conflict` instead of being
overwritten. Reads return normalized snapshots, never ORM rows.
"""

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError

from fleetpay.common.errors import Conflict, NotFound
from fleetpay.common.schemas import DeliverySnapshot, RentalSnapshot, Snapshot
from fleetpay.common.state_machine import ResourceKind, validate_payment_transition, validate_transition
from fleetpay.services.lifecycle.models import Delivery, Rental
from fleetpay.services.payments.models import InboxEvent

MODELS = {ResourceKind.DELIVERY.value: Delivery, ResourceKind.RENTAL.value: Rental}
SNAPSHOTS = {ResourceKind.DELIVERY.value: DeliverySnapshot, ResourceKind.RENTAL.value: RentalSnapshot}


def _aware(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo on the way back.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def to_snapshot(kind: str, row) -> Snapshot:
    snapshot = SNAPSHOTS[kind].model_validate(row)
    fixes = {
        name: _aware(getattr(snapshot, name))
        for name in type(snapshot).model_fields
        if isinstance(getattr(snapshot, name), datetime)
    }
    return snapshot.model_copy(update=fixes) if fixes else snapshot


class ResourceStore:
    def __init__(self, session_factory, service_name: str = "lifecycle") -> None:
        self.session_factory = session_factory
        self.service_name = service_name

    def insert(self, kind: str, values: dict[str, Any]) -> Snapshot:
        with self.session_factory() as db:
            row = MODELS[kind](**values)
            db.add(row)
            db.commit()
            return to_snapshot(kind, row)

    def load(self, kind: str, resource_id: str) -> Snapshot:
        with self.session_factory() as db:
            row = db.get(MODELS[kind], resource_id)
            if row is None:
                raise NotFound(f"{kind} {resource_id} not found")
            return to_snapshot(kind, row)

    def find_by_payment_ref(self, ref: str) -> Snapshot | None:
        with self.session_factory() as db:
            for kind, model in MODELS.items():
                row = db.execute(select(model).where(model.payment_intent_ref == ref)).scalar_one_or_none()
                if row is not None:
                    return to_snapshot(kind, row)
        return None

    def compare_and_set(self, snapshot: Snapshot, changes: dict[str, Any]) -> Snapshot:
        """Write `changes` only if the row is still at `snapshot`'s status and version."""

        if "status" in changes:
            validate_transition(snapshot.kind, snapshot.status, changes["status"])
        if "payment_state" in changes:
            validate_payment_transition(snapshot.payment_state, changes["payment_state"])

        model = MODELS[snapshot.kind]
        values = {
            **changes,
            "state_version": snapshot.state_version + 1,
            "updated_at": datetime.now(timezone.utc),
        }
        with self.session_factory() as db:
            result = db.execute(
                update(model)
                .where(
                    model.id == snapshot.id,
                    model.status == snapshot.status,
                    model.state_version == snapshot.state_version,
                )
                .values(**values)
            )
            if result.rowcount != 1:
                db.rollback()
                raise Conflict(
                    f"{snapshot.kind} {snapshot.id} changed concurrently "
                    f"(expected version {snapshot.state_version})"
                )
            db.commit()
        return snapshot.model_copy(update=values)

    def delete_draft(self, snapshot: Snapshot) -> None:
        model = MODELS[snapshot.kind]
        with self.session_factory() as db:
            result = db.execute(
                delete(model).where(
                    model.id == snapshot.id,
                    model.status == "draft",
                    model.state_version == snapshot.state_version,
                )
            )
            if result.rowcount != 1:
                db.rollback()
                raise Conflict(f"{snapshot.kind} {snapshot.id} changed concurrently")
            db.commit()

    def inbox_seen(self, event_id: str) -> bool:
        with self.session_factory() as db:
            existing = db.get(InboxEvent, {"event_id": event_id, "consumed_by_service": self.service_name})
            return existing is not None

    def mark_inbox(self, event_id: str) -> bool:
        """Remember a consumed webhook. Returns False if another worker got there first."""

        with self.session_factory() as db:
            db.add(InboxEvent(event_id=event_id, consumed_by_service=self.service_name))
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                return False
        return True
