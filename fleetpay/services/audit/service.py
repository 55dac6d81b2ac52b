"""Append-only audit log.

Recording is best-effort relative to the transition that triggered it: the
resource write has already committed when `record()` runs, and a failure here
is retried locally, logged and counted, but never raised to the caller.
"""

import json
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict
from sqlalchemy import select

from fleetpay.common.config import settings
from fleetpay.common.logging import logger
from fleetpay.common.metrics import audit_write_failures_total
from fleetpay.common.schemas import Actor
from fleetpay.services.audit.models import ResourceEvent


class AuditEvent(BaseModel):
    """Read model for one audit entry."""

    model_config = ConfigDict(from_attributes=True)

    event_id: str
    resource_kind: str
    resource_id: str
    actor_id: str | None
    actor_role: str
    event_type: str
    payload: dict[str, Any]
    occurred_at: datetime


def _jsonable(payload: dict[str, Any] | None) -> dict[str, Any]:
    return json.loads(json.dumps(payload or {}, default=str))


class AuditLog:
    """Writes and reads `resource_events`."""

    def __init__(
        self,
        session_factory,
        service_name: str = "lifecycle",
        retry_attempts: int | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.service_name = service_name
        self.retry_attempts = settings.audit_retry_attempts if retry_attempts is None else retry_attempts

    def record(
        self,
        resource_id: str,
        actor: Actor,
        event_type: str,
        payload: dict[str, Any] | None = None,
        *,
        kind: str,
    ) -> bool:
        """Append one event. Returns False when it could not be stored."""

        body = _jsonable(payload)
        attempts = self.retry_attempts + 1
        for attempt in range(1, attempts + 1):
            try:
                with self.session_factory() as db:
                    db.add(
                        ResourceEvent(
                            resource_kind=kind,
                            resource_id=resource_id,
                            actor_id=actor.actor_id,
                            actor_role=actor.role,
                            event_type=event_type,
                            payload=body,
                        )
                    )
                    db.commit()
                return True
            except Exception as exc:
                logger.warning(
                    "audit_record_retry resource_id=%s event_type=%s attempt=%s/%s error=%s",
                    resource_id,
                    event_type,
                    attempt,
                    attempts,
                    exc,
                )
        logger.error(
            "audit_record_failed resource_id=%s event_type=%s payload=%s",
            resource_id,
            event_type,
            body,
        )
        audit_write_failures_total.labels(service=self.service_name).inc()
        return False

    def list_events(self, resource_id: str) -> list[AuditEvent]:
        """Return the resource's trail ordered by occurrence then insertion."""

        with self.session_factory() as db:
            rows = db.execute(
                select(ResourceEvent)
                .where(ResourceEvent.resource_id == resource_id)
                .order_by(ResourceEvent.occurred_at, ResourceEvent.seq)
            ).scalars().all()
            return [AuditEvent.model_validate(row) for row in rows]
