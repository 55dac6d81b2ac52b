"""Transition authority: the only writer of delivery and rental rows.

Every operation follows the same path:

    load snapshot -> evaluate() -> [claim -> provider call] -> conditional write -> audit -> notify

A conditional write that loses a race re-runs `evaluate()` against a fresh
snapshot, up to `transition_max_retries` attempts, before surfacing
`Conflict`. Provider calls are serialized per resource by a claim
(`payment_op`) taken through the same conditional write, so two concurrent
completions can never both reach `capture`.

Each attempt leaves exactly one audit entry: the transition's event type,
`<action>_idempotent`, `<action>_denied`, `<action>_conflict` or
`<action>_failed`. Replayed webhooks leave none.
"""

import secrets
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from fleetpay.common.config import settings
from fleetpay.common.errors import (
    CollaboratorUnavailable,
    Conflict,
    Forbidden,
    LifecycleError,
    NotFound,
    PaymentInvariantViolation,
    PaymentProviderError,
)
from fleetpay.common.logging import logger, resource_id_ctx
from fleetpay.common.metrics import (
    duplicate_events_skipped_total,
    notification_failures_total,
    transition_conflicts_total,
    transitions_total,
)
from fleetpay.common.schemas import SYSTEM_ACTOR, Actor, Snapshot
from fleetpay.common.state_machine import (
    ActorRole,
    DeliveryStatus,
    DepositStatus,
    PaymentState,
    RentalStatus,
    ResourceKind,
    VerificationStatus,
)
from fleetpay.common.tracing import tracer
from fleetpay.services.audit.service import AuditEvent, AuditLog
from fleetpay.services.gating.engine import Action, Deny, evaluate
from fleetpay.services.lifecycle.collaborators import Notifier, PhotoStore
from fleetpay.services.lifecycle.store import ResourceStore
from fleetpay.services.payments.pricing import compute_delivery_price
from fleetpay.services.payments.schemas import WebhookEvent
from fleetpay.services.payments.service import PaymentOrchestrator

DELIVERY = ResourceKind.DELIVERY.value
RENTAL = ResourceKind.RENTAL.value


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Write:
    """A planned resource write. With `claim` set, only the claim lands first."""

    event_type: str
    changes: dict[str, Any] = field(default_factory=dict)
    payload: dict[str, Any] = field(default_factory=dict)
    claim: str | None = None


Prepare = Callable[[Snapshot, dict[str, Any]], tuple[Snapshot, dict[str, Any]]]


class TransitionAuthority:
    def __init__(
        self,
        store: ResourceStore,
        audit: AuditLog,
        payments: PaymentOrchestrator,
        photos: PhotoStore,
        notifier: Notifier,
        service_name: str = "lifecycle",
        max_retries: int | None = None,
        claim_ttl_seconds: int | None = None,
    ) -> None:
        self.store = store
        self.audit = audit
        self.payments = payments
        self.photos = photos
        self.notifier = notifier
        self.service_name = service_name
        self.max_retries = max(1, settings.transition_max_retries if max_retries is None else max_retries)
        self.claim_ttl_seconds = (
            settings.payment_claim_ttl_seconds if claim_ttl_seconds is None else claim_ttl_seconds
        )

    # Plumbing -----------------------------------------------------------------

    def _count(self, kind: str, action: str, outcome: str) -> None:
        transitions_total.labels(service=self.service_name, kind=kind, action=action, outcome=outcome).inc()

    def _record(self, snapshot: Snapshot, actor: Actor, event_type: str, payload: dict[str, Any] | None = None) -> None:
        self.audit.record(snapshot.id, actor, event_type, payload, kind=snapshot.kind)

    def _notify(self, recipient: str | None, template: str, data: dict[str, Any]) -> None:
        """Send a notification; failures are logged and counted, never raised."""

        if not recipient:
            return
        try:
            self.notifier.notify(recipient, template, data)
        except Exception as exc:
            notification_failures_total.labels(service=self.service_name, template=template).inc()
            logger.warning("notification_failed template=%s recipient=%s error=%s", template, recipient, exc)

    def _claim_active(self, snapshot: Snapshot) -> bool:
        if not snapshot.payment_op or snapshot.payment_op_started_at is None:
            return False
        started = snapshot.payment_op_started_at
        if started.tzinfo is None:
            started = started.replace(tzinfo=timezone.utc)
        return (_now() - started).total_seconds() < self.claim_ttl_seconds

    def _deny(self, snapshot: Snapshot, action: Action, actor: Actor, error: LifecycleError) -> LifecycleError:
        payload = {"reason": error.reason or error.code, "status": snapshot.status}
        if error.unmet:
            payload["unmet"] = list(error.unmet)
        self._record(snapshot, actor, f"{action.value}_denied", payload)
        self._count(snapshot.kind, action.value, "denied")
        logger.info(
            "transition_denied kind=%s action=%s resource_id=%s reason=%s unmet=%s",
            snapshot.kind,
            action.value,
            snapshot.id,
            payload["reason"],
            list(error.unmet),
        )
        return error

    def _conflict(self, snapshot: Snapshot, action: Action, actor: Actor, detail: str) -> Conflict:
        self._record(
            snapshot,
            actor,
            f"{action.value}_conflict",
            {"status": snapshot.status, "state_version": snapshot.state_version, "detail": detail},
        )
        self._count(snapshot.kind, action.value, "conflict")
        logger.info(
            "transition_conflict kind=%s action=%s resource_id=%s detail=%s",
            snapshot.kind,
            action.value,
            snapshot.id,
            detail,
        )
        return Conflict(f"{snapshot.kind} {snapshot.id} changed concurrently; re-fetch and retry")

    def _failed(
        self, snapshot: Snapshot, action: Action, actor: Actor, error: LifecycleError, operation: str
    ) -> LifecycleError:
        self._record(
            snapshot,
            actor,
            f"{action.value}_failed",
            {"operation": operation, "error": error.code, "retryable": error.retryable},
        )
        self._count(snapshot.kind, action.value, "failed")
        logger.warning(
            "transition_failed kind=%s action=%s resource_id=%s operation=%s error=%s",
            snapshot.kind,
            action.value,
            snapshot.id,
            operation,
            error.message,
        )
        return error

    def _applied(self, updated: Snapshot, action: Action, actor: Actor, write: Write) -> None:
        self._record(updated, actor, write.event_type, write.payload)
        self._count(updated.kind, action.value, "applied")
        logger.info(
            "transition_applied kind=%s action=%s resource_id=%s event_type=%s status=%s version=%s",
            updated.kind,
            action.value,
            updated.id,
            write.event_type,
            updated.status,
            updated.state_version,
        )

    def _transition(
        self,
        kind: str,
        resource_id: str,
        action: Action,
        actor: Actor,
        build: Callable[[Snapshot], Write],
        params: dict[str, Any] | None = None,
        prepare: Prepare | None = None,
    ) -> tuple[Snapshot, Write | None]:
        """Evaluate and conditionally write, re-evaluating after each lost race.

        Returns the written snapshot and the write, or the unchanged snapshot
        and None for an idempotent repeat. A write with a claim is returned
        unrecorded; the caller settles it with `_settle`.
        """

        resource_id_ctx.set(resource_id)
        params = dict(params or {})
        snapshot = None
        with tracer.start_as_current_span(f"transition.{kind}.{action.value}"):
            for attempt in range(1, self.max_retries + 1):
                snapshot = self.store.load(kind, resource_id)
                attempt_params = params
                if prepare is not None:
                    try:
                        snapshot, attempt_params = prepare(snapshot, dict(params))
                    except CollaboratorUnavailable as exc:
                        raise self._failed(snapshot, action, actor, exc, "photo_lookup")

                decision = evaluate(snapshot, action, actor, attempt_params)
                if isinstance(decision, Deny):
                    raise self._deny(snapshot, action, actor, decision.to_error())
                if decision.noop:
                    self._record(
                        snapshot, actor, f"{action.value}_idempotent", {"idempotent": True, "status": snapshot.status}
                    )
                    self._count(kind, action.value, "noop")
                    return snapshot, None
                if self._claim_active(snapshot):
                    raise self._conflict(snapshot, action, actor, f"payment {snapshot.payment_op} in progress")

                try:
                    write = build(snapshot)
                except LifecycleError as exc:
                    raise self._deny(snapshot, action, actor, exc)

                if write.claim:
                    changes = {"payment_op": write.claim, "payment_op_started_at": _now()}
                else:
                    changes = dict(write.changes)
                    if snapshot.payment_op:
                        # Abandoned claim past its TTL.
                        changes.update(payment_op=None, payment_op_started_at=None)

                try:
                    updated = self.store.compare_and_set(snapshot, changes)
                except Conflict:
                    transition_conflicts_total.labels(
                        service=self.service_name, kind=kind, action=action.value
                    ).inc()
                    logger.info(
                        "transition_retry kind=%s action=%s resource_id=%s attempt=%s/%s",
                        kind,
                        action.value,
                        resource_id,
                        attempt,
                        self.max_retries,
                    )
                    continue

                if write.claim is None:
                    self._applied(updated, action, actor, write)
                return updated, write
            raise self._conflict(snapshot, action, actor, "retries exhausted")

    def _release(self, claimed: Snapshot) -> None:
        try:
            self.store.compare_and_set(claimed, {"payment_op": None, "payment_op_started_at": None})
        except Conflict:
            logger.warning(
                "payment_claim_release_failed kind=%s resource_id=%s operation=%s",
                claimed.kind,
                claimed.id,
                claimed.payment_op,
            )

    def _settle(
        self,
        claimed: Snapshot,
        action: Action,
        actor: Actor,
        call: Callable[[Snapshot], Write],
    ) -> Snapshot:
        """Run the provider call a claim guards, then land its result and drop the claim."""

        operation = claimed.payment_op
        try:
            write = call(claimed)
        except (PaymentProviderError, PaymentInvariantViolation) as exc:
            self._release(claimed)
            raise self._failed(claimed, action, actor, exc, operation)

        changes = {**write.changes, "payment_op": None, "payment_op_started_at": None}
        try:
            updated = self.store.compare_and_set(claimed, changes)
        except Conflict:
            logger.error(
                "payment_claim_lost kind=%s resource_id=%s operation=%s",
                claimed.kind,
                claimed.id,
                operation,
            )
            raise self._conflict(claimed, action, actor, f"payment {operation} claim lost")
        self._applied(updated, action, actor, write)
        return updated

    def _authorize(
        self,
        kind: str,
        resource_id: str,
        action: Action,
        actor: Actor,
        event_type: str,
        pending_event_type: str,
        status: str | None,
    ) -> Snapshot:
        """Start or resume authorization.

        The ref is stored as soon as the provider issues it. `payment_state`
        only becomes authorized once funds are held, either right away or
        when the provider's webhook reports the customer's confirmation.
        """

        issued: dict[str, Any] = {}

        def build(snapshot: Snapshot) -> Write:
            self.payments.check_amount(snapshot.amount_cents)
            return Write(event_type, claim="authorize")

        def call(claimed: Snapshot) -> Write:
            auth = self.payments.authorize(claimed)
            issued.update(client_secret=auth.client_secret, checkout_url=auth.checkout_url)
            payload = {"ref": auth.ref, "amount_cents": claimed.amount_cents, "held": auth.held}
            changes: dict[str, Any] = {"payment_intent_ref": auth.ref}
            if not auth.held:
                return Write(pending_event_type, changes, payload)
            changes["payment_state"] = PaymentState.AUTHORIZED.value
            if status is not None:
                changes["status"] = status
            return Write(event_type, changes, payload)

        claimed, write = self._transition(kind, resource_id, action, actor, build)
        if write is None:
            return claimed
        return self._settle(claimed, action, actor, call).model_copy(update=issued)

    def _cancel(self, kind: str, resource_id: str, actor: Actor, reason: str | None, event_type: str) -> Snapshot:
        def build(snapshot: Snapshot) -> Write:
            changes = {
                "status": "cancelled",
                "cancelled_at": _now(),
                "cancel_reason": reason,
            }
            held = snapshot.payment_state == PaymentState.AUTHORIZED.value
            # An issued but unconfirmed authorization is withdrawn too.
            pending = snapshot.payment_state == PaymentState.NONE.value and snapshot.payment_intent_ref is not None
            if held or pending:
                return Write(event_type, changes, {"reason": reason}, claim="void")
            return Write(event_type, changes, {"reason": reason, "voided": False})

        def void(planned: Write) -> Callable[[Snapshot], Write]:
            def call(claimed: Snapshot) -> Write:
                voided = self.payments.void(claimed)
                changes = dict(planned.changes)
                if claimed.payment_state == PaymentState.AUTHORIZED.value:
                    changes["payment_state"] = PaymentState.VOIDED.value
                return Write(
                    planned.event_type,
                    changes,
                    {**planned.payload, "voided": voided, "ref": claimed.payment_intent_ref},
                )

            return call

        snapshot, write = self._transition(
            kind, resource_id, Action.CANCEL, actor, build, params={"reason": reason}
        )
        if write is not None and write.claim:
            snapshot = self._settle(snapshot, Action.CANCEL, actor, void(write))
        self._notify(snapshot.owner_id, event_type, {"resource_id": resource_id, "reason": reason})
        return snapshot

    def _create_check(self, actor: Actor, kind: str) -> None:
        if actor.role != ActorRole.CUSTOMER.value or not actor.actor_id:
            self._count(kind, "create", "denied")
            raise Forbidden(f"only customers create a {kind}", reason="RoleNotPermitted")

    # Reads --------------------------------------------------------------------

    def get(self, kind: str, resource_id: str, actor: Actor) -> Snapshot:
        snapshot = self.store.load(kind, resource_id)
        if actor.role in (ActorRole.ADMIN.value, ActorRole.SYSTEM.value):
            return snapshot
        if actor.role == ActorRole.CUSTOMER.value and actor.actor_id == snapshot.owner_id:
            return snapshot
        if actor.role == ActorRole.DRIVER.value and actor.actor_id == getattr(snapshot, "assignee_id", None):
            return snapshot
        raise Forbidden(f"cannot view {kind} {resource_id}", reason="NotOwner")

    def list_events(self, kind: str, resource_id: str, actor: Actor) -> list[AuditEvent]:
        if actor.role != ActorRole.ADMIN.value:
            raise Forbidden("audit trail is admin-only", reason="RoleNotPermitted")
        events = self.audit.list_events(resource_id)
        if not events:
            # Events outlive deleted drafts; only 404 when there is neither.
            self.store.load(kind, resource_id)
        return events

    # Shared -------------------------------------------------------------------

    def delete_draft(self, kind: str, resource_id: str, actor: Actor) -> None:
        resource_id_ctx.set(resource_id)
        snapshot = None
        for attempt in range(1, self.max_retries + 1):
            snapshot = self.store.load(kind, resource_id)
            decision = evaluate(snapshot, Action.DELETE_DRAFT, actor)
            if isinstance(decision, Deny):
                raise self._deny(snapshot, Action.DELETE_DRAFT, actor, decision.to_error())
            try:
                self.store.delete_draft(snapshot)
            except Conflict:
                transition_conflicts_total.labels(
                    service=self.service_name, kind=kind, action=Action.DELETE_DRAFT.value
                ).inc()
                continue
            self._applied(snapshot, Action.DELETE_DRAFT, actor, Write("draft_deleted", payload={"status": "draft"}))
            return
        raise self._conflict(snapshot, Action.DELETE_DRAFT, actor, "retries exhausted")

    # Delivery -----------------------------------------------------------------

    def create_delivery(
        self,
        actor: Actor,
        *,
        miles: float,
        weight_lbs: float,
        stops: int = 0,
        rush: bool = False,
        signature_required: bool = False,
        heavy_item_acknowledged: bool = False,
    ) -> Snapshot:
        self._create_check(actor, DELIVERY)
        quote = compute_delivery_price(miles, weight_lbs, stops, rush, signature_required, heavy_item_acknowledged)
        self.payments.check_amount(quote.amount_cents)
        snapshot = self.store.insert(
            DELIVERY,
            {
                "owner_id": actor.actor_id,
                "amount_cents": quote.amount_cents,
                "currency": self.payments.currency,
                "miles": miles,
                "weight_lbs": weight_lbs,
                "stops": stops,
                "rush": rush,
                "signature_required": signature_required,
            },
        )
        self._record(snapshot, actor, "delivery_created", {"amount_cents": quote.amount_cents, "quote": quote.breakdown})
        self._count(DELIVERY, "create", "applied")
        logger.info("delivery_created resource_id=%s amount_cents=%s", snapshot.id, quote.amount_cents)
        return snapshot

    def authorize_delivery_payment(self, resource_id: str, actor: Actor) -> Snapshot:
        return self._authorize(
            DELIVERY,
            resource_id,
            Action.AUTHORIZE_PAYMENT,
            actor,
            "payment_authorized",
            "payment_pending",
            DeliveryStatus.AUTHORIZED.value,
        )

    def confirm_delivery(self, resource_id: str, actor: Actor) -> Snapshot:
        snapshot, _ = self._transition(
            DELIVERY,
            resource_id,
            Action.CONFIRM,
            actor,
            lambda s: Write("delivery_confirmed", {"status": DeliveryStatus.AWAITING_PICKUP_PHOTO.value}),
        )
        return snapshot

    def record_pickup_photo(self, resource_id: str, actor: Actor) -> Snapshot:
        def prepare(snapshot: Snapshot, params: dict[str, Any]) -> tuple[Snapshot, dict[str, Any]]:
            if snapshot.status in (DeliveryStatus.AUTHORIZED.value, DeliveryStatus.AWAITING_PICKUP_PHOTO.value):
                params["pickup_photo_present"] = self.photos.has_photo(snapshot.id, "pickup")
            return snapshot, params

        snapshot, _ = self._transition(
            DELIVERY,
            resource_id,
            Action.RECORD_PICKUP_PHOTO,
            actor,
            lambda s: Write("pickup_photo_recorded", {"status": DeliveryStatus.READY_FOR_DISPATCH.value}),
            prepare=prepare,
        )
        return snapshot

    def assign_driver(self, resource_id: str, actor: Actor, driver_id: str | None) -> Snapshot:
        def build(snapshot: Snapshot) -> Write:
            reassigned = snapshot.status == DeliveryStatus.ASSIGNED.value
            return Write(
                "driver_reassigned" if reassigned else "driver_assigned",
                {"status": DeliveryStatus.ASSIGNED.value, "assignee_id": driver_id, "assigned_at": _now()},
                {"driver_id": driver_id, "previous_driver_id": snapshot.assignee_id},
            )

        snapshot, _ = self._transition(
            DELIVERY, resource_id, Action.ASSIGN_DRIVER, actor, build, params={"driver_id": driver_id}
        )
        self._notify(driver_id, "delivery_assigned", {"resource_id": resource_id})
        return snapshot

    def unassign_driver(self, resource_id: str, actor: Actor) -> Snapshot:
        snapshot, _ = self._transition(
            DELIVERY,
            resource_id,
            Action.UNASSIGN_DRIVER,
            actor,
            lambda s: Write(
                "driver_unassigned",
                {"status": DeliveryStatus.READY_FOR_DISPATCH.value, "assignee_id": None, "assigned_at": None},
                {"previous_driver_id": s.assignee_id},
            ),
        )
        return snapshot

    def start_transit(self, resource_id: str, actor: Actor) -> Snapshot:
        snapshot, write = self._transition(
            DELIVERY,
            resource_id,
            Action.START_TRANSIT,
            actor,
            lambda s: Write(
                "transit_started",
                {"status": DeliveryStatus.IN_TRANSIT.value, "in_transit_at": _now()},
                {"driver_id": s.assignee_id},
            ),
        )
        if write is not None:
            self._notify(snapshot.owner_id, "delivery_in_transit", {"resource_id": resource_id})
        return snapshot

    def complete_delivery(self, resource_id: str, actor: Actor) -> Snapshot:
        """Complete a delivery and capture its payment exactly once."""

        def prepare(snapshot: Snapshot, params: dict[str, Any]) -> tuple[Snapshot, dict[str, Any]]:
            if snapshot.status == DeliveryStatus.IN_TRANSIT.value:
                present = self.photos.has_photo(snapshot.id, "dropoff")
                snapshot = snapshot.model_copy(update={"dropoff_photo_present": present})
            return snapshot, params

        def capture(claimed: Snapshot) -> Write:
            result = self.payments.capture(claimed)
            return Write(
                "delivery_completed",
                {
                    "status": DeliveryStatus.COMPLETED.value,
                    "completed_at": _now(),
                    "payment_state": PaymentState.CAPTURED.value,
                },
                {"ref": result.ref, "provider_called": result.provider_called, "amount_cents": claimed.amount_cents},
            )

        claimed, write = self._transition(
            DELIVERY,
            resource_id,
            Action.COMPLETE,
            actor,
            lambda s: Write("delivery_completed", claim="capture"),
            prepare=prepare,
        )
        if write is None:
            return claimed
        snapshot = self._settle(claimed, Action.COMPLETE, actor, capture)
        self._notify(snapshot.owner_id, "delivery_completed", {"resource_id": resource_id})
        return snapshot

    def cancel_delivery(self, resource_id: str, actor: Actor, reason: str | None) -> Snapshot:
        return self._cancel(DELIVERY, resource_id, actor, reason, "delivery_cancelled")

    # Rental -------------------------------------------------------------------

    def create_rental(
        self, actor: Actor, *, rate_cents: int, deposit_cents: int = 0, purpose: str | None = None
    ) -> Snapshot:
        self._create_check(actor, RENTAL)
        amount_cents = rate_cents + deposit_cents
        self.payments.check_amount(amount_cents)
        snapshot = self.store.insert(
            RENTAL,
            {
                "owner_id": actor.actor_id,
                "amount_cents": amount_cents,
                "currency": self.payments.currency,
                "rate_cents": rate_cents,
                "deposit_cents": deposit_cents,
                "purpose": purpose,
            },
        )
        self._record(snapshot, actor, "rental_created", {"rate_cents": rate_cents, "deposit_cents": deposit_cents})
        self._count(RENTAL, "create", "applied")
        logger.info("rental_created resource_id=%s amount_cents=%s", snapshot.id, amount_cents)
        return snapshot

    def record_documents(self, resource_id: str, actor: Actor) -> Snapshot:
        snapshot, _ = self._transition(
            RENTAL,
            resource_id,
            Action.RECORD_DOCUMENTS,
            actor,
            lambda s: Write("documents_recorded", {"docs_complete": True}),
        )
        return snapshot

    def submit_rental(self, resource_id: str, actor: Actor) -> Snapshot:
        snapshot, _ = self._transition(
            RENTAL,
            resource_id,
            Action.SUBMIT,
            actor,
            lambda s: Write("rental_submitted", {"status": RentalStatus.SUBMITTED.value}),
        )
        return snapshot

    def review_rental(
        self,
        resource_id: str,
        actor: Actor,
        decision: str | None,
        reason: str | None = None,
        lockbox_code: str | None = None,
    ) -> Snapshot:
        def build(snapshot: Snapshot) -> Write:
            if decision == "approve":
                return Write(
                    "verification_approved",
                    {
                        "status": RentalStatus.APPROVED.value,
                        "verification_status": VerificationStatus.APPROVED.value,
                        "verification_denial_reason": None,
                        "lockbox_code": lockbox_code or f"{secrets.randbelow(900000) + 100000}",
                    },
                    {"decision": decision},
                )
            return Write(
                "verification_denied",
                {
                    "status": RentalStatus.DENIED.value,
                    "verification_status": VerificationStatus.DENIED.value,
                    "verification_denial_reason": reason,
                },
                {"decision": decision, "reason": reason},
            )

        snapshot, write = self._transition(
            RENTAL,
            resource_id,
            Action.REVIEW,
            actor,
            build,
            params={"decision": decision, "reason": reason},
        )
        if write is not None:
            self._notify(snapshot.owner_id, write.event_type, {"resource_id": resource_id, "reason": reason})
        return snapshot

    def sign_agreement(
        self, resource_id: str, actor: Actor, purpose: str | None, signature_name: str | None = None
    ) -> Snapshot:
        snapshot, _ = self._transition(
            RENTAL,
            resource_id,
            Action.SIGN_AGREEMENT,
            actor,
            lambda s: Write(
                "agreement_signed",
                {
                    "agreement_signed": True,
                    "purpose": purpose,
                    "signature_name": signature_name,
                    "status": RentalStatus.AWAITING_PAYMENT.value,
                },
                {"purpose": purpose, "signature_name": signature_name},
            ),
            params={"purpose": purpose},
        )
        return snapshot

    def start_checkout(self, resource_id: str, actor: Actor) -> Snapshot:
        return self._authorize(
            RENTAL, resource_id, Action.START_CHECKOUT, actor, "checkout_started", "checkout_started", None
        )

    def release_lockbox(self, resource_id: str, actor: Actor, lockbox_code: str | None = None) -> Snapshot:
        def build(snapshot: Snapshot) -> Write:
            changes: dict[str, Any] = {"lockbox_released_at": _now()}
            if lockbox_code:
                changes["lockbox_code"] = lockbox_code
            return Write("lockbox_released", changes)

        snapshot, write = self._transition(RENTAL, resource_id, Action.RELEASE_LOCKBOX, actor, build)
        if write is not None:
            self._notify(
                snapshot.owner_id,
                "lockbox_released",
                {"resource_id": resource_id, "lockbox_code": snapshot.lockbox_code},
            )
        return snapshot

    def confirm_pickup(self, resource_id: str, actor: Actor) -> Snapshot:
        snapshot, _ = self._transition(
            RENTAL,
            resource_id,
            Action.CONFIRM_PICKUP,
            actor,
            lambda s: Write(
                "pickup_confirmed",
                {"status": RentalStatus.PICKUP_CONFIRMED.value, "pickup_confirmed_at": _now()},
            ),
        )
        return snapshot

    def confirm_return(self, resource_id: str, actor: Actor) -> Snapshot:
        snapshot, _ = self._transition(
            RENTAL,
            resource_id,
            Action.CONFIRM_RETURN,
            actor,
            lambda s: Write(
                "return_confirmed",
                {
                    "status": RentalStatus.COMPLETED.value,
                    "return_confirmed_at": _now(),
                    "deposit_refund_status": DepositStatus.PENDING.value,
                },
            ),
        )
        return snapshot

    def confirm_damage(
        self, resource_id: str, actor: Actor, confirmed: bool = True, notes: str | None = None
    ) -> Snapshot:
        snapshot, _ = self._transition(
            RENTAL,
            resource_id,
            Action.CONFIRM_DAMAGE,
            actor,
            lambda s: Write(
                "damage_confirmed" if confirmed else "damage_cleared",
                {"damage_confirmed": confirmed, "damage_notes": notes},
                {"notes": notes},
            ),
        )
        return snapshot

    def resolve_deposit(
        self,
        resource_id: str,
        actor: Actor,
        decision: str | None,
        amount_cents: int | None = None,
        reason: str | None = None,
    ) -> Snapshot:
        """Close out the deposit. A refund goes back to the customer through the provider first."""

        def build(snapshot: Snapshot) -> Write:
            withheld = decision == DepositStatus.WITHHELD.value
            withheld_cents = amount_cents if withheld else 0
            planned = Write(
                "deposit_decision",
                {
                    "status": RentalStatus.DEPOSIT_RESOLVED.value,
                    "deposit_refund_status": decision,
                    "deposit_withheld_cents": withheld_cents,
                    "deposit_reason": reason,
                },
                {"decision": decision, "amount_cents": withheld_cents, "reason": reason},
            )
            if withheld or snapshot.deposit_cents <= 0:
                return planned
            return Write(planned.event_type, planned.changes, planned.payload, claim="refund")

        def refund(planned: Write) -> Callable[[Snapshot], Write]:
            def call(claimed: Snapshot) -> Write:
                result = self.payments.refund(claimed, claimed.deposit_cents)
                return Write(
                    planned.event_type,
                    {
                        **planned.changes,
                        "deposit_refunded_cents": result.amount_cents,
                        "deposit_refund_ref": result.refund_ref,
                    },
                    {**planned.payload, "refunded_cents": result.amount_cents, "refund_ref": result.refund_ref},
                )

            return call

        snapshot, write = self._transition(
            RENTAL,
            resource_id,
            Action.RESOLVE_DEPOSIT,
            actor,
            build,
            params={"decision": decision, "amount_cents": amount_cents, "reason": reason},
        )
        if write is not None and write.claim:
            snapshot = self._settle(snapshot, Action.RESOLVE_DEPOSIT, actor, refund(write))
        if write is not None:
            self._notify(snapshot.owner_id, "deposit_decision", {"resource_id": resource_id, "decision": decision})
        return snapshot

    def cancel_rental(self, resource_id: str, actor: Actor, reason: str | None) -> Snapshot:
        return self._cancel(RENTAL, resource_id, actor, reason, "rental_cancelled")

    # Webhooks -----------------------------------------------------------------

    def receive_webhook(self, event: WebhookEvent) -> str:
        """Apply a provider-verified payment event. Returns "applied" or "duplicate"."""

        if self.store.inbox_seen(event.raw_event_id):
            duplicate_events_skipped_total.labels(service=self.service_name, source="payments_webhook").inc()
            logger.info("duplicate webhook skipped raw_event_id=%s", event.raw_event_id)
            return "duplicate"

        snapshot = None
        for attempt in range(1, self.max_retries + 1):
            snapshot = self.store.find_by_payment_ref(event.ref)
            if snapshot is None:
                # The authorize write may not have landed yet; the provider redelivers.
                logger.warning("webhook_unknown_ref ref=%s raw_event_id=%s", event.ref, event.raw_event_id)
                raise NotFound(f"no resource holds payment ref {event.ref}")
            resource_id_ctx.set(snapshot.id)

            if event.outcome != "failed" and self._claim_active(snapshot):
                self._count(snapshot.kind, "reconcile", "conflict")
                raise Conflict(f"payment {snapshot.payment_op} in progress for {snapshot.id}")

            plan = self.payments.reconcile(snapshot, event)
            if plan is None:
                self.store.mark_inbox(event.raw_event_id)
                duplicate_events_skipped_total.labels(service=self.service_name, source="payments_webhook").inc()
                logger.info(
                    "webhook already applied resource_id=%s outcome=%s raw_event_id=%s",
                    snapshot.id,
                    event.outcome,
                    event.raw_event_id,
                )
                return "duplicate"

            updated = snapshot
            if plan.changes:
                try:
                    updated = self.store.compare_and_set(snapshot, plan.changes)
                except Conflict:
                    transition_conflicts_total.labels(
                        service=self.service_name, kind=snapshot.kind, action="reconcile"
                    ).inc()
                    continue
                self.store.mark_inbox(event.raw_event_id)
            elif not self.store.mark_inbox(event.raw_event_id):
                duplicate_events_skipped_total.labels(service=self.service_name, source="payments_webhook").inc()
                return "duplicate"

            self._record(updated, SYSTEM_ACTOR, plan.event_type, plan.payload)
            self._count(updated.kind, "reconcile", "applied")
            logger.info(
                "webhook_applied kind=%s resource_id=%s outcome=%s event_type=%s",
                updated.kind,
                updated.id,
                event.outcome,
                plan.event_type,
            )
            if plan.event_type == "payment_completed":
                self._notify(updated.owner_id, "rental_paid", {"resource_id": updated.id})
            elif plan.event_type == "payment_failed":
                self._notify(updated.owner_id, "payment_failed", {"resource_id": updated.id})
            return "applied"

        self._count(snapshot.kind, "reconcile", "conflict")
        raise Conflict(f"{snapshot.kind} {snapshot.id} changed concurrently; redeliver")
