"""Payment orchestrator.

Owns the provider side of a transition: sizing checks, idempotency keys,
provider metrics and the decision of what a webhook outcome means for a
resource. It never writes resource rows; the transition authority applies
whatever it returns through the conditional-write path.
"""

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from fleetpay.common.config import settings
from fleetpay.common.errors import (
    InvalidAmount,
    NoAuthorization,
    PaymentInvariantViolation,
    PaymentProviderError,
)
from fleetpay.common.logging import logger
from fleetpay.common.metrics import provider_calls_total, provider_latency_seconds
from fleetpay.common.schemas import Snapshot
from fleetpay.common.state_machine import DeliveryStatus, PaymentState, RentalStatus, ResourceKind
from fleetpay.common.tracing import tracer
from fleetpay.services.payments.provider import Authorization, PaymentProvider
from fleetpay.services.payments.schemas import WebhookEvent


@dataclass(frozen=True)
class CaptureResult:
    ref: str
    provider_called: bool


@dataclass(frozen=True)
class RefundResult:
    ref: str
    amount_cents: int
    refund_ref: str | None


@dataclass(frozen=True)
class ReconcilePlan:
    """Local effect of a webhook outcome, applied by the caller."""

    event_type: str
    changes: dict[str, Any] = field(default_factory=dict)
    payload: dict[str, Any] = field(default_factory=dict)


class PaymentOrchestrator:
    def __init__(
        self,
        provider: PaymentProvider,
        service_name: str = "lifecycle",
        min_charge_cents: int | None = None,
        currency: str | None = None,
    ) -> None:
        self.provider = provider
        self.service_name = service_name
        self.min_charge_cents = settings.min_charge_cents if min_charge_cents is None else min_charge_cents
        self.currency = currency or settings.currency

    def _call(self, operation: str, fn, *args, **kwargs):
        started = time.perf_counter()
        with tracer.start_as_current_span(f"payment.{operation}"):
            try:
                result = fn(*args, **kwargs)
            except PaymentProviderError:
                provider_calls_total.labels(
                    service=self.service_name, operation=operation, outcome="error"
                ).inc()
                raise
            finally:
                provider_latency_seconds.labels(service=self.service_name, operation=operation).observe(
                    time.perf_counter() - started
                )
        provider_calls_total.labels(service=self.service_name, operation=operation, outcome="ok").inc()
        return result

    def _violation(self, snapshot: Snapshot, error: PaymentInvariantViolation) -> PaymentInvariantViolation:
        logger.error(
            "payment_invariant_violation kind=%s resource_id=%s payment_state=%s error=%s",
            snapshot.kind,
            snapshot.id,
            snapshot.payment_state,
            error.message,
        )
        return error

    def check_amount(self, amount_cents: int) -> None:
        if amount_cents < self.min_charge_cents:
            raise InvalidAmount(f"amount {amount_cents} below minimum {self.min_charge_cents}")

    def authorize(self, snapshot: Snapshot) -> Authorization:
        """Start or resume the resource's authorization.

        A resource that already holds a ref is looked up instead of asked for
        a second hold; the answer says whether funds are held yet and carries
        the client secret or checkout url the customer confirms with.
        """

        if snapshot.payment_intent_ref and snapshot.payment_state != PaymentState.NONE.value:
            return Authorization(ref=snapshot.payment_intent_ref, held=True)
        if snapshot.payment_intent_ref:
            auth = self._call("lookup", self.provider.lookup, snapshot.payment_intent_ref)
        else:
            self.check_amount(snapshot.amount_cents)
            auth = self._call(
                "authorize",
                self.provider.authorize,
                snapshot.amount_cents,
                snapshot.currency or self.currency,
                {"resource_kind": snapshot.kind, "resource_id": snapshot.id, "owner_id": snapshot.owner_id},
                idempotency_key=f"authorize:{snapshot.kind}:{snapshot.id}",
                # Deliveries hold until dropoff; rental checkout charges right away.
                manual_capture=snapshot.kind == ResourceKind.DELIVERY.value,
            )
        logger.info(
            "payment_authorization kind=%s resource_id=%s ref=%s held=%s amount_cents=%s",
            snapshot.kind,
            snapshot.id,
            auth.ref,
            auth.held,
            snapshot.amount_cents,
        )
        return auth

    def capture(self, snapshot: Snapshot) -> CaptureResult:
        """Convert the hold into a charge. A captured resource short-circuits without a provider call."""

        if snapshot.payment_state == PaymentState.CAPTURED.value and snapshot.payment_intent_ref:
            return CaptureResult(ref=snapshot.payment_intent_ref, provider_called=False)
        if snapshot.payment_state != PaymentState.AUTHORIZED.value or not snapshot.payment_intent_ref:
            raise self._violation(snapshot, NoAuthorization())

        ref = snapshot.payment_intent_ref
        self._call("capture", self.provider.capture, ref, idempotency_key=f"capture:{ref}")
        logger.info("payment_captured kind=%s resource_id=%s ref=%s", snapshot.kind, snapshot.id, ref)
        return CaptureResult(ref=ref, provider_called=True)

    def void(self, snapshot: Snapshot) -> bool:
        """Release the hold, or withdraw an authorization the customer has not confirmed.

        Returns False when there was nothing to release.
        """

        if snapshot.payment_state == PaymentState.VOIDED.value:
            return False
        pending = snapshot.payment_state == PaymentState.NONE.value
        if not snapshot.payment_intent_ref or not (pending or snapshot.payment_state == PaymentState.AUTHORIZED.value):
            raise self._violation(
                snapshot,
                PaymentInvariantViolation(f"cannot void payment in state {snapshot.payment_state}"),
            )

        ref = snapshot.payment_intent_ref
        self._call("void", self.provider.void, ref, idempotency_key=f"void:{ref}")
        logger.info("payment_voided kind=%s resource_id=%s ref=%s pending=%s", snapshot.kind, snapshot.id, ref, pending)
        return True

    def refund(self, snapshot: Snapshot, amount_cents: int) -> RefundResult:
        """Return part of a captured charge, at most once per resource."""

        if snapshot.payment_state != PaymentState.CAPTURED.value or not snapshot.payment_intent_ref:
            raise self._violation(
                snapshot,
                PaymentInvariantViolation(f"cannot refund payment in state {snapshot.payment_state}"),
            )
        ref = snapshot.payment_intent_ref
        if amount_cents <= 0:
            return RefundResult(ref=ref, amount_cents=0, refund_ref=None)

        refund_ref = self._call(
            "refund", self.provider.refund, ref, amount_cents, idempotency_key=f"refund:{ref}"
        )
        logger.info(
            "payment_refunded kind=%s resource_id=%s ref=%s amount_cents=%s refund_ref=%s",
            snapshot.kind,
            snapshot.id,
            ref,
            amount_cents,
            refund_ref,
        )
        return RefundResult(ref=ref, amount_cents=amount_cents, refund_ref=refund_ref)

    def reconcile(self, snapshot: Snapshot, event: WebhookEvent) -> ReconcilePlan | None:
        """Map a webhook outcome onto the resource. None means already applied."""

        state = snapshot.payment_state
        cancelled = snapshot.status == "cancelled"
        payload = {"ref": event.ref, "outcome": event.outcome, "raw_event_id": event.raw_event_id}

        if event.outcome == "failed":
            return ReconcilePlan("payment_failed", payload=payload)

        if event.outcome == "authorized":
            if state != PaymentState.NONE.value:
                return None
            if cancelled:
                logger.warning(
                    "webhook_authorization_after_cancel kind=%s resource_id=%s ref=%s",
                    snapshot.kind,
                    snapshot.id,
                    event.ref,
                )
                return None
            changes: dict[str, Any] = {"payment_state": PaymentState.AUTHORIZED.value}
            if snapshot.kind == ResourceKind.DELIVERY.value and snapshot.status == DeliveryStatus.DRAFT.value:
                changes["status"] = DeliveryStatus.AUTHORIZED.value
            return ReconcilePlan("payment_authorized", changes=changes, payload=payload)

        if event.outcome == "canceled":
            if state == PaymentState.VOIDED.value:
                return None
            if state != PaymentState.AUTHORIZED.value:
                logger.warning(
                    "webhook_cancel_ignored kind=%s resource_id=%s payment_state=%s",
                    snapshot.kind,
                    snapshot.id,
                    state,
                )
                return None
            if not cancelled:
                # Expired or dashboard-cancelled hold on an open resource.
                logger.warning(
                    "authorization_lost kind=%s resource_id=%s status=%s ref=%s",
                    snapshot.kind,
                    snapshot.id,
                    snapshot.status,
                    event.ref,
                )
            return ReconcilePlan(
                "payment_voided",
                changes={"payment_state": PaymentState.VOIDED.value},
                payload={**payload, "authorization_lost": not cancelled},
            )

        # succeeded
        if state == PaymentState.VOIDED.value or (cancelled and state == PaymentState.NONE.value):
            raise self._violation(
                snapshot, PaymentInvariantViolation(f"provider reports capture of voided ref {event.ref}")
            )
        if snapshot.kind == ResourceKind.RENTAL.value:
            if snapshot.paid:
                return None
            changes = {
                "payment_state": PaymentState.CAPTURED.value,
                "paid": True,
                "paid_at": datetime.now(timezone.utc),
            }
            if snapshot.status == RentalStatus.AWAITING_PAYMENT.value:
                changes["status"] = RentalStatus.ACTIVE.value
            return ReconcilePlan("payment_completed", changes=changes, payload=payload)

        if state == PaymentState.CAPTURED.value:
            return None
        if state != PaymentState.AUTHORIZED.value:
            raise self._violation(snapshot, NoAuthorization(f"provider reports capture of unheld ref {event.ref}"))
        return ReconcilePlan(
            "payment_captured",
            changes={"payment_state": PaymentState.CAPTURED.value},
            payload=payload,
        )
