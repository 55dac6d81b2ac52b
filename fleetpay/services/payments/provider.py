"""Payment provider adapters.

`PaymentProvider` is the collaborator contract the orchestrator depends on.
`StripePaymentProvider` talks to Stripe: a manual-capture PaymentIntent the
customer confirms with its client secret for deliveries, and a hosted Checkout
Session for rental checkout. `SimulatedPaymentProvider` keeps intents in
memory for local runs and tests and can be told to fail.
"""

import threading
import time
from dataclasses import dataclass
from typing import Protocol
from uuid import uuid4

import stripe

from fleetpay.common.errors import PaymentProviderError

HELD_INTENT_STATUSES = frozenset({"requires_capture", "processing", "succeeded"})


@dataclass(frozen=True)
class Authorization:
    """Provider answer to an authorize or lookup call.

    `held` is True once funds are actually reserved; until then the customer
    still has to confirm through `client_secret` or `checkout_url`.
    """

    ref: str
    held: bool
    client_secret: str | None = None
    checkout_url: str | None = None


class PaymentProvider(Protocol):
    def authorize(
        self,
        amount_cents: int,
        currency: str,
        metadata: dict[str, str],
        *,
        idempotency_key: str,
        manual_capture: bool = True,
    ) -> Authorization: ...

    def lookup(self, ref: str) -> Authorization: ...

    def capture(self, ref: str, *, idempotency_key: str) -> None: ...

    def void(self, ref: str, *, idempotency_key: str) -> None: ...

    def refund(self, ref: str, amount_cents: int, *, idempotency_key: str) -> str: ...


class StripePaymentProvider:
    """Stripe-backed provider. Every call is bounded by `timeout_seconds`.

    Refs starting with ``cs_`` are Checkout Sessions; everything else is a
    PaymentIntent id.
    """

    def __init__(
        self,
        api_key: str,
        timeout_seconds: float = 10.0,
        success_url: str = "",
        cancel_url: str = "",
    ) -> None:
        self.api_key = api_key
        self.success_url = success_url
        self.cancel_url = cancel_url
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout_seconds)

    @staticmethod
    def _is_session(ref: str) -> bool:
        return ref.startswith("cs_")

    def _intent_authorization(self, intent) -> Authorization:
        return Authorization(
            ref=intent.id,
            held=intent.status in HELD_INTENT_STATUSES,
            client_secret=intent.client_secret,
        )

    def _session_authorization(self, session) -> Authorization:
        return Authorization(
            ref=session.id,
            held=session.payment_status == "paid",
            checkout_url=session.url,
        )

    def _session_intent(self, ref: str) -> str:
        session = stripe.checkout.Session.retrieve(ref, api_key=self.api_key)
        if not session.payment_intent:
            raise PaymentProviderError(f"checkout session {ref} has no payment yet")
        return session.payment_intent

    def authorize(
        self,
        amount_cents: int,
        currency: str,
        metadata: dict[str, str],
        *,
        idempotency_key: str,
        manual_capture: bool = True,
    ) -> Authorization:
        try:
            if manual_capture:
                intent = stripe.PaymentIntent.create(
                    api_key=self.api_key,
                    amount=amount_cents,
                    currency=currency,
                    capture_method="manual",
                    automatic_payment_methods={"enabled": True},
                    metadata=metadata,
                    idempotency_key=idempotency_key,
                )
                return self._intent_authorization(intent)

            resource_id = metadata.get("resource_id", "")
            session = stripe.checkout.Session.create(
                api_key=self.api_key,
                mode="payment",
                payment_method_types=["card"],
                line_items=[
                    {
                        "price_data": {
                            "currency": currency,
                            "product_data": {"name": f"Rental {resource_id}"},
                            "unit_amount": amount_cents,
                        },
                        "quantity": 1,
                    }
                ],
                metadata=metadata,
                payment_intent_data={"metadata": metadata},
                success_url=self.success_url.format(resource_id=resource_id),
                cancel_url=self.cancel_url.format(resource_id=resource_id),
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as exc:
            raise PaymentProviderError(f"authorize failed: {exc.user_message or exc}") from exc
        if not session.url:
            raise PaymentProviderError(f"checkout session {session.id} created without a url")
        return self._session_authorization(session)

    def lookup(self, ref: str) -> Authorization:
        try:
            if self._is_session(ref):
                return self._session_authorization(stripe.checkout.Session.retrieve(ref, api_key=self.api_key))
            return self._intent_authorization(stripe.PaymentIntent.retrieve(ref, api_key=self.api_key))
        except stripe.StripeError as exc:
            raise PaymentProviderError(f"lookup failed: {exc.user_message or exc}") from exc

    def capture(self, ref: str, *, idempotency_key: str) -> None:
        try:
            intent = stripe.PaymentIntent.retrieve(ref, api_key=self.api_key)
            # Already captured on the provider side.
            if intent.status == "succeeded":
                return
            if intent.status != "requires_capture":
                raise PaymentProviderError(f"intent {ref} cannot be captured (status={intent.status})")
            stripe.PaymentIntent.capture(ref, api_key=self.api_key, idempotency_key=idempotency_key)
        except stripe.StripeError as exc:
            raise PaymentProviderError(f"capture failed: {exc.user_message or exc}") from exc

    def void(self, ref: str, *, idempotency_key: str) -> None:
        try:
            if self._is_session(ref):
                session = stripe.checkout.Session.retrieve(ref, api_key=self.api_key)
                if session.status == "open":
                    stripe.checkout.Session.expire(ref, api_key=self.api_key, idempotency_key=idempotency_key)
                    return
                if session.payment_status == "paid":
                    raise PaymentProviderError(f"checkout session {ref} is already paid")
                ref = session.payment_intent
                if not ref:
                    return
            intent = stripe.PaymentIntent.retrieve(ref, api_key=self.api_key)
            if intent.status == "canceled":
                return
            stripe.PaymentIntent.cancel(ref, api_key=self.api_key, idempotency_key=idempotency_key)
        except stripe.StripeError as exc:
            raise PaymentProviderError(f"void failed: {exc.user_message or exc}") from exc

    def refund(self, ref: str, amount_cents: int, *, idempotency_key: str) -> str:
        try:
            intent_id = self._session_intent(ref) if self._is_session(ref) else ref
            refund = stripe.Refund.create(
                api_key=self.api_key,
                payment_intent=intent_id,
                amount=amount_cents,
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as exc:
            raise PaymentProviderError(f"refund failed: {exc.user_message or exc}") from exc
        return refund.id


class SimulatedPaymentProvider:
    """In-memory provider with call accounting and failure injection.

    `fail_operations` makes the named operations ("authorize", "lookup",
    "capture", "void", "refund") raise `PaymentProviderError` until cleared;
    `latency_seconds` widens race windows in concurrency tests. With
    `confirm_immediately` off, new intents wait for `confirm()` the way a
    real customer confirmation would.
    """

    def __init__(self, latency_seconds: float = 0.0, confirm_immediately: bool = True) -> None:
        self.latency_seconds = latency_seconds
        self.confirm_immediately = confirm_immediately
        self.fail_operations: set[str] = set()
        self.intents: dict[str, dict] = {}
        self.refunds: list[dict] = []
        self.calls: list[tuple[str, str]] = []
        self._keys: dict[str, str] = {}
        self._lock = threading.Lock()

    def call_count(self, operation: str) -> int:
        with self._lock:
            return sum(1 for op, _ in self.calls if op == operation)

    def _enter(self, operation: str, ref: str) -> None:
        with self._lock:
            self.calls.append((operation, ref))
        if self.latency_seconds:
            time.sleep(self.latency_seconds)
        if operation in self.fail_operations:
            raise PaymentProviderError(f"simulated {operation} failure")

    def _authorization(self, ref: str) -> Authorization:
        intent = self.intents[ref]
        return Authorization(
            ref=ref,
            held=intent["status"] in HELD_INTENT_STATUSES,
            client_secret=f"{ref}_secret",
            checkout_url=None if intent["manual_capture"] else f"https://checkout.invalid/{ref}",
        )

    def authorize(
        self,
        amount_cents: int,
        currency: str,
        metadata: dict[str, str],
        *,
        idempotency_key: str,
        manual_capture: bool = True,
    ) -> Authorization:
        self._enter("authorize", idempotency_key)
        with self._lock:
            if idempotency_key in self._keys:
                return self._authorization(self._keys[idempotency_key])
            ref = f"sim_pi_{uuid4().hex[:16]}"
            self._keys[idempotency_key] = ref
            if not self.confirm_immediately:
                status = "requires_confirmation"
            else:
                status = "requires_capture" if manual_capture else "processing"
            self.intents[ref] = {
                "amount_cents": amount_cents,
                "currency": currency,
                "metadata": dict(metadata),
                "manual_capture": manual_capture,
                "status": status,
            }
            return self._authorization(ref)

    def confirm(self, ref: str) -> None:
        """Customer-side confirmation of a pending intent."""

        with self._lock:
            intent = self.intents[ref]
            intent["status"] = "requires_capture" if intent["manual_capture"] else "succeeded"

    def lookup(self, ref: str) -> Authorization:
        self._enter("lookup", ref)
        with self._lock:
            if ref not in self.intents:
                raise PaymentProviderError(f"intent {ref} not found")
            return self._authorization(ref)

    def capture(self, ref: str, *, idempotency_key: str) -> None:
        self._enter("capture", ref)
        with self._lock:
            intent = self.intents.get(ref)
            if intent is None or intent["status"] not in ("requires_capture", "succeeded"):
                raise PaymentProviderError(f"intent {ref} cannot be captured")
            intent["status"] = "succeeded"

    def void(self, ref: str, *, idempotency_key: str) -> None:
        self._enter("void", ref)
        with self._lock:
            intent = self.intents.get(ref)
            if intent is None or intent["status"] == "succeeded":
                raise PaymentProviderError(f"intent {ref} cannot be voided")
            intent["status"] = "canceled"

    def refund(self, ref: str, amount_cents: int, *, idempotency_key: str) -> str:
        self._enter("refund", ref)
        with self._lock:
            for existing in self.refunds:
                if existing["idempotency_key"] == idempotency_key:
                    return existing["id"]
            intent = self.intents.get(ref)
            if intent is None:
                raise PaymentProviderError(f"intent {ref} not found")
            refunded = sum(r["amount_cents"] for r in self.refunds if r["ref"] == ref)
            if refunded + amount_cents > intent["amount_cents"]:
                raise PaymentProviderError(f"refund exceeds charge on {ref}")
            refund_id = f"sim_re_{uuid4().hex[:16]}"
            self.refunds.append(
                {"id": refund_id, "ref": ref, "amount_cents": amount_cents, "idempotency_key": idempotency_key}
            )
            return refund_id
