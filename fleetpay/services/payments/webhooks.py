"""Verification and normalization of Stripe webhook deliveries."""

import stripe

from fleetpay.common.errors import InvalidInput, Unauthenticated
from fleetpay.services.payments.schemas import WebhookEvent

PAYMENT_INTENT_OUTCOMES = {
    "payment_intent.amount_capturable_updated": "authorized",
    "payment_intent.succeeded": "succeeded",
    "payment_intent.payment_failed": "failed",
    "payment_intent.canceled": "canceled",
}

CHECKOUT_OUTCOMES = {
    "checkout.session.completed": "succeeded",
    "checkout.session.async_payment_succeeded": "succeeded",
    "checkout.session.async_payment_failed": "failed",
}


def verify_stripe_event(payload: bytes, signature: str | None, secret: str):
    """Check the `Stripe-Signature` header and return the parsed event."""

    if not signature:
        raise Unauthenticated("missing Stripe-Signature header")
    try:
        return stripe.Webhook.construct_event(payload, signature, secret)
    except ValueError as exc:
        raise InvalidInput(f"malformed webhook payload: {exc}") from exc
    except stripe.SignatureVerificationError as exc:
        raise Unauthenticated("webhook signature verification failed") from exc


def normalize_stripe_event(event) -> WebhookEvent | None:
    """Map a Stripe event onto a payment outcome. None for event types we do not consume."""

    event_type = event["type"]
    obj = event["data"]["object"]

    if event_type in PAYMENT_INTENT_OUTCOMES:
        # Rental checkouts are tracked by their session, not the intent behind it.
        if (obj.get("metadata") or {}).get("resource_kind") == "rental":
            return None
        return WebhookEvent(
            ref=obj["id"],
            outcome=PAYMENT_INTENT_OUTCOMES[event_type],
            raw_event_id=event["id"],
            payload={"type": event_type, "status": obj.get("status")},
        )

    if event_type in CHECKOUT_OUTCOMES:
        # Delayed payment methods complete the session before the money moves.
        if event_type == "checkout.session.completed" and obj.get("payment_status") != "paid":
            return None
        return WebhookEvent(
            ref=obj["id"],
            outcome=CHECKOUT_OUTCOMES[event_type],
            raw_event_id=event["id"],
            payload={"type": event_type, "payment_intent": obj.get("payment_intent")},
        )
    return None
