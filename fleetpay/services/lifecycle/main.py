"""HTTP surface for delivery and rental lifecycles plus payment webhooks."""

from time import perf_counter
from typing import Any
from uuid import uuid4

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool

from fleetpay.common.config import settings
from fleetpay.common.db import SessionLocal
from fleetpay.common.errors import InvalidInput, LifecycleError, PaymentInvariantViolation
from fleetpay.common.logging import actor_id_ctx, configure_logging, logger, trace_id_ctx
from fleetpay.common.metrics import (
    http_request_duration_seconds,
    http_requests_total,
    metrics_response,
    payment_invariant_violations_total,
)
from fleetpay.common.schemas import Actor, Snapshot
from fleetpay.common.startup import log_startup_config
from fleetpay.common.state_machine import ActorRole
from fleetpay.common.tracing import instrument_app, setup_tracing
from fleetpay.services.audit.service import AuditLog
from fleetpay.services.lifecycle.collaborators import HttpNotifier, HttpPhotoStore, TrustedHeaderIdentity
from fleetpay.services.lifecycle.schemas import (
    AssignDriverRequest,
    DamageRequest,
    DeliveryCreateRequest,
    DepositRequest,
    LockboxRequest,
    ReasonRequest,
    RentalCreateRequest,
    ReviewRequest,
    SignAgreementRequest,
    WebhookAck,
)
from fleetpay.services.lifecycle.service import DELIVERY, RENTAL, TransitionAuthority
from fleetpay.services.lifecycle.store import ResourceStore
from fleetpay.services.payments.provider import SimulatedPaymentProvider, StripePaymentProvider
from fleetpay.services.payments.schemas import WebhookEvent
from fleetpay.services.payments.service import PaymentOrchestrator
from fleetpay.services.payments.webhooks import normalize_stripe_event, verify_stripe_event

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings,
    [
        "service_name",
        "postgres_dsn",
        "payment_provider",
        "stripe_secret_key",
        "stripe_webhook_secret",
        "photo_store_url",
        "notification_url",
        "transition_max_retries",
        "payment_claim_ttl_seconds",
    ],
)


def build_authority(session_factory=SessionLocal) -> TransitionAuthority:
    """Wire the authority to the configured production collaborators."""

    if settings.payment_provider == "simulated":
        provider = SimulatedPaymentProvider()
    else:
        provider = StripePaymentProvider(
            settings.stripe_secret_key,
            settings.provider_timeout_seconds,
            success_url=settings.checkout_success_url,
            cancel_url=settings.checkout_cancel_url,
        )
    return TransitionAuthority(
        store=ResourceStore(session_factory, settings.service_name),
        audit=AuditLog(session_factory, settings.service_name),
        payments=PaymentOrchestrator(provider, settings.service_name),
        photos=HttpPhotoStore(settings.photo_store_url, settings.collaborator_timeout_seconds),
        notifier=HttpNotifier(settings.notification_url, settings.collaborator_timeout_seconds),
        service_name=settings.service_name,
    )


authority = build_authority()
identity = TrustedHeaderIdentity(settings.api_key)

app = FastAPI(title="FleetPay Lifecycle")
instrument_app(app)


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    """Record request count and latency for every HTTP call."""

    start = perf_counter()
    route = request.url.path
    method = request.method
    status_code = 500
    trace_id_ctx.set(request.headers.get("x-trace-id") or str(uuid4()))
    try:
        response = await call_next(request)
        status_code = response.status_code
        route_obj = request.scope.get("route")
        if route_obj is not None and getattr(route_obj, "path", None):
            route = route_obj.path
        return response
    finally:
        elapsed = max(0.0, perf_counter() - start)
        http_request_duration_seconds.labels(
            service=settings.service_name,
            route=route,
            method=method,
        ).observe(elapsed)
        http_requests_total.labels(
            service=settings.service_name,
            route=route,
            method=method,
            status_code=str(status_code),
        ).inc()


@app.exception_handler(LifecycleError)
async def lifecycle_error_handler(request: Request, exc: LifecycleError):
    """Render the error taxonomy; invariant violations stay opaque and alert."""

    if isinstance(exc, PaymentInvariantViolation):
        payment_invariant_violations_total.labels(service=settings.service_name).inc()
        logger.critical("payment_invariant_violation path=%s error=%s", request.url.path, exc.message)
    return JSONResponse(status_code=exc.http_status, content=exc.to_body())


def get_authority() -> TransitionAuthority:
    return authority


def current_actor(request: Request) -> Actor:
    actor = identity.resolve_actor(request.headers)
    actor_id_ctx.set(actor.actor_id or actor.role)
    return actor


def render(snapshot: Snapshot, actor: Actor) -> dict[str, Any]:
    """Serialize a snapshot, hiding the lockbox code until it is released."""

    body = snapshot.model_dump(mode="json", exclude={"payment_op", "payment_op_started_at", "dropoff_photo_present"})
    if (
        snapshot.kind == RENTAL
        and actor.role != ActorRole.ADMIN.value
        and snapshot.lockbox_released_at is None
    ):
        body["lockbox_code"] = None
    return body


# Deliveries -----------------------------------------------------------------


@app.post("/deliveries", status_code=201)
def create_delivery(
    req: DeliveryCreateRequest,
    actor: Actor = Depends(current_actor),
    svc: TransitionAuthority = Depends(get_authority),
):
    """Create a draft delivery priced from its size, distance and options."""

    return render(svc.create_delivery(actor, **req.model_dump()), actor)


@app.get("/deliveries/{delivery_id}")
def get_delivery(
    delivery_id: str, actor: Actor = Depends(current_actor), svc: TransitionAuthority = Depends(get_authority)
):
    return render(svc.get(DELIVERY, delivery_id, actor), actor)


@app.get("/deliveries/{delivery_id}/events")
def delivery_events(
    delivery_id: str, actor: Actor = Depends(current_actor), svc: TransitionAuthority = Depends(get_authority)
):
    """Audit trail for dispute review (admin only)."""

    return [event.model_dump(mode="json") for event in svc.list_events(DELIVERY, delivery_id, actor)]


@app.post("/deliveries/{delivery_id}/authorize")
def authorize_delivery(
    delivery_id: str, actor: Actor = Depends(current_actor), svc: TransitionAuthority = Depends(get_authority)
):
    """Start the hold; until it is confirmed the response carries the client secret."""

    return render(svc.authorize_delivery_payment(delivery_id, actor), actor)


@app.post("/deliveries/{delivery_id}/confirm")
def confirm_delivery(
    delivery_id: str, actor: Actor = Depends(current_actor), svc: TransitionAuthority = Depends(get_authority)
):
    return render(svc.confirm_delivery(delivery_id, actor), actor)


@app.post("/deliveries/{delivery_id}/pickup-photo")
def record_pickup_photo(
    delivery_id: str, actor: Actor = Depends(current_actor), svc: TransitionAuthority = Depends(get_authority)
):
    return render(svc.record_pickup_photo(delivery_id, actor), actor)


@app.post("/deliveries/{delivery_id}/assign")
def assign_driver(
    delivery_id: str,
    req: AssignDriverRequest,
    actor: Actor = Depends(current_actor),
    svc: TransitionAuthority = Depends(get_authority),
):
    return render(svc.assign_driver(delivery_id, actor, req.driver_id), actor)


@app.post("/deliveries/{delivery_id}/unassign")
def unassign_driver(
    delivery_id: str, actor: Actor = Depends(current_actor), svc: TransitionAuthority = Depends(get_authority)
):
    return render(svc.unassign_driver(delivery_id, actor), actor)


@app.post("/deliveries/{delivery_id}/start")
def start_transit(
    delivery_id: str, actor: Actor = Depends(current_actor), svc: TransitionAuthority = Depends(get_authority)
):
    return render(svc.start_transit(delivery_id, actor), actor)


@app.post("/deliveries/{delivery_id}/complete")
def complete_delivery(
    delivery_id: str, actor: Actor = Depends(current_actor), svc: TransitionAuthority = Depends(get_authority)
):
    """Complete after dropoff proof and capture the held payment."""

    return render(svc.complete_delivery(delivery_id, actor), actor)


@app.post("/deliveries/{delivery_id}/cancel")
def cancel_delivery(
    delivery_id: str,
    req: ReasonRequest,
    actor: Actor = Depends(current_actor),
    svc: TransitionAuthority = Depends(get_authority),
):
    return render(svc.cancel_delivery(delivery_id, actor, req.reason), actor)


@app.delete("/deliveries/{delivery_id}", status_code=204)
def delete_delivery_draft(
    delivery_id: str, actor: Actor = Depends(current_actor), svc: TransitionAuthority = Depends(get_authority)
):
    svc.delete_draft(DELIVERY, delivery_id, actor)


# Rentals --------------------------------------------------------------------


@app.post("/rentals", status_code=201)
def create_rental(
    req: RentalCreateRequest,
    actor: Actor = Depends(current_actor),
    svc: TransitionAuthority = Depends(get_authority),
):
    return render(svc.create_rental(actor, **req.model_dump()), actor)


@app.get("/rentals/{rental_id}")
def get_rental(
    rental_id: str, actor: Actor = Depends(current_actor), svc: TransitionAuthority = Depends(get_authority)
):
    return render(svc.get(RENTAL, rental_id, actor), actor)


@app.get("/rentals/{rental_id}/events")
def rental_events(
    rental_id: str, actor: Actor = Depends(current_actor), svc: TransitionAuthority = Depends(get_authority)
):
    """Audit trail for dispute review (admin only)."""

    return [event.model_dump(mode="json") for event in svc.list_events(RENTAL, rental_id, actor)]


@app.post("/rentals/{rental_id}/documents")
def record_documents(
    rental_id: str, actor: Actor = Depends(current_actor), svc: TransitionAuthority = Depends(get_authority)
):
    return render(svc.record_documents(rental_id, actor), actor)


@app.post("/rentals/{rental_id}/submit")
def submit_rental(
    rental_id: str, actor: Actor = Depends(current_actor), svc: TransitionAuthority = Depends(get_authority)
):
    return render(svc.submit_rental(rental_id, actor), actor)


@app.post("/rentals/{rental_id}/review")
def review_rental(
    rental_id: str,
    req: ReviewRequest,
    actor: Actor = Depends(current_actor),
    svc: TransitionAuthority = Depends(get_authority),
):
    return render(svc.review_rental(rental_id, actor, req.decision, req.reason, req.lockbox_code), actor)


@app.post("/rentals/{rental_id}/sign")
def sign_agreement(
    rental_id: str,
    req: SignAgreementRequest,
    actor: Actor = Depends(current_actor),
    svc: TransitionAuthority = Depends(get_authority),
):
    return render(svc.sign_agreement(rental_id, actor, req.purpose, req.signature_name), actor)


@app.post("/rentals/{rental_id}/checkout")
def start_checkout(
    rental_id: str, actor: Actor = Depends(current_actor), svc: TransitionAuthority = Depends(get_authority)
):
    """Open hosted checkout; the response carries the url to send the customer to."""

    return render(svc.start_checkout(rental_id, actor), actor)


@app.post("/rentals/{rental_id}/lockbox")
def release_lockbox(
    rental_id: str,
    req: LockboxRequest,
    actor: Actor = Depends(current_actor),
    svc: TransitionAuthority = Depends(get_authority),
):
    return render(svc.release_lockbox(rental_id, actor, req.lockbox_code), actor)


@app.post("/rentals/{rental_id}/pickup")
def confirm_pickup(
    rental_id: str, actor: Actor = Depends(current_actor), svc: TransitionAuthority = Depends(get_authority)
):
    return render(svc.confirm_pickup(rental_id, actor), actor)


@app.post("/rentals/{rental_id}/return")
def confirm_return(
    rental_id: str, actor: Actor = Depends(current_actor), svc: TransitionAuthority = Depends(get_authority)
):
    return render(svc.confirm_return(rental_id, actor), actor)


@app.post("/rentals/{rental_id}/damage")
def confirm_damage(
    rental_id: str,
    req: DamageRequest,
    actor: Actor = Depends(current_actor),
    svc: TransitionAuthority = Depends(get_authority),
):
    return render(svc.confirm_damage(rental_id, actor, req.confirmed, req.notes), actor)


@app.post("/rentals/{rental_id}/deposit")
def resolve_deposit(
    rental_id: str,
    req: DepositRequest,
    actor: Actor = Depends(current_actor),
    svc: TransitionAuthority = Depends(get_authority),
):
    return render(svc.resolve_deposit(rental_id, actor, req.decision, req.amount_cents, req.reason), actor)


@app.post("/rentals/{rental_id}/cancel")
def cancel_rental(
    rental_id: str,
    req: ReasonRequest,
    actor: Actor = Depends(current_actor),
    svc: TransitionAuthority = Depends(get_authority),
):
    return render(svc.cancel_rental(rental_id, actor, req.reason), actor)


@app.delete("/rentals/{rental_id}", status_code=204)
def delete_rental_draft(
    rental_id: str, actor: Actor = Depends(current_actor), svc: TransitionAuthority = Depends(get_authority)
):
    svc.delete_draft(RENTAL, rental_id, actor)


# Webhooks -------------------------------------------------------------------


@app.post("/webhooks/payments", response_model=WebhookAck)
async def payment_webhook(request: Request, svc: TransitionAuthority = Depends(get_authority)):
    """Accept a payment provider event; the response carries no resource detail.

    With a Stripe signing secret configured the body is a signed Stripe event;
    otherwise it is a normalized `WebhookEvent` from an API-key holder.
    """

    body = await request.body()
    if settings.stripe_webhook_secret:
        raw = verify_stripe_event(body, request.headers.get("stripe-signature"), settings.stripe_webhook_secret)
        event = normalize_stripe_event(raw)
        if event is None:
            return WebhookAck(result="ignored")
    else:
        identity.verify_key(request.headers.get("x-api-key"))
        try:
            event = WebhookEvent.model_validate_json(body)
        except ValidationError as exc:
            raise InvalidInput(f"malformed webhook event: {exc.error_count()} errors") from exc
    return WebhookAck(result=await run_in_threadpool(svc.receive_webhook, event))


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health check endpoint."""

    return {"ok": True}
