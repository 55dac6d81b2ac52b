"""Delivery lifecycle through the transition authority against SQLite."""

import threading

import pytest

from conftest import ADMIN, CUSTOMER, DRIVER_X, DRIVER_Y, OTHER_CUSTOMER
from fleetpay.common.errors import (
    CollaboratorUnavailable,
    Conflict,
    Forbidden,
    InvalidInput,
    NotFound,
    PaymentProviderError,
    PreconditionFailed,
)
from fleetpay.common.schemas import SYSTEM_ACTOR
from fleetpay.services.payments.schemas import WebhookEvent


def test_create_prices_the_delivery(authority, trail):
    created = authority.create_delivery(CUSTOMER, miles=10, weight_lbs=50, stops=1, rush=True)

    assert created.status == "draft"
    assert created.amount_cents == 5150
    assert created.payment_state == "none"
    assert trail(created.id) == ["delivery_created"]


def test_only_customers_create(authority):
    with pytest.raises(Forbidden):
        authority.create_delivery(DRIVER_X, miles=3, weight_lbs=5)


def test_oversized_request_is_rejected(authority):
    with pytest.raises(InvalidInput) as excinfo:
        authority.create_delivery(CUSTOMER, miles=75, weight_lbs=5)
    assert excinfo.value.reason == "SpecialRequestRequired"


def test_full_delivery_captures_exactly_once(authority, flows, photos, provider, trail):
    """Draft to completed with a $5.00 hold and one capture."""

    d = flows.new_delivery(amount_cents=500)

    d = authority.authorize_delivery_payment(d.id, CUSTOMER)
    assert (d.status, d.payment_state) == ("authorized", "authorized")
    ref = d.payment_intent_ref
    assert provider.intents[ref]["amount_cents"] == 500

    with pytest.raises(PreconditionFailed) as excinfo:
        authority.record_pickup_photo(d.id, SYSTEM_ACTOR)
    assert excinfo.value.reason == "MissingProof"

    photos.add(d.id, "pickup")
    d = authority.record_pickup_photo(d.id, SYSTEM_ACTOR)
    assert d.status == "ready_for_dispatch"

    d = authority.assign_driver(d.id, ADMIN, DRIVER_X.actor_id)
    assert (d.status, d.assignee_id) == ("assigned", "driver-x")

    with pytest.raises(Forbidden):
        authority.start_transit(d.id, DRIVER_Y)
    d = authority.start_transit(d.id, DRIVER_X)
    assert d.status == "in_transit"

    with pytest.raises(PreconditionFailed) as excinfo:
        authority.complete_delivery(d.id, DRIVER_X)
    assert excinfo.value.unmet == ("dropoff_photo",)
    assert provider.call_count("capture") == 0

    photos.add(d.id, "dropoff")
    d = authority.complete_delivery(d.id, DRIVER_X)
    assert (d.status, d.payment_state) == ("completed", "captured")
    assert d.payment_op is None
    assert provider.call_count("capture") == 1
    assert provider.intents[ref]["status"] == "succeeded"

    again = authority.complete_delivery(d.id, DRIVER_X)
    assert again.status == "completed"
    assert provider.call_count("capture") == 1

    assert trail(d.id) == [
        "payment_authorized",
        "record_pickup_photo_denied",
        "pickup_photo_recorded",
        "driver_assigned",
        "start_transit_denied",
        "transit_started",
        "complete_denied",
        "delivery_completed",
        "complete_idempotent",
    ]


def test_completion_event_records_capture(authority, flows):
    d = flows.delivery_in("completed")

    completed = [e for e in authority.audit.list_events(d.id) if e.event_type == "delivery_completed"]

    assert len(completed) == 1
    assert completed[0].actor_id == DRIVER_X.actor_id
    assert completed[0].payload["provider_called"] is True
    assert completed[0].payload["ref"] == d.payment_intent_ref


def test_concurrent_completion_captures_once(authority, flows, photos, provider):
    d = flows.delivery_in("in_transit")
    photos.add(d.id, "dropoff")
    provider.latency_seconds = 0.2

    outcomes: list = []
    barrier = threading.Barrier(2)

    def complete():
        barrier.wait()
        try:
            outcomes.append(authority.complete_delivery(d.id, DRIVER_X).status)
        except Conflict:
            outcomes.append("conflict")

    workers = [threading.Thread(target=complete) for _ in range(2)]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join()

    assert provider.call_count("capture") == 1
    assert "completed" in outcomes
    final = authority.store.load("delivery", d.id)
    assert (final.status, final.payment_state, final.payment_op) == ("completed", "captured", None)
    assert [e.event_type for e in authority.audit.list_events(d.id)].count("delivery_completed") == 1


def test_concurrent_assignment_keeps_one_driver(authority, flows):
    d = flows.delivery_in("ready_for_dispatch")
    barrier = threading.Barrier(2)
    errors: list = []

    def assign(driver_id):
        barrier.wait()
        try:
            authority.assign_driver(d.id, ADMIN, driver_id)
        except Conflict as exc:
            errors.append(exc)

    workers = [threading.Thread(target=assign, args=(driver,)) for driver in ("driver-x", "driver-y")]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join()

    assert errors == []
    final = authority.store.load("delivery", d.id)
    assert final.status == "assigned"
    assert final.assignee_id in {"driver-x", "driver-y"}
    assignments = [
        e for e in authority.audit.list_events(d.id) if e.event_type in ("driver_assigned", "driver_reassigned")
    ]
    assert sorted(e.event_type for e in assignments) == ["driver_assigned", "driver_reassigned"]
    reassigned = next(e for e in assignments if e.event_type == "driver_reassigned")
    assert reassigned.payload["driver_id"] == final.assignee_id


def test_capture_failure_leaves_delivery_in_transit(authority, flows, photos, provider, trail):
    d = flows.delivery_in("in_transit")
    photos.add(d.id, "dropoff")
    provider.fail_operations.add("capture")

    with pytest.raises(PaymentProviderError):
        authority.complete_delivery(d.id, DRIVER_X)

    stuck = authority.store.load("delivery", d.id)
    assert (stuck.status, stuck.payment_state, stuck.payment_op) == ("in_transit", "authorized", None)
    assert trail(d.id)[-1] == "complete_failed"

    provider.fail_operations.clear()
    done = authority.complete_delivery(d.id, DRIVER_X)
    assert (done.status, done.payment_state) == ("completed", "captured")


def test_photo_store_outage_is_recorded_as_failed(authority, flows, photos, provider, trail):
    d = flows.delivery_in("in_transit")
    photos.add(d.id, "dropoff")
    photos.unavailable = True

    with pytest.raises(CollaboratorUnavailable):
        authority.complete_delivery(d.id, DRIVER_X)

    still = authority.store.load("delivery", d.id)
    assert (still.status, still.payment_state) == ("in_transit", "authorized")
    assert provider.call_count("capture") == 0
    failed = authority.audit.list_events(d.id)[-1]
    assert failed.event_type == "complete_failed"
    assert failed.payload == {"operation": "photo_lookup", "error": "collaborator_unavailable", "retryable": True}

    photos.unavailable = False
    assert authority.complete_delivery(d.id, DRIVER_X).status == "completed"


def test_active_claim_blocks_a_second_operation(authority, flows, photos, trail):
    d = flows.delivery_in("in_transit")
    photos.add(d.id, "dropoff")
    authority.store.compare_and_set(d, {"payment_op": "capture", "payment_op_started_at": d.updated_at})
    authority.claim_ttl_seconds = 3600

    with pytest.raises(Conflict):
        authority.complete_delivery(d.id, DRIVER_X)
    assert trail(d.id)[-1] == "complete_conflict"


def test_expired_claim_is_taken_over(authority, flows, photos, provider):
    d = flows.delivery_in("in_transit")
    photos.add(d.id, "dropoff")
    authority.store.compare_and_set(d, {"payment_op": "capture", "payment_op_started_at": d.updated_at})
    authority.claim_ttl_seconds = 0

    done = authority.complete_delivery(d.id, DRIVER_X)

    assert (done.status, done.payment_op) == ("completed", None)
    assert provider.call_count("capture") == 1


def test_cancel_voids_the_hold(authority, flows, provider, notifier, trail):
    d = flows.delivery_in("ready_for_dispatch")
    ref = d.payment_intent_ref

    cancelled = authority.cancel_delivery(d.id, CUSTOMER, "no longer needed")

    assert (cancelled.status, cancelled.payment_state) == ("cancelled", "voided")
    assert cancelled.cancel_reason == "no longer needed"
    assert provider.intents[ref]["status"] == "canceled"
    assert trail(d.id)[-1] == "delivery_cancelled"
    assert ("cust-1", "delivery_cancelled", {"resource_id": d.id, "reason": "no longer needed"}) in notifier.sent


def test_cancel_requires_reason_and_ownership(authority, flows, trail):
    d = flows.delivery_in("authorized")

    with pytest.raises(InvalidInput):
        authority.cancel_delivery(d.id, CUSTOMER, "")
    with pytest.raises(Forbidden):
        authority.cancel_delivery(d.id, OTHER_CUSTOMER, "mine now")
    assert trail(d.id)[-2:] == ["cancel_denied", "cancel_denied"]


def test_cancel_after_completion_is_denied(authority, flows):
    d = flows.delivery_in("completed")

    with pytest.raises(PreconditionFailed) as excinfo:
        authority.cancel_delivery(d.id, ADMIN, "too late")
    assert excinfo.value.reason == "InvalidState"


def test_void_failure_keeps_delivery_open(authority, flows, provider):
    d = flows.delivery_in("assigned")
    provider.fail_operations.add("void")

    with pytest.raises(PaymentProviderError):
        authority.cancel_delivery(d.id, ADMIN, "weather")

    still = authority.store.load("delivery", d.id)
    assert (still.status, still.payment_state, still.payment_op) == ("assigned", "authorized", None)


def test_unassign_returns_to_dispatch(authority, flows, trail):
    d = flows.delivery_in("assigned")

    d = authority.unassign_driver(d.id, ADMIN)

    assert (d.status, d.assignee_id) == ("ready_for_dispatch", None)
    assert trail(d.id)[-1] == "driver_unassigned"


def test_confirm_moves_to_awaiting_pickup_photo(authority, flows, photos):
    d = flows.delivery_in("authorized")

    d = authority.confirm_delivery(d.id, CUSTOMER)
    assert d.status == "awaiting_pickup_photo"

    photos.add(d.id, "pickup")
    assert authority.record_pickup_photo(d.id, SYSTEM_ACTOR).status == "ready_for_dispatch"


def test_delete_draft(authority, flows, trail):
    d = flows.new_delivery()

    authority.delete_draft("delivery", d.id, CUSTOMER)

    with pytest.raises(NotFound):
        authority.store.load("delivery", d.id)
    assert trail(d.id) == ["draft_deleted"]
    assert [e.event_type for e in authority.list_events("delivery", d.id, ADMIN)] == ["draft_deleted"]


def test_delete_non_draft_is_denied(authority, flows):
    d = flows.delivery_in("authorized")

    with pytest.raises(PreconditionFailed) as excinfo:
        authority.delete_draft("delivery", d.id, CUSTOMER)
    assert excinfo.value.reason == "NotDraft"


def test_notification_failure_does_not_block(authority, flows, notifier):
    d = flows.delivery_in("assigned")
    notifier.fail = True

    d = authority.start_transit(d.id, DRIVER_X)

    assert d.status == "in_transit"


def test_visibility(authority, flows):
    d = flows.delivery_in("assigned")

    assert authority.get("delivery", d.id, CUSTOMER).id == d.id
    assert authority.get("delivery", d.id, DRIVER_X).id == d.id
    with pytest.raises(Forbidden):
        authority.get("delivery", d.id, DRIVER_Y)
    with pytest.raises(Forbidden):
        authority.get("delivery", d.id, OTHER_CUSTOMER)
    with pytest.raises(Forbidden):
        authority.list_events("delivery", d.id, CUSTOMER)
    with pytest.raises(NotFound):
        authority.get("delivery", "missing", ADMIN)


def test_authorization_waits_for_customer_confirmation(authority, flows, provider, trail):
    provider.confirm_immediately = False
    d = flows.new_delivery()

    pending = authority.authorize_delivery_payment(d.id, CUSTOMER)

    assert (pending.status, pending.payment_state) == ("draft", "none")
    assert pending.client_secret == f"{pending.payment_intent_ref}_secret"

    again = authority.authorize_delivery_payment(d.id, CUSTOMER)
    assert again.payment_intent_ref == pending.payment_intent_ref
    assert (provider.call_count("authorize"), provider.call_count("lookup")) == (1, 1)

    provider.confirm(pending.payment_intent_ref)
    confirmed = WebhookEvent(ref=pending.payment_intent_ref, outcome="authorized", raw_event_id="evt_auth_1")
    assert authority.receive_webhook(confirmed) == "applied"
    assert authority.receive_webhook(confirmed) == "duplicate"

    held = authority.store.load("delivery", d.id)
    assert (held.status, held.payment_state) == ("authorized", "authorized")
    assert authority.authorize_delivery_payment(d.id, CUSTOMER).status == "authorized"
    assert trail(d.id) == ["payment_pending", "payment_pending", "payment_authorized", "authorize_payment_idempotent"]


def test_cancel_withdraws_unconfirmed_authorization(authority, flows, provider):
    provider.confirm_immediately = False
    d = flows.new_delivery()
    ref = authority.authorize_delivery_payment(d.id, CUSTOMER).payment_intent_ref

    cancelled = authority.cancel_delivery(d.id, CUSTOMER, "changed my mind")

    assert (cancelled.status, cancelled.payment_state) == ("cancelled", "none")
    assert provider.intents[ref]["status"] == "canceled"


def test_lost_hold_blocks_completion_without_alerting(authority, flows, photos, provider, trail):
    d = flows.delivery_in("in_transit")
    photos.add(d.id, "dropoff")
    expired = WebhookEvent(ref=d.payment_intent_ref, outcome="canceled", raw_event_id="evt_expired")

    assert authority.receive_webhook(expired) == "applied"
    with pytest.raises(PreconditionFailed) as excinfo:
        authority.complete_delivery(d.id, DRIVER_X)

    assert excinfo.value.reason == "AuthorizationLost"
    assert provider.call_count("capture") == 0
    assert trail(d.id)[-2:] == ["payment_voided", "complete_denied"]
    assert authority.cancel_delivery(d.id, ADMIN, "hold expired").status == "cancelled"
