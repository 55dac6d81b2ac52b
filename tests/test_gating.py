"""Gating engine: pure predicate checks over snapshots, no database."""

from datetime import datetime, timezone
from itertools import product

import pytest

from fleetpay.common.errors import Forbidden, InvalidInput, PreconditionFailed
from fleetpay.common.schemas import SYSTEM_ACTOR, Actor, DeliverySnapshot, RentalSnapshot
from fleetpay.services.gating.engine import Action, Allow, Deny, DenyReason, evaluate

OWNER = Actor(actor_id="cust-1", role="customer")
STRANGER = Actor(actor_id="cust-9", role="customer")
ADMIN = Actor(actor_id="admin-1", role="admin")
DRIVER_X = Actor(actor_id="driver-x", role="driver")
DRIVER_Y = Actor(actor_id="driver-y", role="driver")
NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)


def delivery(**overrides) -> DeliverySnapshot:
    base = {
        "id": "d-1",
        "status": "draft",
        "owner_id": "cust-1",
        "state_version": 0,
        "amount_cents": 500,
        "currency": "usd",
    }
    return DeliverySnapshot(**{**base, **overrides})


def rental(**overrides) -> RentalSnapshot:
    base = {
        "id": "r-1",
        "status": "draft",
        "owner_id": "cust-1",
        "state_version": 0,
        "amount_cents": 28000,
        "currency": "usd",
        "rate_cents": 8000,
        "deposit_cents": 20000,
    }
    return RentalSnapshot(**{**base, **overrides})


def test_complete_requires_dropoff_proof():
    snapshot = delivery(status="in_transit", assignee_id="driver-x", payment_state="authorized")

    decision = evaluate(snapshot, Action.COMPLETE, DRIVER_X)

    assert decision == Deny(DenyReason.MISSING_PROOF, ("dropoff_photo",))
    assert isinstance(decision.to_error(), PreconditionFailed)


def test_complete_with_proof_allowed_and_idempotent_once_completed():
    snapshot = delivery(status="in_transit", assignee_id="driver-x", dropoff_photo_present=True)
    assert evaluate(snapshot, Action.COMPLETE, DRIVER_X) == Allow()

    done = delivery(status="completed", assignee_id="driver-x")
    assert evaluate(done, Action.COMPLETE, DRIVER_X) == Allow(noop=True)


def test_only_the_assigned_driver_may_start_or_complete():
    snapshot = delivery(status="assigned", assignee_id="driver-x")

    decision = evaluate(snapshot, Action.START_TRANSIT, DRIVER_Y)

    assert decision.reason == DenyReason.NOT_ASSIGNEE
    assert isinstance(decision.to_error(), Forbidden)


def test_admin_may_complete_any_delivery():
    snapshot = delivery(status="in_transit", assignee_id="driver-x", dropoff_photo_present=True)
    assert evaluate(snapshot, Action.COMPLETE, ADMIN) == Allow()


def test_pickup_photo_is_system_only():
    snapshot = delivery(status="authorized")

    assert evaluate(snapshot, Action.RECORD_PICKUP_PHOTO, OWNER).reason == DenyReason.ROLE_NOT_PERMITTED
    assert evaluate(snapshot, Action.RECORD_PICKUP_PHOTO, SYSTEM_ACTOR).reason == DenyReason.MISSING_PROOF
    assert evaluate(snapshot, Action.RECORD_PICKUP_PHOTO, SYSTEM_ACTOR, {"pickup_photo_present": True}) == Allow()


def test_assign_requires_driver_id_and_allows_reassignment():
    ready = delivery(status="ready_for_dispatch")
    assigned = delivery(status="assigned", assignee_id="driver-x")

    missing = evaluate(ready, Action.ASSIGN_DRIVER, ADMIN)
    assert missing == Deny(DenyReason.MISSING_FIELD, ("driver_id",))
    assert isinstance(missing.to_error(), InvalidInput)
    assert evaluate(assigned, Action.ASSIGN_DRIVER, ADMIN, {"driver_id": "driver-y"}) == Allow()


def test_cancel_needs_reason_and_open_state():
    open_delivery = delivery(status="assigned")

    assert evaluate(open_delivery, Action.CANCEL, OWNER, {"reason": "  "}).reason == DenyReason.MISSING_REASON
    assert evaluate(open_delivery, Action.CANCEL, OWNER, {"reason": "changed plans"}) == Allow()
    assert evaluate(open_delivery, Action.CANCEL, STRANGER, {"reason": "x"}).reason == DenyReason.NOT_OWNER
    closed = delivery(status="completed")
    assert evaluate(closed, Action.CANCEL, ADMIN, {"reason": "x"}).reason == DenyReason.INVALID_STATE


@pytest.mark.parametrize("kind_factory", [delivery, rental])
def test_delete_draft_owner_only_and_draft_only(kind_factory):
    assert evaluate(kind_factory(), Action.DELETE_DRAFT, OWNER) == Allow()
    assert evaluate(kind_factory(), Action.DELETE_DRAFT, STRANGER).reason == DenyReason.NOT_OWNER
    submitted = kind_factory(status="submitted" if kind_factory is rental else "authorized")
    assert evaluate(submitted, Action.DELETE_DRAFT, OWNER).reason == DenyReason.NOT_DRAFT


def test_unsupported_action_for_kind():
    decision = evaluate(rental(), Action.START_TRANSIT, OWNER)
    assert decision.reason == DenyReason.UNSUPPORTED_ACTION


def test_sign_agreement_requires_approved_verification():
    pending = rental(status="submitted", verification_status="pending")
    approved = rental(status="approved", verification_status="approved")

    assert evaluate(pending, Action.SIGN_AGREEMENT, OWNER, {"purpose": "personal"}).reason == (
        DenyReason.VERIFICATION_NOT_APPROVED
    )
    assert evaluate(approved, Action.SIGN_AGREEMENT, OWNER, {"purpose": "racing"}).reason == (
        DenyReason.INVALID_PURPOSE
    )
    assert evaluate(approved, Action.SIGN_AGREEMENT, OWNER, {"purpose": "rideshare"}) == Allow()


def test_review_denial_requires_reason():
    submitted = rental(status="submitted")

    assert evaluate(submitted, Action.REVIEW, ADMIN, {"decision": "deny"}).reason == DenyReason.MISSING_REASON
    assert evaluate(submitted, Action.REVIEW, ADMIN, {"decision": "maybe"}).reason == DenyReason.INVALID_DECISION
    assert evaluate(submitted, Action.REVIEW, ADMIN, {"decision": "deny", "reason": "expired license"}) == Allow()
    assert evaluate(submitted, Action.REVIEW, OWNER, {"decision": "approve"}).reason == (
        DenyReason.ROLE_NOT_PERMITTED
    )


def test_release_lockbox_requires_payment():
    unpaid = rental(status="awaiting_payment")
    paid = rental(status="active", paid=True)

    assert evaluate(unpaid, Action.RELEASE_LOCKBOX, ADMIN).reason == DenyReason.NOT_PAID
    assert evaluate(paid, Action.RELEASE_LOCKBOX, ADMIN) == Allow()
    assert evaluate(paid.model_copy(update={"lockbox_released_at": NOW}), Action.RELEASE_LOCKBOX, ADMIN) == (
        Allow(noop=True)
    )


@pytest.mark.parametrize(
    ("verified", "paid", "released"),
    [combo for combo in product([False, True], repeat=3) if not all(combo)],
)
def test_pickup_denied_for_every_incomplete_combination(verified, paid, released):
    snapshot = rental(
        status="active",
        verification_status="approved" if verified else "pending",
        paid=paid,
        lockbox_released_at=NOW if released else None,
    )

    decision = evaluate(snapshot, Action.CONFIRM_PICKUP, OWNER)

    expected_unmet = tuple(
        name
        for name, met in (("verification_approved", verified), ("paid", paid), ("lockbox_released", released))
        if not met
    )
    assert decision == Deny(DenyReason.PICKUP_NOT_ALLOWED, expected_unmet)


def test_pickup_allowed_when_all_conditions_hold_and_idempotent_after():
    ready = rental(status="active", verification_status="approved", paid=True, lockbox_released_at=NOW)

    assert evaluate(ready, Action.CONFIRM_PICKUP, OWNER) == Allow()
    confirmed = ready.model_copy(update={"status": "pickup_confirmed", "pickup_confirmed_at": NOW})
    assert evaluate(confirmed, Action.CONFIRM_PICKUP, OWNER) == Allow(noop=True)


def test_deposit_resolution_rules():
    returned = rental(status="completed", return_confirmed_at=NOW, deposit_refund_status="pending")

    assert evaluate(returned, Action.RESOLVE_DEPOSIT, ADMIN, {"decision": "refunded"}) == Allow()
    assert evaluate(returned, Action.RESOLVE_DEPOSIT, ADMIN, {"decision": "withheld", "amount_cents": 500}).reason == (
        DenyReason.MISSING_REASON
    )
    assert evaluate(
        returned, Action.RESOLVE_DEPOSIT, ADMIN, {"decision": "withheld", "reason": "dent", "amount_cents": 0}
    ).reason == DenyReason.INVALID_WITHHELD_AMOUNT
    assert evaluate(
        returned, Action.RESOLVE_DEPOSIT, ADMIN, {"decision": "withheld", "reason": "dent", "amount_cents": 99999}
    ).reason == DenyReason.INVALID_WITHHELD_AMOUNT
    assert evaluate(
        returned, Action.RESOLVE_DEPOSIT, ADMIN, {"decision": "withheld", "reason": "dent", "amount_cents": 500}
    ).reason == DenyReason.DAMAGE_NOT_CONFIRMED

    damaged = returned.model_copy(update={"damage_confirmed": True})
    assert evaluate(
        damaged, Action.RESOLVE_DEPOSIT, ADMIN, {"decision": "withheld", "reason": "dent", "amount_cents": 500}
    ) == Allow()


@pytest.mark.parametrize("resolved", ["refunded", "withheld"])
def test_deposit_resolution_is_terminal(resolved):
    snapshot = rental(status="deposit_resolved", return_confirmed_at=NOW, deposit_refund_status=resolved)

    decision = evaluate(snapshot, Action.RESOLVE_DEPOSIT, ADMIN, {"decision": "refunded"})

    assert decision.reason == DenyReason.ALREADY_RESOLVED
    assert isinstance(decision.to_error(), PreconditionFailed)
    assert evaluate(snapshot, Action.CONFIRM_DAMAGE, ADMIN).reason == DenyReason.ALREADY_RESOLVED


def test_submit_requires_documents():
    assert evaluate(rental(), Action.SUBMIT, OWNER).reason == DenyReason.DOCS_INCOMPLETE
    assert evaluate(rental(docs_complete=True), Action.SUBMIT, OWNER) == Allow()
