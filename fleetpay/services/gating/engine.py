"""Gating & verification engine.

`evaluate()` is a pure predicate over a resource snapshot: given the requested
action, the actor and the action's input fields it answers Allow or Deny. The
rules live in one table keyed by (resource kind, action) so authorization and
precondition logic can be tested without a database.

Evaluation order for a rule:

1. role, then ownership / assignment
2. pre-guards (input validation and conditions that must win over the state check)
3. idempotent "already done" check -> Allow(noop=True)
4. source-state check
5. guards
"""

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

from fleetpay.common.errors import Forbidden, InvalidInput, LifecycleError, PreconditionFailed
from fleetpay.common.schemas import Actor, DeliverySnapshot, RentalSnapshot, Snapshot
from fleetpay.common.state_machine import (
    ActorRole,
    DeliveryStatus,
    DepositStatus,
    PaymentState,
    RentalStatus,
    ResourceKind,
    VerificationStatus,
)


class Action(str, Enum):
    # shared
    CANCEL = "cancel"
    DELETE_DRAFT = "delete_draft"
    # delivery
    AUTHORIZE_PAYMENT = "authorize_payment"
    CONFIRM = "confirm"
    RECORD_PICKUP_PHOTO = "record_pickup_photo"
    ASSIGN_DRIVER = "assign_driver"
    UNASSIGN_DRIVER = "unassign_driver"
    START_TRANSIT = "start_transit"
    COMPLETE = "complete"
    # rental
    RECORD_DOCUMENTS = "record_documents"
    SUBMIT = "submit"
    REVIEW = "review"
    SIGN_AGREEMENT = "sign_agreement"
    START_CHECKOUT = "start_checkout"
    RELEASE_LOCKBOX = "release_lockbox"
    CONFIRM_PICKUP = "confirm_pickup"
    CONFIRM_RETURN = "confirm_return"
    CONFIRM_DAMAGE = "confirm_damage"
    RESOLVE_DEPOSIT = "resolve_deposit"


class DenyReason(str, Enum):
    ROLE_NOT_PERMITTED = "RoleNotPermitted"
    NOT_OWNER = "NotOwner"
    NOT_ASSIGNEE = "NotAssignee"
    UNSUPPORTED_ACTION = "UnsupportedAction"
    MISSING_FIELD = "MissingField"
    MISSING_REASON = "MissingReason"
    INVALID_PURPOSE = "InvalidPurpose"
    INVALID_DECISION = "InvalidDecision"
    INVALID_WITHHELD_AMOUNT = "InvalidWithheldAmount"
    INVALID_STATE = "InvalidState"
    NOT_DRAFT = "NotDraft"
    MISSING_PROOF = "MissingProof"
    AUTHORIZATION_LOST = "AuthorizationLost"
    DOCS_INCOMPLETE = "DocsIncomplete"
    VERIFICATION_NOT_APPROVED = "VerificationNotApproved"
    AGREEMENT_NOT_SIGNED = "AgreementNotSigned"
    NOT_PAID = "NotPaid"
    PICKUP_NOT_ALLOWED = "PickupNotAllowed"
    PICKUP_NOT_CONFIRMED = "PickupNotConfirmed"
    RETURN_NOT_CONFIRMED = "ReturnNotConfirmed"
    DAMAGE_NOT_CONFIRMED = "DamageNotConfirmed"
    ALREADY_RESOLVED = "AlreadyResolved"


FORBIDDEN_REASONS = {DenyReason.ROLE_NOT_PERMITTED, DenyReason.NOT_OWNER, DenyReason.NOT_ASSIGNEE}
INVALID_INPUT_REASONS = {
    DenyReason.UNSUPPORTED_ACTION,
    DenyReason.MISSING_FIELD,
    DenyReason.MISSING_REASON,
    DenyReason.INVALID_PURPOSE,
    DenyReason.INVALID_DECISION,
    DenyReason.INVALID_WITHHELD_AMOUNT,
}

RENTAL_PURPOSES = frozenset({"personal", "rideshare"})
REVIEW_DECISIONS = frozenset({"approve", "deny"})
DEPOSIT_DECISIONS = frozenset({DepositStatus.REFUNDED.value, DepositStatus.WITHHELD.value})


@dataclass(frozen=True)
class Allow:
    noop: bool = False


@dataclass(frozen=True)
class Deny:
    reason: DenyReason
    unmet: tuple[str, ...] = ()

    def to_error(self) -> LifecycleError:
        message = self.reason.value if not self.unmet else f"{self.reason.value}: {', '.join(self.unmet)}"
        if self.reason in FORBIDDEN_REASONS:
            return Forbidden(message, reason=self.reason.value)
        if self.reason in INVALID_INPUT_REASONS:
            return InvalidInput(message, reason=self.reason.value, unmet=self.unmet)
        return PreconditionFailed(message, reason=self.reason.value, unmet=self.unmet)


Decision = Allow | Deny
Guard = Callable[[Any, Mapping[str, Any]], Deny | None]


@dataclass(frozen=True)
class Rule:
    roles: frozenset[str]
    from_states: frozenset[str]
    owner_roles: frozenset[str] = frozenset()
    assignee_roles: frozenset[str] = frozenset()
    pre_guards: tuple[Guard, ...] = ()
    already_done: Callable[[Any, Mapping[str, Any]], bool] | None = None
    guards: tuple[Guard, ...] = ()
    state_reason: DenyReason = DenyReason.INVALID_STATE


def _roles(*roles: ActorRole) -> frozenset[str]:
    return frozenset(role.value for role in roles)


def _states(*states: Enum) -> frozenset[str]:
    return frozenset(state.value for state in states)


def _blank(value: Any) -> bool:
    return value is None or not str(value).strip()


# Guards ---------------------------------------------------------------------


def require_field(name: str) -> Guard:
    def guard(_: Any, params: Mapping[str, Any]) -> Deny | None:
        if _blank(params.get(name)):
            return Deny(DenyReason.MISSING_FIELD, (name,))
        return None

    return guard


def require_reason(_: Any, params: Mapping[str, Any]) -> Deny | None:
    if _blank(params.get("reason")):
        return Deny(DenyReason.MISSING_REASON)
    return None


def require_dropoff_proof(snapshot: DeliverySnapshot, _: Mapping[str, Any]) -> Deny | None:
    if not snapshot.dropoff_photo_present:
        return Deny(DenyReason.MISSING_PROOF, ("dropoff_photo",))
    return None


def require_live_authorization(snapshot: DeliverySnapshot, _: Mapping[str, Any]) -> Deny | None:
    if snapshot.payment_state == PaymentState.VOIDED.value:
        return Deny(DenyReason.AUTHORIZATION_LOST)
    return None


def require_pickup_photo(_: Any, params: Mapping[str, Any]) -> Deny | None:
    if not params.get("pickup_photo_present"):
        return Deny(DenyReason.MISSING_PROOF, ("pickup_photo",))
    return None


def require_docs(snapshot: RentalSnapshot, _: Mapping[str, Any]) -> Deny | None:
    if not snapshot.docs_complete:
        return Deny(DenyReason.DOCS_INCOMPLETE)
    return None


def require_review_decision(_: Any, params: Mapping[str, Any]) -> Deny | None:
    decision = params.get("decision")
    if decision not in REVIEW_DECISIONS:
        return Deny(DenyReason.INVALID_DECISION)
    if decision == "deny" and _blank(params.get("reason")):
        return Deny(DenyReason.MISSING_REASON)
    return None


def require_purpose(_: Any, params: Mapping[str, Any]) -> Deny | None:
    if params.get("purpose") not in RENTAL_PURPOSES:
        return Deny(DenyReason.INVALID_PURPOSE)
    return None


def require_verification(snapshot: RentalSnapshot, _: Mapping[str, Any]) -> Deny | None:
    if snapshot.verification_status != VerificationStatus.APPROVED.value:
        return Deny(DenyReason.VERIFICATION_NOT_APPROVED)
    return None


def require_agreement(snapshot: RentalSnapshot, _: Mapping[str, Any]) -> Deny | None:
    if not snapshot.agreement_signed:
        return Deny(DenyReason.AGREEMENT_NOT_SIGNED)
    return None


def require_paid(snapshot: RentalSnapshot, _: Mapping[str, Any]) -> Deny | None:
    if not snapshot.paid:
        return Deny(DenyReason.NOT_PAID)
    return None


def pickup_conditions(snapshot: RentalSnapshot, _: Mapping[str, Any]) -> Deny | None:
    unmet = []
    if snapshot.verification_status != VerificationStatus.APPROVED.value:
        unmet.append("verification_approved")
    if not snapshot.paid:
        unmet.append("paid")
    if snapshot.lockbox_released_at is None:
        unmet.append("lockbox_released")
    if unmet:
        return Deny(DenyReason.PICKUP_NOT_ALLOWED, tuple(unmet))
    return None


def require_pickup_confirmed(snapshot: RentalSnapshot, _: Mapping[str, Any]) -> Deny | None:
    if snapshot.pickup_confirmed_at is None:
        return Deny(DenyReason.PICKUP_NOT_CONFIRMED)
    return None


def require_return_confirmed(snapshot: RentalSnapshot, _: Mapping[str, Any]) -> Deny | None:
    if snapshot.return_confirmed_at is None:
        return Deny(DenyReason.RETURN_NOT_CONFIRMED)
    return None


def deposit_unresolved(snapshot: RentalSnapshot, _: Mapping[str, Any]) -> Deny | None:
    if snapshot.deposit_refund_status in DEPOSIT_DECISIONS:
        return Deny(DenyReason.ALREADY_RESOLVED)
    return None


def require_deposit_decision(snapshot: RentalSnapshot, params: Mapping[str, Any]) -> Deny | None:
    decision = params.get("decision")
    if decision not in DEPOSIT_DECISIONS:
        return Deny(DenyReason.INVALID_DECISION)
    if decision == DepositStatus.WITHHELD.value:
        if _blank(params.get("reason")):
            return Deny(DenyReason.MISSING_REASON)
        amount = params.get("amount_cents")
        if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
            return Deny(DenyReason.INVALID_WITHHELD_AMOUNT)
        if snapshot.deposit_cents and amount > snapshot.deposit_cents:
            return Deny(DenyReason.INVALID_WITHHELD_AMOUNT)
    return None


def withheld_needs_damage(snapshot: RentalSnapshot, params: Mapping[str, Any]) -> Deny | None:
    if params.get("decision") == DepositStatus.WITHHELD.value and not snapshot.damage_confirmed:
        return Deny(DenyReason.DAMAGE_NOT_CONFIRMED)
    return None


# Rule table -----------------------------------------------------------------

CUSTOMER, DRIVER, ADMIN, SYSTEM = ActorRole.CUSTOMER, ActorRole.DRIVER, ActorRole.ADMIN, ActorRole.SYSTEM
D, R = DeliveryStatus, RentalStatus

DELIVERY_OPEN_STATES = _states(
    D.DRAFT, D.AUTHORIZED, D.AWAITING_PICKUP_PHOTO, D.READY_FOR_DISPATCH, D.ASSIGNED, D.IN_TRANSIT
)
RENTAL_CANCELLABLE_STATES = _states(
    R.DRAFT, R.SUBMITTED, R.APPROVED, R.DENIED, R.AWAITING_PAYMENT, R.ACTIVE
)

DELIVERY_RULES: dict[Action, Rule] = {
    Action.AUTHORIZE_PAYMENT: Rule(
        roles=_roles(SYSTEM, CUSTOMER),
        owner_roles=_roles(CUSTOMER),
        already_done=lambda s, _: s.payment_intent_ref is not None and s.payment_state != "none",
        from_states=_states(D.DRAFT),
    ),
    Action.CONFIRM: Rule(
        roles=_roles(SYSTEM, CUSTOMER),
        owner_roles=_roles(CUSTOMER),
        already_done=lambda s, _: s.status == D.AWAITING_PICKUP_PHOTO.value,
        from_states=_states(D.AUTHORIZED),
    ),
    Action.RECORD_PICKUP_PHOTO: Rule(
        roles=_roles(SYSTEM),
        already_done=lambda s, _: s.status == D.READY_FOR_DISPATCH.value,
        from_states=_states(D.AUTHORIZED, D.AWAITING_PICKUP_PHOTO),
        guards=(require_pickup_photo,),
    ),
    Action.ASSIGN_DRIVER: Rule(
        roles=_roles(ADMIN),
        pre_guards=(require_field("driver_id"),),
        from_states=_states(D.READY_FOR_DISPATCH, D.ASSIGNED),
    ),
    Action.UNASSIGN_DRIVER: Rule(
        roles=_roles(ADMIN),
        from_states=_states(D.ASSIGNED),
    ),
    Action.START_TRANSIT: Rule(
        roles=_roles(DRIVER),
        assignee_roles=_roles(DRIVER),
        already_done=lambda s, _: s.status == D.IN_TRANSIT.value,
        from_states=_states(D.ASSIGNED),
    ),
    Action.COMPLETE: Rule(
        roles=_roles(DRIVER, ADMIN),
        assignee_roles=_roles(DRIVER),
        already_done=lambda s, _: s.status == D.COMPLETED.value,
        from_states=_states(D.IN_TRANSIT),
        guards=(require_dropoff_proof, require_live_authorization),
    ),
    Action.CANCEL: Rule(
        roles=_roles(CUSTOMER, ADMIN),
        owner_roles=_roles(CUSTOMER),
        pre_guards=(require_reason,),
        from_states=DELIVERY_OPEN_STATES,
    ),
    Action.DELETE_DRAFT: Rule(
        roles=_roles(CUSTOMER),
        owner_roles=_roles(CUSTOMER),
        from_states=_states(D.DRAFT),
        state_reason=DenyReason.NOT_DRAFT,
    ),
}

RENTAL_RULES: dict[Action, Rule] = {
    Action.RECORD_DOCUMENTS: Rule(
        roles=_roles(SYSTEM, CUSTOMER),
        owner_roles=_roles(CUSTOMER),
        already_done=lambda s, _: s.docs_complete,
        from_states=_states(R.DRAFT, R.SUBMITTED),
    ),
    Action.SUBMIT: Rule(
        roles=_roles(CUSTOMER),
        owner_roles=_roles(CUSTOMER),
        already_done=lambda s, _: s.status == R.SUBMITTED.value,
        from_states=_states(R.DRAFT),
        guards=(require_docs,),
    ),
    Action.REVIEW: Rule(
        roles=_roles(ADMIN),
        pre_guards=(require_review_decision,),
        from_states=_states(R.SUBMITTED),
    ),
    Action.SIGN_AGREEMENT: Rule(
        roles=_roles(CUSTOMER),
        owner_roles=_roles(CUSTOMER),
        pre_guards=(require_purpose, require_verification),
        already_done=lambda s, _: s.agreement_signed,
        from_states=_states(R.APPROVED),
    ),
    Action.START_CHECKOUT: Rule(
        roles=_roles(CUSTOMER),
        owner_roles=_roles(CUSTOMER),
        pre_guards=(require_agreement,),
        already_done=lambda s, _: s.paid or (s.payment_intent_ref is not None and s.payment_state != "none"),
        from_states=_states(R.AWAITING_PAYMENT),
    ),
    Action.RELEASE_LOCKBOX: Rule(
        roles=_roles(ADMIN),
        pre_guards=(require_paid,),
        already_done=lambda s, _: s.lockbox_released_at is not None,
        from_states=_states(*R) - _states(R.CANCELLED),
    ),
    Action.CONFIRM_PICKUP: Rule(
        roles=_roles(CUSTOMER),
        owner_roles=_roles(CUSTOMER),
        already_done=lambda s, _: s.pickup_confirmed_at is not None,
        pre_guards=(pickup_conditions,),
        from_states=_states(R.ACTIVE),
    ),
    Action.CONFIRM_RETURN: Rule(
        roles=_roles(ADMIN),
        pre_guards=(require_pickup_confirmed,),
        already_done=lambda s, _: s.return_confirmed_at is not None,
        from_states=_states(R.PICKUP_CONFIRMED),
    ),
    Action.CONFIRM_DAMAGE: Rule(
        roles=_roles(ADMIN),
        pre_guards=(deposit_unresolved, require_return_confirmed),
        from_states=_states(R.COMPLETED),
    ),
    Action.RESOLVE_DEPOSIT: Rule(
        roles=_roles(ADMIN),
        pre_guards=(deposit_unresolved, require_deposit_decision, require_return_confirmed),
        from_states=_states(R.COMPLETED),
        guards=(withheld_needs_damage,),
    ),
    Action.CANCEL: Rule(
        roles=_roles(CUSTOMER, ADMIN),
        owner_roles=_roles(CUSTOMER),
        pre_guards=(require_reason,),
        from_states=RENTAL_CANCELLABLE_STATES,
    ),
    Action.DELETE_DRAFT: Rule(
        roles=_roles(CUSTOMER),
        owner_roles=_roles(CUSTOMER),
        from_states=_states(R.DRAFT),
        state_reason=DenyReason.NOT_DRAFT,
    ),
}

RULES: dict[str, dict[Action, Rule]] = {
    ResourceKind.DELIVERY.value: DELIVERY_RULES,
    ResourceKind.RENTAL.value: RENTAL_RULES,
}


def evaluate(
    snapshot: Snapshot,
    action: Action,
    actor: Actor,
    params: Mapping[str, Any] | None = None,
) -> Decision:
    """Decide whether `actor` may apply `action` to the resource as it is now."""

    params = params or {}
    rule = RULES[snapshot.kind].get(action)
    if rule is None:
        return Deny(DenyReason.UNSUPPORTED_ACTION)

    if actor.role not in rule.roles:
        return Deny(DenyReason.ROLE_NOT_PERMITTED)
    if actor.role in rule.owner_roles and actor.actor_id != snapshot.owner_id:
        return Deny(DenyReason.NOT_OWNER)
    if actor.role in rule.assignee_roles and actor.actor_id != getattr(snapshot, "assignee_id", None):
        return Deny(DenyReason.NOT_ASSIGNEE)

    for guard in rule.pre_guards:
        denial = guard(snapshot, params)
        if denial is not None:
            return denial

    if rule.already_done is not None and rule.already_done(snapshot, params):
        return Allow(noop=True)

    if snapshot.status not in rule.from_states:
        return Deny(rule.state_reason)

    for guard in rule.guards:
        denial = guard(snapshot, params)
        if denial is not None:
            return denial
    return Allow()
