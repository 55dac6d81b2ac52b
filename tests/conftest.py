"""Shared fixtures: SQLite-backed store, fake collaborators and flow helpers."""

import os

os.environ.setdefault("POSTGRES_DSN", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("PAYMENT_PROVIDER", "simulated")
os.environ.setdefault("API_KEY", "test-key")
os.environ.setdefault("OTEL_EXPORTER_OTLP_ENDPOINT", "")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from fleetpay.common.db import Base
from fleetpay.common.errors import CollaboratorUnavailable
from fleetpay.common.schemas import Actor
from fleetpay.services.audit.service import AuditLog
from fleetpay.services.lifecycle.service import TransitionAuthority
from fleetpay.services.lifecycle.store import ResourceStore
from fleetpay.services.payments.provider import SimulatedPaymentProvider
from fleetpay.services.payments.schemas import WebhookEvent
from fleetpay.services.payments.service import PaymentOrchestrator

CUSTOMER = Actor(actor_id="cust-1", role="customer")
OTHER_CUSTOMER = Actor(actor_id="cust-2", role="customer")
ADMIN = Actor(actor_id="admin-1", role="admin")
DRIVER_X = Actor(actor_id="driver-x", role="driver")
DRIVER_Y = Actor(actor_id="driver-y", role="driver")


class InMemoryPhotoStore:
    def __init__(self) -> None:
        self.photos: set[tuple[str, str]] = set()
        self.unavailable = False

    def add(self, resource_id: str, phase: str) -> None:
        self.photos.add((resource_id, phase))

    def has_photo(self, resource_id: str, phase: str) -> bool:
        if self.unavailable:
            raise CollaboratorUnavailable("photo store timed out")
        return (resource_id, phase) in self.photos


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str, dict]] = []
        self.fail = False

    def notify(self, recipient: str, template: str, data: dict) -> None:
        if self.fail:
            raise RuntimeError("notification service down")
        self.sent.append((recipient, template, data))


@pytest.fixture
def session_factory(tmp_path):
    """File-backed SQLite so worker threads share one database."""

    engine = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'lifecycle.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def provider():
    return SimulatedPaymentProvider()


@pytest.fixture
def photos():
    return InMemoryPhotoStore()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def audit(session_factory):
    return AuditLog(session_factory, service_name="test", retry_attempts=0)


@pytest.fixture
def authority(session_factory, provider, photos, notifier, audit):
    return TransitionAuthority(
        store=ResourceStore(session_factory, service_name="test"),
        audit=audit,
        payments=PaymentOrchestrator(provider, service_name="test"),
        photos=photos,
        notifier=notifier,
        service_name="test",
        max_retries=5,
    )


class Flows:
    """Drive resources into a given state through the public operations."""

    def __init__(self, authority: TransitionAuthority, photos: InMemoryPhotoStore) -> None:
        self.authority = authority
        self.photos = photos

    def new_delivery(self, amount_cents: int = 500, owner: Actor = CUSTOMER):
        return self.authority.store.insert(
            "delivery",
            {
                "owner_id": owner.actor_id,
                "amount_cents": amount_cents,
                "currency": "usd",
                "miles": 3.0,
                "weight_lbs": 10.0,
            },
        )

    def delivery_in(self, status: str, driver: Actor = DRIVER_X):
        a = self.authority
        d = self.new_delivery()
        if status == "draft":
            return d
        d = a.authorize_delivery_payment(d.id, CUSTOMER)
        if status == "authorized":
            return d
        self.photos.add(d.id, "pickup")
        d = a.record_pickup_photo(d.id, Actor(actor_id=None, role="system"))
        if status == "ready_for_dispatch":
            return d
        d = a.assign_driver(d.id, ADMIN, driver.actor_id)
        if status == "assigned":
            return d
        d = a.start_transit(d.id, driver)
        if status == "in_transit":
            return d
        self.photos.add(d.id, "dropoff")
        return a.complete_delivery(d.id, driver)

    def new_rental(self, rate_cents: int = 8000, deposit_cents: int = 20000):
        return self.authority.create_rental(CUSTOMER, rate_cents=rate_cents, deposit_cents=deposit_cents)

    def pay(self, rental_id: str, event_id: str = "evt_paid_1"):
        rental = self.authority.store.load("rental", rental_id)
        return self.authority.receive_webhook(
            WebhookEvent(ref=rental.payment_intent_ref, outcome="succeeded", raw_event_id=event_id)
        )

    def rental_in(self, status: str):
        a = self.authority
        r = self.new_rental()
        if status == "draft":
            return r
        a.record_documents(r.id, CUSTOMER)
        r = a.submit_rental(r.id, CUSTOMER)
        if status == "submitted":
            return r
        r = a.review_rental(r.id, ADMIN, "approve")
        if status == "approved":
            return r
        r = a.sign_agreement(r.id, CUSTOMER, "personal", "Pat Customer")
        if status == "awaiting_payment":
            return r
        r = a.start_checkout(r.id, CUSTOMER)
        if status == "checkout_started":
            return r
        self.pay(r.id)
        r = a.release_lockbox(r.id, ADMIN)
        if status == "active":
            return r
        r = a.confirm_pickup(r.id, CUSTOMER)
        if status == "pickup_confirmed":
            return r
        return a.confirm_return(r.id, ADMIN)


@pytest.fixture
def flows(authority, photos):
    return Flows(authority, photos)


def event_types(authority: TransitionAuthority, resource_id: str) -> list[str]:
    return [event.event_type for event in authority.audit.list_events(resource_id)]


@pytest.fixture
def trail(authority):
    return lambda resource_id: event_types(authority, resource_id)
