"""Audit log recording, ordering and failure handling."""

from datetime import datetime, timezone

from prometheus_client import REGISTRY

from conftest import ADMIN, CUSTOMER
from fleetpay.common.config import CommonSettings
from fleetpay.common.schemas import SYSTEM_ACTOR
from fleetpay.common.startup import redacted_config
from fleetpay.services.audit.service import AuditLog


def test_events_come_back_in_recording_order(audit):
    audit.record("d-1", CUSTOMER, "delivery_created", {"amount_cents": 500}, kind="delivery")
    audit.record("d-1", SYSTEM_ACTOR, "payment_authorized", {"ref": "sim_pi_1"}, kind="delivery")
    audit.record("d-2", ADMIN, "delivery_created", kind="delivery")
    audit.record("d-1", ADMIN, "driver_assigned", {"driver_id": "driver-x"}, kind="delivery")

    events = audit.list_events("d-1")

    assert [e.event_type for e in events] == ["delivery_created", "payment_authorized", "driver_assigned"]
    assert events[0].actor_id == "cust-1"
    assert events[0].payload == {"amount_cents": 500}
    assert (events[1].actor_id, events[1].actor_role) == (None, "system")
    assert len({e.event_id for e in events}) == 3


def test_payload_values_are_stored_as_json(audit):
    paid_at = datetime(2026, 3, 1, 12, 30, tzinfo=timezone.utc)

    audit.record("r-1", ADMIN, "payment_completed", {"paid_at": paid_at, "unmet": ("paid",)}, kind="rental")

    payload = audit.list_events("r-1")[0].payload
    assert payload == {"paid_at": "2026-03-01 12:30:00+00:00", "unmet": ["paid"]}


def test_unknown_resource_has_empty_trail(audit):
    assert audit.list_events("nope") == []


def test_failed_write_is_counted_not_raised():
    calls = []

    def broken_session():
        calls.append(1)
        raise RuntimeError("database unavailable")

    before = REGISTRY.get_sample_value("audit_write_failures_total", {"service": "audit-broken"}) or 0.0
    log = AuditLog(broken_session, service_name="audit-broken", retry_attempts=2)

    assert log.record("d-1", CUSTOMER, "delivery_created", kind="delivery") is False
    assert len(calls) == 3
    after = REGISTRY.get_sample_value("audit_write_failures_total", {"service": "audit-broken"})
    assert after == before + 1


def test_startup_config_redacts_secrets():
    config = CommonSettings(stripe_secret_key="sk_test_123", api_key="", payment_provider="simulated")

    values = redacted_config(config, ["stripe_secret_key", "api_key", "payment_provider", "postgres_dsn"])

    assert values == {
        "stripe_secret_key": "<redacted>",
        "api_key": "<unset>",
        "payment_provider": "simulated",
        "postgres_dsn": "<redacted>",
    }
