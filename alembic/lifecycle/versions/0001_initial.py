"""initial lifecycle schema

Revision ID: 0001_lifecycle
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_lifecycle"
down_revision = None
branch_labels = None
depends_on = None


def _resource_columns() -> list[sa.Column]:
    return [
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("owner_id", sa.String(), nullable=False),
        sa.Column("state_version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("payment_intent_ref", sa.String(), nullable=True),
        sa.Column("payment_state", sa.String(), nullable=False, server_default="none"),
        sa.Column("payment_op", sa.String(), nullable=True),
        sa.Column("payment_op_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "deliveries",
        *_resource_columns(),
        sa.Column("assignee_id", sa.String(), nullable=True),
        sa.Column("miles", sa.Float(), nullable=False),
        sa.Column("weight_lbs", sa.Float(), nullable=False),
        sa.Column("stops", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("rush", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("signature_required", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("in_transit_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_reason", sa.String(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("payment_intent_ref", name="uq_deliveries_payment_intent_ref"),
    )
    op.create_index("ix_deliveries_status", "deliveries", ["status"])
    op.create_index("ix_deliveries_owner_id", "deliveries", ["owner_id"])
    op.create_index("ix_deliveries_assignee_id", "deliveries", ["assignee_id"])

    op.create_table(
        "rentals",
        *_resource_columns(),
        sa.Column("purpose", sa.String(), nullable=True),
        sa.Column("rate_cents", sa.Integer(), nullable=False),
        sa.Column("deposit_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("verification_status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("verification_denial_reason", sa.String(), nullable=True),
        sa.Column("docs_complete", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("agreement_signed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("signature_name", sa.String(), nullable=True),
        sa.Column("paid", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("lockbox_code", sa.String(), nullable=True),
        sa.Column("lockbox_released_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("pickup_confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("return_confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("damage_confirmed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("damage_notes", sa.String(), nullable=True),
        sa.Column("deposit_refund_status", sa.String(), nullable=False, server_default="none"),
        sa.Column("deposit_withheld_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("deposit_reason", sa.String(), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_reason", sa.String(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("payment_intent_ref", name="uq_rentals_payment_intent_ref"),
    )
    op.create_index("ix_rentals_status", "rentals", ["status"])
    op.create_index("ix_rentals_owner_id", "rentals", ["owner_id"])

    op.create_table(
        "resource_events",
        sa.Column("seq", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("event_id", sa.String(), nullable=False),
        sa.Column("resource_kind", sa.String(), nullable=False),
        sa.Column("resource_id", sa.String(), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("actor_role", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("seq"),
        sa.UniqueConstraint("event_id"),
    )
    op.create_index("ix_resource_events_resource_id", "resource_events", ["resource_id"])
    op.create_index("ix_resource_events_event_type", "resource_events", ["event_type"])
    op.create_index(
        "ix_resource_events_resource_order", "resource_events", ["resource_id", "occurred_at", "seq"]
    )

    op.create_table(
        "inbox_events",
        sa.Column("event_id", sa.String(), nullable=False),
        sa.Column("consumed_by_service", sa.String(), nullable=False),
        sa.Column("consumed_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("event_id", "consumed_by_service"),
        sa.UniqueConstraint("event_id", "consumed_by_service", name="uq_inbox_consumer"),
    )


def downgrade() -> None:
    op.drop_table("inbox_events")
    op.drop_index("ix_resource_events_resource_order", table_name="resource_events")
    op.drop_index("ix_resource_events_event_type", table_name="resource_events")
    op.drop_index("ix_resource_events_resource_id", table_name="resource_events")
    op.drop_table("resource_events")
    op.drop_index("ix_rentals_owner_id", table_name="rentals")
    op.drop_index("ix_rentals_status", table_name="rentals")
    op.drop_table("rentals")
    op.drop_index("ix_deliveries_assignee_id", table_name="deliveries")
    op.drop_index("ix_deliveries_owner_id", table_name="deliveries")
    op.drop_index("ix_deliveries_status", table_name="deliveries")
    op.drop_table("deliveries")
