"""enforce append-only resource events

Revision ID: 0002_event_immutability
Revises: 0001_lifecycle
Create Date: 2026-10-19
"""

from alembic import op


revision = "0002_event_immutability"
down_revision = "0001_lifecycle"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute(
        """
        CREATE OR REPLACE FUNCTION prevent_resource_event_mutation()
        RETURNS trigger
        LANGUAGE plpgsql
        AS $$
        BEGIN
            RAISE EXCEPTION 'resource_events is append-only; % is not allowed', TG_OP;
        END;
        $$;
        """
    )
    op.execute(
        """
        CREATE TRIGGER trg_resource_events_immutable
        BEFORE UPDATE OR DELETE ON resource_events
        FOR EACH ROW
        EXECUTE FUNCTION prevent_resource_event_mutation();
        """
    )


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS trg_resource_events_immutable ON resource_events;")
    op.execute("DROP FUNCTION IF EXISTS prevent_resource_event_mutation();")
