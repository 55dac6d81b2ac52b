"""record deposit refunds issued through the payment provider

Revision ID: 0003_deposit_refunds
Revises: 0002_event_immutability
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa


revision = "0003_deposit_refunds"
down_revision = "0002_event_immutability"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column("rentals", sa.Column("deposit_refunded_cents", sa.Integer(), nullable=False, server_default="0"))
    op.add_column("rentals", sa.Column("deposit_refund_ref", sa.String(), nullable=True))


def downgrade() -> None:
    op.drop_column("rentals", "deposit_refund_ref")
    op.drop_column("rentals", "deposit_refunded_cents")
