"""one in-flight order per user, renewal reminder marker

Revision ID: 9b7e4d21c6a5
Revises: 3f1a9c2e7b10
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "9b7e4d21c6a5"
down_revision: Union[str, None] = "3f1a9c2e7b10"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

IN_FLIGHT_PREDICATE = "status IN ('created', 'pending')"


def upgrade() -> None:
    op.create_index(
        "uq_subscription_orders_user_in_flight",
        "subscription_orders",
        ["user_id"],
        unique=True,
        postgresql_where=sa.text(IN_FLIGHT_PREDICATE),
        sqlite_where=sa.text(IN_FLIGHT_PREDICATE),
    )
    op.add_column("user_subscriptions", sa.Column("reminder_sent_at", sa.DateTime(), nullable=True))


def downgrade() -> None:
    op.drop_column("user_subscriptions", "reminder_sent_at")
    op.drop_index("uq_subscription_orders_user_in_flight", table_name="subscription_orders")
