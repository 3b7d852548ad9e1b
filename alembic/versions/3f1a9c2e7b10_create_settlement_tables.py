"""create subscription settlement tables

Revision ID: 3f1a9c2e7b10
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "3f1a9c2e7b10"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "subscription_orders",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("order_id", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("plan_id", sa.String(), nullable=False),
        sa.Column("gateway", sa.String(), nullable=False),
        sa.Column("gateway_transaction_id", sa.String(), nullable=True),
        sa.Column("amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="IDR"),
        sa.Column("billing_cycle", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="created"),
        sa.Column("redirect_target", sa.Text(), nullable=True),
        sa.Column("customer_email", sa.String(), nullable=True),
        sa.Column("customer_name", sa.String(), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("applied_at", sa.DateTime(), nullable=True),
        sa.Column("last_webhook_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("order_id"),
    )
    op.create_index(op.f("ix_subscription_orders_id"), "subscription_orders", ["id"], unique=False)
    op.create_index("ix_subscription_orders_status_created", "subscription_orders", ["status", "created_at"], unique=False)
    op.create_index("ix_subscription_orders_gateway_trx", "subscription_orders", ["gateway", "gateway_transaction_id"], unique=False)
    op.create_index("ix_subscription_orders_user_status", "subscription_orders", ["user_id", "status"], unique=False)

    op.create_table(
        "order_webhook_log",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("order_id", sa.String(length=64), nullable=False),
        sa.Column("gateway", sa.String(), nullable=False),
        sa.Column("source", sa.String(), nullable=False, server_default="webhook"),
        sa.Column("raw_status", sa.String(), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("received_at", sa.DateTime(), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.ForeignKeyConstraint(["order_id"], ["subscription_orders.order_id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_order_webhook_log_id"), "order_webhook_log", ["id"], unique=False)
    op.create_index("ix_order_webhook_log_order", "order_webhook_log", ["order_id", "id"], unique=False)

    op.create_table(
        "user_subscriptions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("plan_id", sa.String(), nullable=False, server_default="free"),
        sa.Column("status", sa.String(), nullable=False, server_default="free"),
        sa.Column("start_date", sa.DateTime(), nullable=True),
        sa.Column("end_date", sa.DateTime(), nullable=True),
        sa.Column("current_order_id", sa.String(length=64), nullable=True),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_user_subscriptions_id"), "user_subscriptions", ["id"], unique=False)
    op.create_index(op.f("ix_user_subscriptions_user_id"), "user_subscriptions", ["user_id"], unique=True)
    op.create_index(op.f("ix_user_subscriptions_end_date"), "user_subscriptions", ["end_date"], unique=False)

    op.create_table(
        "idempotency_ledger",
        sa.Column("gateway", sa.String(), nullable=False),
        sa.Column("gateway_transaction_id", sa.String(), nullable=False),
        sa.Column("order_id", sa.String(length=64), nullable=True),
        sa.Column("state", sa.String(), nullable=False, server_default="reserved"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("reserved_at", sa.DateTime(), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("applied_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("gateway", "gateway_transaction_id", name="pk_idempotency_ledger"),
    )
    op.create_index("ix_idempotency_ledger_state_reserved", "idempotency_ledger", ["state", "reserved_at"], unique=False)

    op.create_table(
        "payment_anomalies",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("gateway", sa.String(), nullable=True),
        sa.Column("order_id", sa.String(length=64), nullable=True),
        sa.Column("gateway_transaction_id", sa.String(), nullable=True),
        sa.Column("detail", sa.Text(), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("resolved", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_payment_anomalies_id"), "payment_anomalies", ["id"], unique=False)
    op.create_index(op.f("ix_payment_anomalies_order_id"), "payment_anomalies", ["order_id"], unique=False)
    op.create_index("ix_payment_anomalies_kind_resolved", "payment_anomalies", ["kind", "resolved"], unique=False)

    op.create_table(
        "side_effect_jobs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("order_id", sa.String(length=64), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("next_attempt_at", sa.DateTime(), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("created_at", sa.DateTime(), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_side_effect_jobs_id"), "side_effect_jobs", ["id"], unique=False)
    op.create_index(op.f("ix_side_effect_jobs_order_id"), "side_effect_jobs", ["order_id"], unique=False)
    op.create_index("ix_side_effect_jobs_status_next", "side_effect_jobs", ["status", "next_attempt_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_side_effect_jobs_status_next", table_name="side_effect_jobs")
    op.drop_index(op.f("ix_side_effect_jobs_order_id"), table_name="side_effect_jobs")
    op.drop_index(op.f("ix_side_effect_jobs_id"), table_name="side_effect_jobs")
    op.drop_table("side_effect_jobs")

    op.drop_index("ix_payment_anomalies_kind_resolved", table_name="payment_anomalies")
    op.drop_index(op.f("ix_payment_anomalies_order_id"), table_name="payment_anomalies")
    op.drop_index(op.f("ix_payment_anomalies_id"), table_name="payment_anomalies")
    op.drop_table("payment_anomalies")

    op.drop_index("ix_idempotency_ledger_state_reserved", table_name="idempotency_ledger")
    op.drop_table("idempotency_ledger")

    op.drop_index(op.f("ix_user_subscriptions_end_date"), table_name="user_subscriptions")
    op.drop_index(op.f("ix_user_subscriptions_user_id"), table_name="user_subscriptions")
    op.drop_index(op.f("ix_user_subscriptions_id"), table_name="user_subscriptions")
    op.drop_table("user_subscriptions")

    op.drop_index("ix_order_webhook_log_order", table_name="order_webhook_log")
    op.drop_index(op.f("ix_order_webhook_log_id"), table_name="order_webhook_log")
    op.drop_table("order_webhook_log")

    op.drop_index("ix_subscription_orders_user_status", table_name="subscription_orders")
    op.drop_index("ix_subscription_orders_gateway_trx", table_name="subscription_orders")
    op.drop_index("ix_subscription_orders_status_created", table_name="subscription_orders")
    op.drop_index(op.f("ix_subscription_orders_id"), table_name="subscription_orders")
    op.drop_table("subscription_orders")
