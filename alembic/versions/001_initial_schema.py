"""Initial schema — profiles, discount_offers, timer_settings, webhook_events, notifications.

Revision ID: 001
Revises: None
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # --- profiles ---
    op.create_table(
        "profiles",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("external_identity_id", sa.String(128), nullable=False),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("is_admin", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("subscription_status", sa.String(16), server_default="FREE", nullable=False),
        sa.Column("subscription_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("subscription_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payment_customer_id", sa.String(64), nullable=True),
        sa.Column("payment_subscription_id", sa.String(64), nullable=True),
        sa.Column("payment_price_id", sa.String(64), nullable=True),
        sa.Column("subscription_amount", sa.Integer(), nullable=True),
        sa.Column("original_amount", sa.Integer(), nullable=True),
        sa.Column("discount_percent", sa.Integer(), nullable=True),
        sa.Column("discount_name", sa.String(255), nullable=True),
        sa.Column("subscription_auto_renew", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("subscription_cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_webhook_update", sa.DateTime(timezone=True), nullable=True),
        sa.Column("trial_used", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("trial_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("external_identity_id"),
        sa.UniqueConstraint("payment_customer_id"),
    )
    op.create_index("ix_profiles_email", "profiles", ["email"])
    op.create_index("ix_profiles_payment_subscription_id", "profiles", ["payment_subscription_id"])

    # --- discount_offers ---
    op.create_table(
        "discount_offers",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("profile_id", sa.Integer(), nullable=False),
        sa.Column("payment_subscription_id", sa.String(64), nullable=False),
        sa.Column("original_price_cents", sa.Integer(), nullable=False),
        sa.Column("user_input_cents", sa.Integer(), nullable=False),
        sa.Column("offer_price_cents", sa.Integer(), nullable=False),
        sa.Column("discount_percent", sa.Float(), nullable=False),
        sa.Column("savings_cents", sa.Integer(), server_default="0", nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["profile_id"], ["profiles.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("profile_id", "payment_subscription_id", name="uq_discount_offer_profile_sub"),
    )
    op.create_index("ix_discount_offers_profile_id", "discount_offers", ["profile_id"])
    op.create_index("ix_discount_offers_expires_at", "discount_offers", ["expires_at"])

    # --- timer_settings ---
    op.create_table(
        "timer_settings",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("start_time", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("duration_hours", sa.Integer(), server_default="72", nullable=False),
        sa.Column("message", sa.String(200), nullable=False),
        sa.Column("price_message", sa.String(100), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    # --- webhook_events ---
    op.create_table(
        "webhook_events",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("event_id", sa.String(255), nullable=False),
        sa.Column("event_type", sa.String(64), nullable=False),
        sa.Column("kind", sa.String(32), nullable=False),
        sa.Column("customer_id", sa.String(64), nullable=True),
        sa.Column("subscription_id", sa.String(64), nullable=True),
        sa.Column("customer_email", sa.String(255), nullable=True),
        sa.Column("event_created", sa.DateTime(timezone=True), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("status", sa.String(16), server_default="pending", nullable=False),
        sa.Column("attempts", sa.Integer(), server_default="0", nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("received_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("event_id"),
    )
    op.create_index("ix_webhook_events_customer_id", "webhook_events", ["customer_id"])
    op.create_index("ix_webhook_events_status", "webhook_events", ["status"])
    op.create_index("ix_webhook_events_received_at", "webhook_events", ["received_at"])

    # --- notifications ---
    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("profile_id", sa.Integer(), nullable=False),
        sa.Column("type", sa.String(16), server_default="PAYMENT", nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("read", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["profile_id"], ["profiles.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_notifications_profile_id", "notifications", ["profile_id"])


def downgrade() -> None:
    op.drop_table("notifications")
    op.drop_table("webhook_events")
    op.drop_table("timer_settings")
    op.drop_table("discount_offers")
    op.drop_table("profiles")
