"""Product id on profiles and admin access overrides.

Revision ID: 002
Revises: 001
Create Date: 2026-10-20
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    with op.batch_alter_table("profiles") as batch:
        batch.add_column(sa.Column("payment_product_id", sa.String(64), nullable=True))
        batch.add_column(sa.Column("access_granted_until", sa.DateTime(timezone=True), nullable=True))
        batch.add_column(sa.Column("access_revoked_at", sa.DateTime(timezone=True), nullable=True))
    op.create_index("ix_profiles_payment_product_id", "profiles", ["payment_product_id"])


def downgrade() -> None:
    op.drop_index("ix_profiles_payment_product_id", table_name="profiles")
    with op.batch_alter_table("profiles") as batch:
        batch.drop_column("access_revoked_at")
        batch.drop_column("access_granted_until")
        batch.drop_column("payment_product_id")
