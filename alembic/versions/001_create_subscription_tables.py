"""Create subscription tables

Revision ID: 001
Revises: None
Create Date: 2026-10-18
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "subscriber_storage",
        sa.Column("identity", sa.String(64), primary_key=True),
        sa.Column("expiration_ts", sa.BigInteger, nullable=False),
        sa.Column("last_updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("NOW()")),
    )

    op.create_index("idx_subscriber_storage_expiration", "subscriber_storage", ["expiration_ts"])

    op.create_table(
        "merkle_state",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("root_hash", sa.String(64), nullable=False),
        sa.Column("is_synced_on_chain", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("tx_signature", sa.String(128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("NOW()")),
    )

    op.create_index("idx_merkle_state_synced", "merkle_state", ["is_synced_on_chain", "id"])


def downgrade() -> None:
    op.drop_table("merkle_state")
    op.drop_table("subscriber_storage")
