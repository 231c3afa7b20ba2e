"""Initial schema with messages table

Revision ID: 001
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Indexes are provisioned by MessageQueue.ensure_indexes(), since the
    # expiry index depends on queue configuration
    op.create_table(
        "messages",
        sa.Column("id", sa.Uuid, nullable=False),
        sa.Column(
            "body",
            sa.JSON().with_variant(postgresql.JSONB, "postgresql"),
            nullable=True,
        ),
        sa.Column("created", sa.DateTime, nullable=False),
        sa.Column("completed", sa.DateTime, nullable=True),
        sa.Column("delivery_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("locked_until", sa.DateTime, nullable=False),
        sa.Column("scheduled_enqueue_time", sa.DateTime, nullable=False),
        sa.Column("partition_key", sa.String(255), nullable=True),
        sa.Column("ttl", sa.Integer, nullable=False, server_default="-1"),
        sa.Column("ts", sa.DateTime, nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )


def downgrade() -> None:
    op.execute("DROP INDEX IF EXISTS completed_expiry")
    op.execute("DROP INDEX IF EXISTS dequeue")
    op.drop_table("messages")
