"""Initial schema.

Revision ID: 001
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # RAW_EVENTS (audit trail, never deleted)
    op.create_table(
        "raw_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("source", sa.String(255), nullable=False),
        sa.Column("payload", postgresql.JSONB, nullable=False),
        sa.Column("content_hash", sa.String(64), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("error_message", sa.Text),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("NOW()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("NOW()")),
        sa.UniqueConstraint("content_hash", name="uq_raw_events_content_hash"),
    )
    op.create_index("ix_raw_events_content_hash_status", "raw_events", ["content_hash", "status"])
    op.create_index("ix_raw_events_status", "raw_events", ["status"])

    # NORMALIZED_EVENTS (canonical, immutable)
    op.create_table(
        "normalized_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("client_id", sa.String(255), nullable=False),
        sa.Column("metric", sa.String(500)),
        sa.Column("amount", sa.Float),
        sa.Column("timestamp", sa.DateTime(timezone=True)),
        sa.Column("normalized_hash", sa.String(64), nullable=False),
        sa.Column(
            "raw_event_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("raw_events.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("NOW()")),
        sa.UniqueConstraint("normalized_hash", name="uq_normalized_events_normalized_hash"),
    )
    op.create_index("ix_normalized_events_client_id", "normalized_events", ["client_id"])
    op.create_index("ix_normalized_events_client_timestamp", "normalized_events", ["client_id", "timestamp"])


def downgrade() -> None:
    op.drop_index("ix_normalized_events_client_timestamp", table_name="normalized_events")
    op.drop_index("ix_normalized_events_client_id", table_name="normalized_events")
    op.drop_table("normalized_events")
    op.drop_index("ix_raw_events_status", table_name="raw_events")
    op.drop_index("ix_raw_events_content_hash_status", table_name="raw_events")
    op.drop_table("raw_events")
