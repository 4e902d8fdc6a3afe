"""Report delivery schema: reports, report_deliveries, delivery_interactions, events

Learn: The poll index (method, status, created_at) serves the dispatcher's
hot query ("oldest PENDING WEBEX rows") without a sort step.

Revision ID: 3f1c9a7d2b10
Revises:
Create Date: 2026-09-02 10:14:52.118204
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '3f1c9a7d2b10'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "reports",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("title", sa.String(300), nullable=False),
        sa.Column("workflow_type", sa.String(40), nullable=False),
        sa.Column(
            "input_data", postgresql.JSONB(), nullable=False, server_default="{}"
        ),
        sa.Column("generated_content", postgresql.JSONB(), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), server_default=sa.func.now()
        ),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "report_deliveries",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "report_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("reports.id"),
            nullable=False,
        ),
        sa.Column("method", sa.String(20), nullable=False),
        sa.Column("destination", sa.String(255), nullable=False),
        sa.Column(
            "destination_type", sa.String(20), nullable=False, server_default="email"
        ),
        sa.Column(
            "content_type", sa.String(20), nullable=False, server_default="ATTACHMENT"
        ),
        sa.Column("format", sa.String(10), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="PENDING"),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("message_id", sa.String(200), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), server_default=sa.func.now()
        ),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("idx_report_deliveries_status", "report_deliveries", ["status"])
    op.create_index(
        "idx_report_deliveries_poll",
        "report_deliveries",
        ["method", "status", "created_at"],
    )
    op.create_index(
        "idx_report_deliveries_report", "report_deliveries", ["report_id"]
    )

    op.create_table(
        "delivery_interactions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "delivery_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("report_deliveries.id"),
            nullable=False,
        ),
        sa.Column(
            "report_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("reports.id"),
            nullable=False,
        ),
        sa.Column("destination", sa.String(255), nullable=False),
        sa.Column("message_text", sa.Text(), nullable=False),
        sa.Column("workflow_type", sa.String(40), nullable=False),
        sa.Column("target_company", sa.String(200), nullable=True),
        sa.Column("response_type", sa.String(30), nullable=False),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("message_id", sa.String(200), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), server_default=sa.func.now()
        ),
    )
    op.create_index(
        "idx_delivery_interactions_delivery", "delivery_interactions", ["delivery_id"]
    )
    op.create_index(
        "idx_delivery_interactions_created", "delivery_interactions", ["created_at"]
    )

    op.create_table(
        "events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("stream_id", sa.String(200), nullable=False),
        sa.Column("type", sa.String(100), nullable=False),
        sa.Column("data", postgresql.JSONB(), nullable=False),
        sa.Column(
            "metadata", postgresql.JSONB(), nullable=False, server_default="{}"
        ),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), server_default=sa.func.now()
        ),
    )
    op.create_index("idx_events_stream", "events", ["stream_id", "id"])
    op.create_index("idx_events_type", "events", ["type"])
    op.create_index("idx_events_created", "events", ["created_at"])


def downgrade() -> None:
    op.drop_table("events")
    op.drop_table("delivery_interactions")
    op.drop_table("report_deliveries")
    op.drop_table("reports")
