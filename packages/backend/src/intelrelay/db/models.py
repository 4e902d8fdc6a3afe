"""SQLAlchemy ORM models — single source of truth for the database schema.

Learn: Declarative ORM mapping with SQLAlchemy 2.0 style (Mapped[] + mapped_column).
Alembic auto-generates migrations by comparing these models to the actual DB.

Only the tables the delivery subsystem touches live here:
- reports: produced by the report pipeline, read-only to us
- report_deliveries: the delivery job table the dispatcher polls
- delivery_interactions: one audit row per delivery attempt
- events: append-only log of delivery state changes
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_uuid() -> uuid.UUID:
    return uuid.uuid4()


class Report(Base):
    """A generated business-intelligence report.

    Learn: Written by the LLM report pipeline. The delivery subsystem
    only reads title, workflow type, input data, and generated sections
    to render the Webex message.
    """

    __tablename__ = "reports"

    id: Mapped[uuid.UUID] = mapped_column(
        PG_UUID(as_uuid=True), primary_key=True, default=new_uuid
    )
    title: Mapped[str] = mapped_column(String(300), nullable=False)
    workflow_type: Mapped[str] = mapped_column(
        String(40), nullable=False
    )  # ACCOUNT_INTELLIGENCE, COMPETITIVE_INTELLIGENCE, NEWS_DIGEST
    input_data: Mapped[dict] = mapped_column(
        JSONB, nullable=False, server_default="{}"
    )
    generated_content: Mapped[Optional[dict]] = mapped_column(JSONB, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    deliveries: Mapped[list["ReportDelivery"]] = relationship(back_populates="report")


class ReportDelivery(Base):
    """One outbound delivery of a report — the dispatcher's unit of work.

    Learn: Rows are inserted as PENDING by the report request path. The
    dispatcher never writes an intermediate "processing" status; only the
    executor writes COMPLETED/FAILED (or bumps retry_count and leaves the
    row PENDING for another attempt). A crash mid-delivery therefore
    leaves the row PENDING, where the next poll or the stale sweep finds it.

    Statuses: PENDING → COMPLETED / FAILED
    """

    __tablename__ = "report_deliveries"
    __table_args__ = (
        Index("idx_report_deliveries_status", "status"),
        Index("idx_report_deliveries_poll", "method", "status", "created_at"),
        Index("idx_report_deliveries_report", "report_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        PG_UUID(as_uuid=True), primary_key=True, default=new_uuid
    )
    report_id: Mapped[uuid.UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("reports.id"), nullable=False
    )
    method: Mapped[str] = mapped_column(
        String(20), nullable=False
    )  # DOWNLOAD, WEBEX
    destination: Mapped[str] = mapped_column(String(255), nullable=False)
    destination_type: Mapped[str] = mapped_column(
        String(20), nullable=False, default="email", server_default="email"
    )  # email, room
    content_type: Mapped[str] = mapped_column(
        String(20), nullable=False, default="ATTACHMENT", server_default="ATTACHMENT"
    )  # ATTACHMENT, SUMMARY_LINK
    format: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)  # PDF, DOCX
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="PENDING", server_default="PENDING"
    )  # PENDING, COMPLETED, FAILED
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0"
    )
    max_retries: Mapped[int] = mapped_column(
        Integer, nullable=False, default=3, server_default="3"
    )
    message_id: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    delivered_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    report: Mapped["Report"] = relationship(back_populates="deliveries")


class DeliveryInteraction(Base):
    """Audit record of a single delivery attempt.

    Learn: Feeds the "recent Webex activity" view. Written by the audit
    recorder after every attempt, successful or not. Never updated.
    """

    __tablename__ = "delivery_interactions"
    __table_args__ = (
        Index("idx_delivery_interactions_delivery", "delivery_id"),
        Index("idx_delivery_interactions_created", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    delivery_id: Mapped[uuid.UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("report_deliveries.id"), nullable=False
    )
    report_id: Mapped[uuid.UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("reports.id"), nullable=False
    )
    destination: Mapped[str] = mapped_column(String(255), nullable=False)
    message_text: Mapped[str] = mapped_column(Text, nullable=False)
    workflow_type: Mapped[str] = mapped_column(String(40), nullable=False)
    target_company: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    response_type: Mapped[str] = mapped_column(
        String(30), nullable=False
    )  # DELIVERY_SENT, DELIVERY_FAILED
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    message_id: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class Event(Base):
    """Immutable event log.

    Learn: Every delivery state change the subsystem makes is appended
    here (stream "delivery:<id>"). Events are never updated or deleted.
    """

    __tablename__ = "events"
    __table_args__ = (
        Index("idx_events_stream", "stream_id", "id"),
        Index("idx_events_type", "type"),
        Index("idx_events_created", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    stream_id: Mapped[str] = mapped_column(String(200), nullable=False)
    type: Mapped[str] = mapped_column(String(100), nullable=False)
    data: Mapped[dict] = mapped_column(JSONB, nullable=False)
    meta: Mapped[dict] = mapped_column(
        "metadata", JSONB, nullable=False, server_default="{}"
    )
    # Python attr is "meta" because "metadata" is reserved by SQLAlchemy.
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
