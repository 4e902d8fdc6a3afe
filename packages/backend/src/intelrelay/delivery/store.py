"""SQL-backed delivery job store.

Learn: Each call opens its own short-lived AsyncSession. The dispatcher
calls fetch_pending/fetch_stale every few seconds and mark_failed rarely;
none of them should pin a pooled connection between polls.

mark_failed is a conditional UPDATE ... WHERE status = 'PENDING'. On a
single dispatcher that just makes it idempotent; with more than one it
is the compare-and-swap that stops a sweep from clobbering a row another
process already completed.
"""

import uuid
from datetime import datetime
from typing import Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from intelrelay.db.models import Report, ReportDelivery
from intelrelay.delivery.base import DeliveryJobStore
from intelrelay.delivery.types import (
    ContentType,
    DeliveryJob,
    DeliveryMethod,
    DeliveryStatus,
)
from intelrelay.events.store import EventStore, delivery_stream
from intelrelay.events.types import DELIVERY_QUEUED, DELIVERY_STALE_FAILED

logger = structlog.get_logger()


class ReportNotFoundError(Exception):
    pass


def to_job(row: ReportDelivery) -> DeliveryJob:
    """Convert an ORM row to the dispatcher's value object."""
    return DeliveryJob(
        id=str(row.id),
        status=row.status,
        method=row.method,
        destination=row.destination,
        content_type=row.content_type,
        created_at=row.created_at,
        retry_count=row.retry_count,
        error=row.error,
    )


class SqlDeliveryJobStore(DeliveryJobStore):
    """Job store over the report_deliveries table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def fetch_pending(self, channel: str, limit: int) -> list[DeliveryJob]:
        if limit <= 0:
            return []
        async with self.session_factory() as db:
            q = (
                select(ReportDelivery)
                .where(
                    ReportDelivery.status == DeliveryStatus.PENDING,
                    ReportDelivery.method == channel,
                )
                .order_by(ReportDelivery.created_at.asc())
                .limit(limit)
            )
            result = await db.execute(q)
            return [to_job(row) for row in result.scalars().all()]

    async def fetch_stale(
        self, channel: str, older_than: datetime, min_retry_count: int
    ) -> list[DeliveryJob]:
        async with self.session_factory() as db:
            q = (
                select(ReportDelivery)
                .where(
                    ReportDelivery.status == DeliveryStatus.PENDING,
                    ReportDelivery.method == channel,
                    ReportDelivery.created_at < older_than,
                    ReportDelivery.retry_count >= min_retry_count,
                )
                .order_by(ReportDelivery.created_at.asc())
            )
            result = await db.execute(q)
            return [to_job(row) for row in result.scalars().all()]

    async def mark_failed(self, job_id: str, error: str) -> None:
        async with self.session_factory() as db:
            result = await db.execute(
                update(ReportDelivery)
                .where(
                    ReportDelivery.id == uuid.UUID(job_id),
                    ReportDelivery.status == DeliveryStatus.PENDING,
                )
                .values(status=DeliveryStatus.FAILED, error=error)
            )
            if result.rowcount == 0:
                # Already terminal, or gone
                await db.rollback()
                return

            await EventStore(db).append(
                stream_id=delivery_stream(job_id),
                event_type=DELIVERY_STALE_FAILED,
                data={"delivery_id": job_id, "error": error},
            )
            await db.commit()
            logger.info("delivery.marked_failed", delivery_id=job_id, error=error)

    # ─── Request-path helpers ─────────────────────────────

    async def get(self, job_id: str) -> Optional[DeliveryJob]:
        async with self.session_factory() as db:
            row = await db.get(ReportDelivery, uuid.UUID(job_id))
            return to_job(row) if row else None

    async def enqueue(
        self,
        report_id: str,
        destination: str,
        *,
        destination_type: str = "email",
        content_type: str = ContentType.ATTACHMENT,
        format: Optional[str] = "PDF",
        max_retries: int = 3,
    ) -> DeliveryJob:
        """Create a PENDING Webex delivery for an existing report."""
        async with self.session_factory() as db:
            report = await db.get(Report, uuid.UUID(report_id))
            if not report:
                raise ReportNotFoundError(f"Report {report_id} not found")

            delivery = ReportDelivery(
                report_id=report.id,
                method=DeliveryMethod.WEBEX,
                destination=destination,
                destination_type=destination_type,
                content_type=content_type,
                format=format if content_type == ContentType.ATTACHMENT else None,
                status=DeliveryStatus.PENDING,
                max_retries=max_retries,
            )
            db.add(delivery)
            await db.flush()

            await EventStore(db).append(
                stream_id=delivery_stream(delivery.id),
                event_type=DELIVERY_QUEUED,
                data={
                    "delivery_id": str(delivery.id),
                    "report_id": report_id,
                    "destination": destination,
                    "content_type": content_type,
                },
            )
            await db.commit()
            await db.refresh(delivery)
            return to_job(delivery)
