"""Delivery audit recorder — one interaction row + one event per attempt.

Learn: record_outcome() is fire-and-forget from the dispatcher's side.
Postgres is written first (delivery_interactions + events, one commit);
the Redis publish for the live feed comes after and is best-effort.
Nothing here raises: a broken audit trail must never stall deliveries.
"""

import uuid

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from intelrelay.db.models import DeliveryInteraction, ReportDelivery
from intelrelay.delivery.base import AuditSink
from intelrelay.delivery.types import DeliveryResult
from intelrelay.events.store import EventStore, delivery_stream
from intelrelay.events.types import DELIVERY_FAILED, DELIVERY_SENT
from intelrelay.realtime.pubsub import publish_event, redis_available

logger = structlog.get_logger()

RESPONSE_SENT = "DELIVERY_SENT"
RESPONSE_FAILED = "DELIVERY_FAILED"


class DeliveryAuditRecorder(AuditSink):
    """Audit sink writing to delivery_interactions, events, and Redis."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def record_outcome(self, job_id: str, result: DeliveryResult) -> None:
        log = logger.bind(delivery_id=job_id)
        try:
            payload = await self._write(job_id, result)
        except Exception:
            log.exception("audit.record_failed")
            return

        if payload is None:
            log.error("audit.delivery_not_found")
            return

        log.info("audit.recorded", success=result.success)

        if redis_available():
            try:
                await publish_event(
                    DELIVERY_SENT if result.success else DELIVERY_FAILED, payload
                )
            except Exception as e:
                log.warning("audit.publish_failed", error=str(e))

    async def _write(self, job_id: str, result: DeliveryResult) -> dict | None:
        async with self.session_factory() as db:
            q = (
                select(ReportDelivery)
                .options(selectinload(ReportDelivery.report))
                .where(ReportDelivery.id == uuid.UUID(job_id))
            )
            delivery = (await db.execute(q)).scalars().first()
            if not delivery:
                return None

            report = delivery.report
            input_data = report.input_data or {}
            if result.success:
                text = f"Delivery completed for report: {report.title}"
            else:
                text = f"Delivery failed for report: {report.title}"

            db.add(DeliveryInteraction(
                delivery_id=delivery.id,
                report_id=report.id,
                destination=delivery.destination,
                message_text=text,
                workflow_type=report.workflow_type,
                target_company=input_data.get("companyName"),
                response_type=RESPONSE_SENT if result.success else RESPONSE_FAILED,
                success=result.success,
                message_id=result.message_id,
                error_message=None if result.success else (result.error or "Unknown error"),
            ))

            payload = {
                "delivery_id": job_id,
                "report_id": str(report.id),
                "destination": delivery.destination,
                "success": result.success,
                "message_id": result.message_id,
                "error": result.error,
            }
            await EventStore(db).append(
                stream_id=delivery_stream(job_id),
                event_type=DELIVERY_SENT if result.success else DELIVERY_FAILED,
                data=payload,
            )
            await db.commit()
            return payload
