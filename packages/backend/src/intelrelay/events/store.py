"""Event store — append-only event log.

Learn: Every delivery state change is also recorded as an immutable
event on stream "delivery:<id>". The report_deliveries row holds the
current state; the event stream holds the history of how it got there.
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from intelrelay.db.models import Event


def delivery_stream(delivery_id) -> str:
    return f"delivery:{delivery_id}"


class EventStore:
    """Append-only event store backed by PostgreSQL."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def append(
        self,
        stream_id: str,
        event_type: str,
        data: dict,
        metadata: dict | None = None,
    ) -> Event:
        """Append an event to a stream. Caller owns the commit."""
        event = Event(
            stream_id=stream_id,
            type=event_type,
            data=data,
            meta=metadata or {},
        )
        self.db.add(event)
        await self.db.flush()  # get the auto-generated id
        return event

    async def read_stream(
        self,
        stream_id: str,
        after_id: int = 0,
        limit: int = 100,
    ) -> list[Event]:
        """Read events for a specific stream, optionally after a given position."""
        result = await self.db.execute(
            select(Event)
            .where(Event.stream_id == stream_id, Event.id > after_id)
            .order_by(Event.id)
            .limit(limit)
        )
        return list(result.scalars().all())
