"""Delivery collaborator interfaces — what the dispatcher consumes.

Learn: The dispatcher owns scheduling only. Everything it touches outside
its own memory goes through one of three narrow interfaces:

1. DeliveryJobStore: the persistent job table (query + terminal update)
2. DeliveryExecutor: performs the actual send for one job id
3. AuditSink: records the outcome of each attempt

Production implementations live in store.py, webex.py and audit.py.
Tests swap in in-memory fakes.
"""

from abc import ABC, abstractmethod
from datetime import datetime

from intelrelay.delivery.types import DeliveryJob, DeliveryResult


class DeliveryJobStore(ABC):
    """Persistent table of delivery jobs."""

    @abstractmethod
    async def fetch_pending(self, channel: str, limit: int) -> list[DeliveryJob]:
        """Return at most `limit` PENDING jobs for `channel`, oldest created_at first."""

    @abstractmethod
    async def fetch_stale(
        self, channel: str, older_than: datetime, min_retry_count: int
    ) -> list[DeliveryJob]:
        """Return PENDING jobs for `channel` created before `older_than`
        whose retry_count is at least `min_retry_count`."""

    @abstractmethod
    async def mark_failed(self, job_id: str, error: str) -> None:
        """Transition a job to FAILED. Idempotent; a no-op on terminal jobs."""


class DeliveryExecutor(ABC):
    """Performs the send for one job.

    May raise. The dispatcher treats an exception as a failed attempt and
    does not touch the job's persisted status. That is the executor's job.
    """

    @abstractmethod
    async def deliver(self, job_id: str) -> DeliveryResult: ...


class AuditSink(ABC):
    """Records attempt outcomes. Fire-and-forget from the dispatcher's side."""

    @abstractmethod
    async def record_outcome(self, job_id: str, result: DeliveryResult) -> None: ...
