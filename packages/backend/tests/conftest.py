"""Test fixtures — in-memory collaborators for the dispatcher, and a rollback-only DB.

Learn: The dispatcher only talks to three interfaces (job store, executor,
audit sink), so most tests run entirely in memory:

- FakeJobStore keeps DeliveryJobs in a dict and honors the same filters
  and ordering as the SQL store.
- FakeExecutor records every deliver() call, tracks how many calls are
  running per id and overall, and can be held open with a gate or a delay.
- FakeAuditSink records outcomes and can be told to blow up.

Store tests that need Postgres use db_session_factory: one connection,
one outer transaction rolled back at the end, sessions joined with
join_transaction_mode="create_savepoint" so every commit() is a SAVEPOINT.
They are skipped when Postgres is not reachable.
"""

import asyncio
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from intelrelay.config import settings
from intelrelay.db.models import Base
from intelrelay.delivery.base import AuditSink, DeliveryExecutor, DeliveryJobStore
from intelrelay.delivery.dispatcher import DeliveryDispatcher, DispatcherConfig
from intelrelay.delivery.types import (
    ContentType,
    DeliveryJob,
    DeliveryMethod,
    DeliveryResult,
    DeliveryStatus,
)


TEST_DB_URL = settings.database_url


# ─── In-memory collaborators ──────────────────────────────


class FakeJobStore(DeliveryJobStore):
    def __init__(self):
        self.jobs: dict[str, DeliveryJob] = {}
        self.fetch_calls = 0
        self.fetch_limits: list[int] = []
        self.fail_fetch = False
        self.ignore_limit = False
        self.marked_failed: list[str] = []

    def add(
        self,
        job_id: str,
        *,
        created_at: Optional[datetime] = None,
        age: Optional[timedelta] = None,
        retry_count: int = 0,
        status: str = DeliveryStatus.PENDING,
        method: str = DeliveryMethod.WEBEX,
    ) -> DeliveryJob:
        if created_at is None:
            created_at = datetime.now(timezone.utc) - (age or timedelta(0))
        job = DeliveryJob(
            id=job_id,
            status=status,
            method=method,
            destination=f"{job_id}@example.com",
            content_type=ContentType.SUMMARY_LINK,
            created_at=created_at,
            retry_count=retry_count,
        )
        self.jobs[job_id] = job
        return job

    def status_of(self, job_id: str) -> str:
        return self.jobs[job_id].status

    def _pending(self, channel: str) -> list[DeliveryJob]:
        return sorted(
            (
                j for j in self.jobs.values()
                if j.status == DeliveryStatus.PENDING and j.method == channel
            ),
            key=lambda j: j.created_at,
        )

    async def fetch_pending(self, channel: str, limit: int) -> list[DeliveryJob]:
        self.fetch_calls += 1
        self.fetch_limits.append(limit)
        await asyncio.sleep(0)
        if self.fail_fetch:
            raise ConnectionError("job store unreachable")
        pending = self._pending(channel)
        return pending if self.ignore_limit else pending[:limit]

    async def fetch_stale(
        self, channel: str, older_than: datetime, min_retry_count: int
    ) -> list[DeliveryJob]:
        await asyncio.sleep(0)
        return [
            j for j in self._pending(channel)
            if j.created_at < older_than and j.retry_count >= min_retry_count
        ]

    async def mark_failed(self, job_id: str, error: str) -> None:
        job = self.jobs.get(job_id)
        if job and job.status == DeliveryStatus.PENDING:
            job.status = DeliveryStatus.FAILED
            job.error = error
            self.marked_failed.append(job_id)


class FakeExecutor(DeliveryExecutor):
    """Executor double. Successful deliveries complete the job in the store."""

    def __init__(self, store: FakeJobStore):
        self.store = store
        self.calls: list[str] = []
        self.delay = 0.0
        self.gate: Optional[asyncio.Event] = None
        self.fail_ids: set[str] = set()
        self.raise_ids: set[str] = set()
        self.active = Counter()
        self.max_active_per_id = 0
        self.active_total = 0
        self.max_active_total = 0

    async def deliver(self, job_id: str) -> DeliveryResult:
        self.calls.append(job_id)
        self.active[job_id] += 1
        self.active_total += 1
        self.max_active_per_id = max(self.max_active_per_id, self.active[job_id])
        self.max_active_total = max(self.max_active_total, self.active_total)
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.delay:
                await asyncio.sleep(self.delay)
            if job_id in self.raise_ids:
                raise RuntimeError(f"executor exploded on {job_id}")
            if job_id in self.fail_ids:
                self.store.jobs[job_id].retry_count += 1
                return DeliveryResult.failure("Webex API error (404): room not found")
            self.store.jobs[job_id].status = DeliveryStatus.COMPLETED
            return DeliveryResult(success=True, message_id=f"msg-{job_id}")
        finally:
            self.active[job_id] -= 1
            self.active_total -= 1


class FakeAuditSink(AuditSink):
    def __init__(self):
        self.outcomes: list[tuple[str, DeliveryResult]] = []
        self.fail = False

    async def record_outcome(self, job_id: str, result: DeliveryResult) -> None:
        if self.fail:
            raise RuntimeError("audit table locked")
        self.outcomes.append((job_id, result))

    def result_for(self, job_id: str) -> DeliveryResult:
        return next(r for j, r in self.outcomes if j == job_id)


async def settle(rounds: int = 10) -> None:
    """Let scheduled tasks run until the loop has nothing immediate left to do."""
    for _ in range(rounds):
        await asyncio.sleep(0)


# ─── Fixtures ─────────────────────────────────────────────


@pytest.fixture()
def store():
    return FakeJobStore()


@pytest.fixture()
def executor(store):
    return FakeExecutor(store)


@pytest.fixture()
def audit():
    return FakeAuditSink()


@pytest_asyncio.fixture()
async def make_dispatcher(store, executor, audit):
    """Factory for dispatchers over the fakes. Stops them and opens gates at teardown.

    poll_interval defaults to an hour so only the immediate cycle from
    start() runs on its own; tests drive further cycles with poll_once().
    """
    created: list[DeliveryDispatcher] = []

    def _make(**overrides) -> DeliveryDispatcher:
        config = DispatcherConfig(**{"poll_interval": 3600.0, **overrides})
        dispatcher = DeliveryDispatcher(store, executor, audit, config)
        created.append(dispatcher)
        return dispatcher

    yield _make

    if executor.gate is not None:
        executor.gate.set()
    for dispatcher in created:
        dispatcher.config.drain_timeout = 5.0
        await dispatcher.stop()
        if dispatcher._tasks:
            await asyncio.gather(*dispatcher._tasks, return_exceptions=True)


@pytest_asyncio.fixture()
async def db_session_factory():
    """Session factory bound to a rolled-back connection. Skips without Postgres."""
    engine = create_async_engine(TEST_DB_URL, echo=False)
    try:
        conn = await engine.connect()
    except Exception as e:
        await engine.dispose()
        pytest.skip(f"Postgres not reachable at {TEST_DB_URL.split('@')[-1]}: {e}")

    trans = await conn.begin()
    try:
        await conn.run_sync(Base.metadata.create_all)
        yield async_sessionmaker(
            bind=conn,
            class_=AsyncSession,
            expire_on_commit=False,
            join_transaction_mode="create_savepoint",
        )
    finally:
        await trans.rollback()
        await conn.close()
        await engine.dispose()
