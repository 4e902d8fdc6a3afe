"""Delivery dispatcher — polls the job table and runs deliveries with bounded concurrency.

Learn: The dispatcher is a long-running loop (in its own process, or inside
the API lifespan). Every poll_interval seconds it runs one poll cycle:

1. Compute free capacity: max_concurrent - len(in_flight)
2. Fetch that many PENDING jobs for the channel, oldest first
3. For each job not already in flight: add its id, spawn a delivery task
4. Each delivery task awaits the executor, audits the outcome, and
   always releases its id from in_flight (finally block)
5. Sweep stale jobs: PENDING past the threshold with retries exhausted
   → FAILED, unless this dispatcher is working on them right now

Key design decisions:
- Polling, not LISTEN/NOTIFY: job volume is low and polling survives
  reconnects for free
- The in_flight set is the concurrency guard. Everything that touches it
  runs on the one event loop, so no lock is needed
- The dispatcher never writes PROCESSING to the store. A crash leaves the
  row PENDING; the next poll (or the stale sweep) picks it up
- At-least-once: a crash after Webex accepted the message but before the
  row was updated means the job is sent again
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

import structlog

from intelrelay.config import Settings, settings as default_settings
from intelrelay.delivery.base import AuditSink, DeliveryExecutor, DeliveryJobStore
from intelrelay.delivery.types import (
    STALE_ERROR_MESSAGE,
    DeliveryJob,
    DeliveryMethod,
    DeliveryResult,
)

logger = structlog.get_logger()


@dataclass
class DispatcherConfig:
    """Configuration for the delivery dispatcher. Fixed for the dispatcher's lifetime."""
    channel: str = DeliveryMethod.WEBEX
    poll_interval: float = 5.0  # seconds between poll cycles
    max_concurrent: int = 3
    stale_after: timedelta = timedelta(minutes=30)
    max_retries: int = 3  # retry_count at which a stale job is failed
    drain_timeout: float = 30.0  # seconds stop() waits for in-flight jobs
    drain_check_interval: float = 1.0

    @classmethod
    def from_settings(cls, s: Optional[Settings] = None) -> "DispatcherConfig":
        s = s or default_settings
        return cls(
            poll_interval=s.delivery_poll_interval,
            max_concurrent=s.delivery_max_concurrent,
            stale_after=timedelta(minutes=s.delivery_stale_after_minutes),
            max_retries=s.delivery_max_retries,
            drain_timeout=s.delivery_drain_timeout,
        )


@dataclass
class DispatcherStats:
    """Runtime statistics for monitoring."""
    cycles: int = 0
    dispatched: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    errors: int = 0
    stale_failed: int = 0
    started_at: Optional[datetime] = None
    stopped_at: Optional[datetime] = None
    last_cycle_at: Optional[datetime] = field(default=None)


class DeliveryDispatcher:
    """Bounded-concurrency poller over the delivery job table.

    Learn: Construct one per process and hand it its collaborators;
    there is no module-level instance. The owner calls start() once the
    event loop is running and awaits stop() on shutdown.

    Usage:
        dispatcher = DeliveryDispatcher(store, executor, audit, config)
        dispatcher.start()
        ...
        await dispatcher.stop()
    """

    def __init__(
        self,
        store: DeliveryJobStore,
        executor: DeliveryExecutor,
        audit: AuditSink,
        config: Optional[DispatcherConfig] = None,
    ):
        self.store = store
        self.executor = executor
        self.audit = audit
        self.config = config or DispatcherConfig()
        self.stats = DispatcherStats()
        self._in_flight: set[str] = set()
        self._tasks: set[asyncio.Task] = set()
        self._timer: Optional[asyncio.Task] = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def in_flight(self) -> frozenset[str]:
        return frozenset(self._in_flight)

    # ─── Lifecycle ────────────────────────────────────────

    def start(self) -> None:
        """Start polling. Returns immediately; a second call is a logged no-op."""
        if self._running:
            logger.warning("delivery_dispatcher.already_running")
            return

        # Raises RuntimeError outside a running loop, before any state changes
        loop = asyncio.get_running_loop()

        self._running = True
        self.stats.started_at = datetime.now(timezone.utc)
        self.stats.stopped_at = None
        logger.info(
            "delivery_dispatcher.started",
            channel=self.config.channel,
            max_concurrent=self.config.max_concurrent,
            poll_interval=self.config.poll_interval,
        )
        self._timer = loop.create_task(
            self._poll_loop(), name="delivery-dispatcher-poll"
        )

    async def stop(self) -> None:
        """Stop dispatching new jobs, then wait for in-flight jobs to drain.

        Learn: In-flight deliveries are never cancelled. If they are still
        running when drain_timeout expires we log and return anyway;
        the rows stay PENDING and the next dispatcher to start retries them.
        """
        if not self._running:
            return

        self._running = False

        if self._timer:
            self._timer.cancel()
            try:
                await self._timer
            except asyncio.CancelledError:
                pass
            self._timer = None

        loop = asyncio.get_running_loop()
        started = loop.time()
        while self._in_flight and loop.time() - started < self.config.drain_timeout:
            logger.info(
                "delivery_dispatcher.draining", active_jobs=len(self._in_flight)
            )
            await asyncio.sleep(self.config.drain_check_interval)

        if self._in_flight:
            logger.warning(
                "delivery_dispatcher.stopped_with_active_jobs",
                active_jobs=len(self._in_flight),
                job_ids=sorted(self._in_flight),
            )

        self.stats.stopped_at = datetime.now(timezone.utc)
        logger.info(
            "delivery_dispatcher.stopped",
            dispatched=self.stats.dispatched,
            errors=self.stats.errors,
        )

    # ─── Poll loop ────────────────────────────────────────

    async def _poll_loop(self) -> None:
        """Run one cycle immediately, then one every poll_interval.

        Learn: A failing cycle (DB unreachable, etc.) is logged and the
        loop carries on. The next tick is the retry.
        """
        loop = asyncio.get_running_loop()
        while self._running:
            cycle_started = loop.time()
            try:
                await self.poll_once()
            except Exception:
                logger.exception("delivery_dispatcher.cycle_failed")
                self.stats.errors += 1

            elapsed = loop.time() - cycle_started
            await asyncio.sleep(max(0.0, self.config.poll_interval - elapsed))

    async def poll_once(self) -> None:
        """Run a single fetch → dispatch → reconcile cycle."""
        if not self._running:
            return

        self.stats.cycles += 1
        self.stats.last_cycle_at = datetime.now(timezone.utc)

        free_slots = self.config.max_concurrent - len(self._in_flight)
        if free_slots > 0:
            jobs = await self.store.fetch_pending(self.config.channel, free_slots)
            if jobs:
                logger.info(
                    "delivery_dispatcher.jobs_found",
                    count=len(jobs),
                    job_ids=[job.id for job in jobs],
                )
            self._dispatch(jobs)
        else:
            logger.debug(
                "delivery_dispatcher.at_capacity", active_jobs=len(self._in_flight)
            )

        await self.reconcile_stale()

    def _dispatch(self, jobs: list[DeliveryJob]) -> None:
        """Hand fetched jobs to the executor, oldest first, within capacity.

        Learn: Synchronous. There is no await between the
        in_flight check and the add, so no other coroutine can slip the
        same id in between.
        """
        for job in jobs:
            if job.id in self._in_flight:
                logger.debug("delivery.already_in_flight", delivery_id=job.id)
                self.stats.skipped += 1
                continue

            # A store may hand back more rows than asked for
            if len(self._in_flight) >= self.config.max_concurrent:
                break

            self._in_flight.add(job.id)
            self.stats.dispatched += 1
            logger.info(
                "delivery.dispatched",
                delivery_id=job.id,
                destination=job.destination,
                content_type=job.content_type,
                in_flight=len(self._in_flight),
            )

            task = asyncio.create_task(
                self._process_job(job), name=f"delivery-{job.id}"
            )
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _process_job(self, job: DeliveryJob) -> None:
        """Deliver one job, audit the outcome, release its slot.

        Learn: The finally block is the capacity guarantee. Whatever
        happens in deliver() or record_outcome(), the id leaves in_flight.
        """
        log = logger.bind(delivery_id=job.id)
        try:
            try:
                result = await self.executor.deliver(job.id)
            except Exception as e:
                log.exception("delivery.error")
                self.stats.errors += 1
                result = DeliveryResult.failure(str(e) or type(e).__name__)

            if result.success:
                self.stats.succeeded += 1
                log.info("delivery.completed", message_id=result.message_id)
            else:
                self.stats.failed += 1
                log.warning("delivery.failed", error=result.error)

            try:
                await self.audit.record_outcome(job.id, result)
            except Exception:
                log.exception("delivery.audit_failed")
        finally:
            self._in_flight.discard(job.id)

    # ─── Stale reconciliation ─────────────────────────────

    async def reconcile_stale(self) -> None:
        """Fail PENDING jobs that aged out with their retries exhausted.

        Learn: Only jobs at or above max_retries are swept. A job stuck
        PENDING below that (e.g. fetched by a dispatcher that crashed
        before the executor bumped retry_count) is picked up again by
        normal polling, never by this sweep.
        """
        older_than = datetime.now(timezone.utc) - self.config.stale_after
        stale_jobs = await self.store.fetch_stale(
            self.config.channel, older_than, self.config.max_retries
        )

        for job in stale_jobs:
            if job.id in self._in_flight:
                continue  # ours, still being delivered

            logger.warning(
                "delivery.stale",
                delivery_id=job.id,
                created_at=job.created_at.isoformat(),
                retry_count=job.retry_count,
            )
            try:
                await self.store.mark_failed(job.id, STALE_ERROR_MESSAGE)
                self.stats.stale_failed += 1
            except Exception:
                logger.exception("delivery.stale_mark_failed", delivery_id=job.id)
                self.stats.errors += 1

    # ─── Status ───────────────────────────────────────────

    def get_status(self) -> dict:
        """Point-in-time snapshot for health checks."""
        return {
            "running": self._running,
            "active_jobs": len(self._in_flight),
        }

    def get_stats(self) -> dict:
        """Return dispatcher statistics for monitoring."""
        return {
            "cycles": self.stats.cycles,
            "dispatched": self.stats.dispatched,
            "succeeded": self.stats.succeeded,
            "failed": self.stats.failed,
            "skipped": self.stats.skipped,
            "errors": self.stats.errors,
            "stale_failed": self.stats.stale_failed,
            "in_flight": len(self._in_flight),
            "max_concurrent": self.config.max_concurrent,
            "started_at": (
                self.stats.started_at.isoformat()
                if self.stats.started_at
                else None
            ),
        }
