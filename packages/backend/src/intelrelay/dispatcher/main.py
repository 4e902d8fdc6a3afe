"""Dispatcher entry point — run as a separate process.

Learn: The dispatcher is its own process, separate from the API server.
This provides crash isolation: if the dispatcher dies, the API keeps running
and PENDING rows simply wait for the next dispatcher to start.

Usage:
    python -m intelrelay.dispatcher.main

Or via the installed script:
    intelrelay-dispatcher
"""

import asyncio
import signal
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from intelrelay.config import settings
from intelrelay.delivery.audit import DeliveryAuditRecorder
from intelrelay.delivery.dispatcher import DeliveryDispatcher, DispatcherConfig
from intelrelay.delivery.store import SqlDeliveryJobStore
from intelrelay.delivery.webex import WebexDeliveryService
from intelrelay.logs import configure_logging

logger = structlog.get_logger()


def build_dispatcher(
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    config: Optional[DispatcherConfig] = None,
) -> DeliveryDispatcher:
    """Wire the SQL store, Webex executor, and audit recorder into a dispatcher."""
    if session_factory is None:
        from intelrelay.db.engine import async_session_factory
        session_factory = async_session_factory

    return DeliveryDispatcher(
        store=SqlDeliveryJobStore(session_factory),
        executor=WebexDeliveryService(session_factory),
        audit=DeliveryAuditRecorder(session_factory),
        config=config or DispatcherConfig.from_settings(settings),
    )


async def run():
    """Run the dispatcher until SIGINT/SIGTERM, then drain and exit."""
    from intelrelay.db.engine import engine
    from intelrelay.realtime.pubsub import close_redis, init_redis

    try:
        await init_redis()
    except Exception as e:
        # Live feed only; deliveries work without it
        logger.warning("dispatcher.redis_unavailable", error=str(e))

    dispatcher = build_dispatcher()

    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown.set)

    logger.info(
        "dispatcher.starting",
        db=settings.database_url.split("@")[-1],
        environment=settings.environment,
    )

    dispatcher.start()
    try:
        await shutdown.wait()
    finally:
        await dispatcher.stop()
        await dispatcher.executor.aclose()
        await close_redis()
        await engine.dispose()
        logger.info("dispatcher.exited", stats=dispatcher.get_stats())


def main():
    """CLI entry point."""
    configure_logging()
    asyncio.run(run())


if __name__ == "__main__":
    main()
