"""FastAPI application factory.

Learn: App factory pattern. create_app() returns a configured FastAPI
instance. Lifespan manages startup/shutdown: Redis for the live feed,
and optionally an in-process delivery dispatcher.

The dispatcher is constructed here and stored on app.state; nothing
else in the process holds a reference to it. When it runs in the API,
do not also run intelrelay-dispatcher against the same database.
"""

from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI

from intelrelay import __version__
from intelrelay.api import api_router
from intelrelay.config import settings
from intelrelay.delivery.dispatcher import DeliveryDispatcher
from intelrelay.logs import configure_logging

logger = structlog.get_logger()


def create_app(dispatcher: Optional[DeliveryDispatcher] = None) -> FastAPI:
    """Build and return the FastAPI application.

    Pass a dispatcher to have the lifespan start and stop it (tests use
    fakes). Otherwise one is built from settings when
    run_dispatcher_in_api is enabled.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging()
        logger.info(
            "intelrelay.starting",
            version=__version__,
            environment=settings.environment,
            port=settings.port,
        )

        from intelrelay.realtime.pubsub import close_redis, init_redis
        try:
            await init_redis()
            logger.info("intelrelay.redis_connected", url=settings.redis_url)
        except Exception as e:
            logger.warning("intelrelay.redis_unavailable", error=str(e))

        owned = dispatcher
        if owned is None and settings.run_dispatcher_in_api:
            from intelrelay.dispatcher.main import build_dispatcher
            owned = build_dispatcher()

        app.state.dispatcher = owned
        if owned:
            owned.start()
            logger.info("intelrelay.dispatcher_started")

        yield

        logger.info("intelrelay.shutdown")

        if owned:
            await owned.stop()
            aclose = getattr(owned.executor, "aclose", None)
            if aclose:
                await aclose()

        await close_redis()

        from intelrelay.db.engine import engine
        await engine.dispose()

    app = FastAPI(
        title="intelrelay",
        description="Report delivery backend: Webex dispatch for generated reports",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.dispatcher = dispatcher

    from intelrelay.middleware.request_id import RequestIdMiddleware
    app.add_middleware(RequestIdMiddleware)

    app.include_router(api_router)

    return app


# Default app instance (used by uvicorn: intelrelay.main:app)
app = create_app()


def serve() -> None:
    """Run the API under uvicorn with host/port from settings (intelrelay-api)."""
    import uvicorn

    uvicorn.run(
        "intelrelay.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_config=None,
    )
