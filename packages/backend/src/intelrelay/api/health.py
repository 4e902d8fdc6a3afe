"""Health check endpoint.

Learn: Verifies the server is running, that Postgres and Redis are
reachable, and reports the in-process delivery dispatcher's status
when the API owns one (INTELRELAY_RUN_DISPATCHER_IN_API=true).
"""

from fastapi import APIRouter, Request
from sqlalchemy import text

from intelrelay import __version__

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """Check server health, dependency connectivity, and dispatcher status."""
    checks = {"server": "ok", "version": __version__}

    # Check Postgres
    try:
        from intelrelay.db.engine import engine

        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        checks["postgres"] = "ok"
    except Exception as e:
        checks["postgres"] = f"error: {e}"

    # Check Redis
    try:
        from redis.asyncio import from_url
        from intelrelay.config import settings

        r = from_url(settings.redis_url)
        await r.ping()
        await r.aclose()
        checks["redis"] = "ok"
    except Exception as e:
        checks["redis"] = f"error: {e}"

    status = "healthy" if all(
        v == "ok" for k, v in checks.items() if k != "version"
    ) else "degraded"

    dispatcher = getattr(request.app.state, "dispatcher", None)
    checks["dispatcher"] = dispatcher.get_status() if dispatcher else None

    return {"status": status, **checks}
