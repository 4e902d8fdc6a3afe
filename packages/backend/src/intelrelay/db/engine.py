"""Async SQLAlchemy engine and session factory.

Learn: SQLAlchemy 2.0 async mode: create_async_engine for connection
pooling, AsyncSession per unit of work. The dispatcher's collaborators
(job store, Webex executor, audit recorder) each open a short-lived
session per call from async_session_factory, so a slow delivery never
holds a connection that the poll loop needs.
"""

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from intelrelay.config import settings

# Connection pool: min 5, max 20 connections.
# echo=True in dev to see SQL queries.
engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    pool_size=5,
    max_overflow=15,
)

async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)
