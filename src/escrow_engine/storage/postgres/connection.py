"""Async engine and session factory for the PostgreSQL order store.

One engine per process, created by ``init_engine`` and torn down by
``dispose``.  Units of work hold ``SELECT ... FOR UPDATE`` row locks on
an order, so every connection carries a ``lock_timeout``: a request
stuck behind a long-running transition fails instead of queueing
forever.
"""

from __future__ import annotations

import logging

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from .models import Base

logger = logging.getLogger(__name__)

_engine: AsyncEngine | None = None


def _build_engine(
    url: str,
    *,
    lock_timeout_ms: int,
    echo: bool,
    use_null_pool: bool,
) -> AsyncEngine:
    options: dict = {
        "echo": echo,
        "connect_args": {
            "server_settings": {
                "lock_timeout": str(lock_timeout_ms),
                "application_name": "escrow-engine",
            }
        },
    }
    if use_null_pool:
        options["poolclass"] = NullPool
    else:
        options.update(pool_size=5, max_overflow=10, pool_recycle=1800, pool_pre_ping=True)
    return create_async_engine(url, **options)


def init_engine(
    url: str,
    *,
    lock_timeout_ms: int = 5000,
    echo: bool = False,
    use_null_pool: bool = False,
) -> async_sessionmaker[AsyncSession]:
    """Create the process engine and return a session factory bound to it.

    Args:
        url: ``postgresql+asyncpg://`` connection URL.
        lock_timeout_ms: How long a unit of work waits for an order lock.
        echo: Log emitted SQL.
        use_null_pool: No pooling, for one-off CLI commands.
    """
    global _engine  # noqa: PLW0603

    if _engine is not None:
        logger.warning("init_engine called twice; replacing the existing engine")
    _engine = _build_engine(
        url, lock_timeout_ms=lock_timeout_ms, echo=echo, use_null_pool=use_null_pool
    )
    logger.info(
        "Order store connected to %s", make_url(url).render_as_string(hide_password=True)
    )
    return async_sessionmaker(bind=_engine, class_=AsyncSession, expire_on_commit=False)


async def create_all() -> None:
    """Create the order tables directly (development; production uses Alembic)."""
    if _engine is None:
        raise RuntimeError("Call init_engine() before create_all()")
    async with _engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Order tables created")


async def dispose() -> None:
    global _engine  # noqa: PLW0603

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        logger.info("Order store connection pool closed")
