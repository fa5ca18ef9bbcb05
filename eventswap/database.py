"""
EventSwap Platform - Async Database Engine & Session
Uses SQLAlchemy 2.0 async with asyncpg driver (aiosqlite in tests).
"""
import functools
import logging
from typing import Any, Callable

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.orm.exc import StaleDataError

from eventswap.config import get_settings

logger = logging.getLogger("eventswap.database")
settings = get_settings()


def build_engine(url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine with pool settings suited to the driver."""
    if url.startswith("sqlite"):
        return create_async_engine(
            url,
            echo=echo,
            connect_args={"timeout": 30},
        )
    return create_async_engine(
        url,
        echo=echo,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,
    )


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
    )


# ── Async Engine ──
engine = build_engine(settings.DATABASE_URL, echo=settings.DEBUG)

# ── Session Factory ──
async_session = build_session_factory(engine)


# ── Declarative Base ──
class Base(DeclarativeBase):
    """Base class for all ORM models."""
    pass


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """FastAPI dependency; overridden in tests to point at a scratch database."""
    return async_session


# ═══════════════════════════════════════════════════════
#  Optimistic-lock races
# ═══════════════════════════════════════════════════════


def lost_race_as(make_error: Callable[[Any], Exception]):
    """
    Decorate an async service write so that losing a ``version_id_col``
    race surfaces as a typed conflict.

    The StaleDataError is left to unwind the session and its transaction
    untouched (the rolled-back rows are expired and must not be read), and
    is translated here, outside the unit of work. ``make_error`` receives
    the method's first argument, the id of the entity being written.
    """
    def decorator(func):
        @functools.wraps(func)
        async def wrapper(self, subject, *args, **kwargs):
            try:
                return await func(self, subject, *args, **kwargs)
            except StaleDataError:
                logger.warning("Lost a concurrent write on %s in %s", subject, func.__name__)
                raise make_error(subject) from None
        return wrapper
    return decorator
