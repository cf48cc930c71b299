import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from veil.config import settings

AFTER_COMMIT_HOOKS = "veil.after_commit"
LEDGER = "veil.ledger"

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    pool_pre_ping=True,
    pool_size=20,
    max_overflow=30,
    pool_timeout=30,
    pool_recycle=1800,  # Recycle connections every 30 minutes
    connect_args={
        "server_settings": {
            "statement_timeout": "30000",  # 30 second query timeout
            "idle_in_transaction_session_timeout": "60000",  # 60 second idle timeout
        }
    },
)

async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)


def after_commit(session: AsyncSession, hook: Callable[[], Awaitable[Any]]) -> None:
    """Run hook once the session's transaction has committed."""
    session.info.setdefault(AFTER_COMMIT_HOOKS, []).append(hook)


def ledger_of(session: AsyncSession) -> "Ledger | None":
    """The Ledger whose transaction owns session, if any."""
    return session.info.get(LEDGER)


class Ledger:
    """
    Serialized, atomic execution of entry points.

    Each transaction() block runs alone: either every write in it commits or
    none does. After-commit hooks (network submissions, notifications) run
    once the lock is released; a failing hook is logged and does not stop
    the ones after it.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[AsyncSession, None]:
        async with self._lock:
            async with self._session_factory() as session:
                session.info[LEDGER] = self
                try:
                    yield session
                    await session.commit()
                except Exception:
                    await session.rollback()
                    raise
                hooks = session.info.pop(AFTER_COMMIT_HOOKS, [])

        for hook in hooks:
            try:
                await hook()
            except Exception:
                logger.exception("After-commit hook failed")


ledger = Ledger(async_session_factory)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    async with ledger.transaction() as session:
        yield session


async def init_db() -> None:
    """Initialize database connection and create tables if needed."""
    from veil.db import models  # noqa: F401  registers tables on Base.metadata

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
