"""
Broker connection management.
Owns the async SQLAlchemy engine and hands out short-lived sessions.
"""

import asyncio
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager, nullcontext
from typing import Any

from sqlalchemy import text
from sqlalchemy.exc import DisconnectionError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from dispatcher.broker.models import Base
from dispatcher.errors import BrokerUnavailable

logger = logging.getLogger(__name__)

# Driver-level faults that mean the store itself is unreachable
CONNECTIVITY_ERRORS = (OperationalError, InterfaceError, DisconnectionError, OSError)


class BrokerClient:
    """
    Connection to the durable job store.

    One client is shared by every queue and worker pool of a process.
    PostgreSQL connections come from the engine's pool; SQLite only allows
    one writer, so transactions are serialized through an asyncio lock.
    """

    def __init__(
        self,
        url: str,
        pool_size: int = 10,
        max_overflow: int = 20,
        echo: bool = False,
    ):
        """
        Initialize the client. No connection is opened until ``connect``.

        Args:
            url: SQLAlchemy async database URL.
            pool_size: Connections kept open in the pool.
            max_overflow: Extra connections allowed under load.
            echo: Log every SQL statement.
        """
        self.url = url
        self._pool_size = pool_size
        self._max_overflow = max_overflow
        self._echo = echo
        self._engine: AsyncEngine | None = None
        self._sessionmaker: async_sessionmaker[AsyncSession] | None = None
        self._lock: asyncio.Lock | None = None

    @property
    def is_connected(self) -> bool:
        return self._engine is not None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise BrokerUnavailable("Broker not connected. Call connect() first.")
        return self._engine

    def _engine_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {"echo": self._echo, "pool_pre_ping": True}
        if not self.url.startswith("sqlite"):
            kwargs["pool_size"] = self._pool_size
            kwargs["max_overflow"] = self._max_overflow
        return kwargs

    async def connect(self, create_schema: bool = True) -> None:
        """
        Open the engine and optionally create the jobs table.

        Args:
            create_schema: Create missing tables on connect.

        Raises:
            BrokerUnavailable: If the store cannot be reached.
        """
        if self._engine is not None:
            return

        engine = create_async_engine(self.url, **self._engine_kwargs())
        try:
            async with engine.begin() as conn:
                if create_schema:
                    await conn.run_sync(Base.metadata.create_all)
                else:
                    await conn.execute(text("SELECT 1"))
        except CONNECTIVITY_ERRORS as e:
            await engine.dispose()
            raise BrokerUnavailable(f"Cannot connect to broker: {e}") from e

        self._engine = engine
        self._sessionmaker = async_sessionmaker(
            bind=engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
        self._lock = asyncio.Lock() if engine.dialect.name == "sqlite" else None
        logger.info("Broker connection initialized", extra={"dialect": engine.dialect.name})

    async def close(self) -> None:
        """Dispose of the engine and its pooled connections."""
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._sessionmaker = None
            self._lock = None
            logger.info("Broker connection closed")

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession]:
        """
        Context manager for one broker transaction.

        Commits on success and rolls back on error. Connectivity faults are
        re-raised as BrokerUnavailable.

        Yields:
            AsyncSession: An async database session.
        """
        if self._sessionmaker is None:
            raise BrokerUnavailable("Broker not connected. Call connect() first.")

        async with self._lock or nullcontext():
            async with self._sessionmaker() as session:
                try:
                    yield session
                    await session.commit()
                except CONNECTIVITY_ERRORS as e:
                    await self._safe_rollback(session)
                    raise BrokerUnavailable(f"Broker operation failed: {e}") from e
                except BaseException:
                    await self._safe_rollback(session)
                    raise

    @staticmethod
    async def _safe_rollback(session: AsyncSession) -> None:
        try:
            await session.rollback()
        except CONNECTIVITY_ERRORS:
            logger.warning("Rollback failed on a broken broker connection")
