import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Awaitable, Callable, Optional, TypeVar

from fastapi import Request
from sqlalchemy import DateTime
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.types import TypeDecorator

from .errors import TransientError


logger = logging.getLogger(__name__)

T = TypeVar("T")


class Base(DeclarativeBase):
    pass


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware timestamp that always round-trips as UTC.

    Postgres stores timestamptz natively; SQLite drops the offset, so values
    are normalized to UTC on the way in and re-tagged on the way out.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("naive datetime passed to a UTCDateTime column")
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: Optional[datetime], dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Store:
    """
    The resource store handle: one engine and one session factory per process.

    Created at startup and handed to every component explicitly; never
    imported as module state.
    """

    def __init__(
        self,
        database_url: str,
        *,
        transaction_timeout: float = 10.0,
        echo: bool = False,
    ):
        engine_kwargs: dict = {"echo": echo, "pool_pre_ping": True}
        if database_url.startswith("postgresql"):
            engine_kwargs.update(
                pool_recycle=3600,  # Recycle connections after 1 hour
                pool_size=10,
                max_overflow=20,
            )
        self.database_url = database_url
        self.transaction_timeout = transaction_timeout
        self.engine = create_async_engine(database_url, **engine_kwargs)
        self.sessionmaker = async_sessionmaker(self.engine, expire_on_commit=False, class_=AsyncSession)

    async def create_all(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        async with self.sessionmaker() as session:
            yield session

    async def run_in_transaction(
        self,
        fn: Callable[[AsyncSession], Awaitable[T]],
        timeout: Optional[float] = None,
    ) -> T:
        """
        Run ``fn(session)`` inside a single transaction.

        Commits when ``fn`` returns, rolls back when it raises. The whole unit
        of work is bounded by ``timeout``; on expiry nothing is committed and
        a TransientError is raised so the caller may retry.
        """

        async def _unit_of_work() -> T:
            async with self.sessionmaker() as session:
                async with session.begin():
                    return await fn(session)

        limit = timeout if timeout is not None else self.transaction_timeout
        try:
            return await asyncio.wait_for(_unit_of_work(), timeout=limit)
        except asyncio.TimeoutError:
            logger.warning(f"Transaction exceeded {limit}s and was rolled back")
            raise TransientError("The store is busy. Please retry.", code="STORE_TIMEOUT")
        except OperationalError as exc:
            logger.warning(f"Transaction failed with a retryable store error: {exc}")
            raise TransientError("The store is busy. Please retry.", code="STORE_UNAVAILABLE") from exc


def get_store(request: Request) -> Store:
    return request.app.state.store
