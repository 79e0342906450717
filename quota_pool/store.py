"""Persistent counters for per-user and per-model daily usage."""

import logging
import os
from datetime import date
from pathlib import Path
from typing import Optional

from sqlalchemy import event, func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from quota_pool.db_models import (
    Base,
    SystemDailyTracking,
    UsageRecord,
    UserDailyAllocation,
    utcnow,
)

logger = logging.getLogger(__name__)

_USER_ROW_KEY = ["user_id", "model_name", "allocation_date"]
_SYSTEM_ROW_KEY = ["model_name", "tracking_date"]


def _is_sqlite_url(database_url: str) -> bool:
    return make_url(database_url).get_backend_name() == "sqlite"


def _get_sqlite_busy_timeout_ms() -> int:
    raw = os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")
    try:
        timeout = int(raw)
    except ValueError:
        timeout = 5000
    return max(1000, timeout)


def _configure_sqlite_engine(engine: AsyncEngine) -> None:
    busy_timeout_ms = _get_sqlite_busy_timeout_ms()

    @event.listens_for(engine.sync_engine, "connect")
    def _set_sqlite_pragmas(dbapi_connection, _connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute(f"PRAGMA busy_timeout={busy_timeout_ms}")
        cursor.close()


def create_db_engine(database_url: str) -> AsyncEngine:
    connect_args = {}
    engine_kwargs = {}
    if _is_sqlite_url(database_url):
        connect_args["timeout"] = _get_sqlite_busy_timeout_ms() / 1000
        db_path = make_url(database_url).database
        if not db_path or db_path == ":memory:":
            # one shared connection, otherwise every session sees an empty db
            connect_args["check_same_thread"] = False
            engine_kwargs["poolclass"] = StaticPool
        else:
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    engine = create_async_engine(
        database_url, connect_args=connect_args, **engine_kwargs
    )
    if _is_sqlite_url(database_url):
        _configure_sqlite_engine(engine)
    return engine


class CounterStore:
    """Daily usage rows with atomic upsert-increment.

    Increments are expressed as ``INSERT .. ON CONFLICT DO UPDATE`` so that
    concurrent writers, including other processes sharing the database,
    never lose an update.
    """

    def __init__(self, engine: AsyncEngine):
        dialect = engine.dialect.name
        if dialect == "sqlite":
            self._insert = sqlite.insert
        elif dialect == "postgresql":
            self._insert = postgresql.insert
        else:
            raise ValueError(f"Unsupported database dialect: {dialect}")

        self.engine = engine
        self._session_maker = async_sessionmaker(engine, expire_on_commit=False)

    async def create_tables(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        await self.engine.dispose()

    async def get_user_usage(self, user_id: str, model_name: str, day: date) -> int:
        async with self._session_maker() as session:
            used = await session.scalar(
                select(UserDailyAllocation.requests_used_today).where(
                    UserDailyAllocation.user_id == user_id,
                    UserDailyAllocation.model_name == model_name,
                    UserDailyAllocation.allocation_date == day,
                )
            )
        return used or 0

    async def ensure_user_allocation(
        self,
        user_id: str,
        model_name: str,
        day: date,
        allocated: int,
        active_users: int,
    ) -> int:
        """Create or refresh the user's row for ``day``; return usage so far."""
        now = utcnow()
        stmt = self._insert(UserDailyAllocation).values(
            user_id=user_id,
            model_name=model_name,
            allocation_date=day,
            allocated_requests_today=allocated,
            requests_used_today=0,
            active_users_count=active_users,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=_USER_ROW_KEY,
            set_={
                "allocated_requests_today": stmt.excluded.allocated_requests_today,
                "active_users_count": stmt.excluded.active_users_count,
                "updated_at": now,
            },
        )

        async with self._session_maker() as session:
            await session.execute(stmt)
            used = await session.scalar(
                select(UserDailyAllocation.requests_used_today).where(
                    UserDailyAllocation.user_id == user_id,
                    UserDailyAllocation.model_name == model_name,
                    UserDailyAllocation.allocation_date == day,
                )
            )
            await session.commit()
        return used or 0

    async def increment_user_usage(
        self,
        user_id: str,
        model_name: str,
        day: date,
        total_available: int,
        key_index: Optional[int] = None,
    ) -> int:
        """Count one request for the user and the model; return the new total."""
        now = utcnow()

        user_stmt = self._insert(UserDailyAllocation).values(
            user_id=user_id,
            model_name=model_name,
            allocation_date=day,
            allocated_requests_today=0,
            requests_used_today=1,
            active_users_count=1,
            created_at=now,
            updated_at=now,
        )
        user_stmt = user_stmt.on_conflict_do_update(
            index_elements=_USER_ROW_KEY,
            set_={
                "requests_used_today": UserDailyAllocation.requests_used_today + 1,
                "updated_at": now,
            },
        )

        system_stmt = self._insert(SystemDailyTracking).values(
            model_name=model_name,
            tracking_date=day,
            total_requests_available=total_available,
            total_requests_used=1,
            updated_at=now,
        )
        system_stmt = system_stmt.on_conflict_do_update(
            index_elements=_SYSTEM_ROW_KEY,
            set_={
                "total_requests_used": SystemDailyTracking.total_requests_used + 1,
                "updated_at": now,
            },
        )

        async with self._session_maker() as session:
            await session.execute(user_stmt)
            await session.execute(system_stmt)
            session.add(
                UsageRecord(
                    created_at=now,
                    user_id=user_id,
                    model_name=model_name,
                    usage_date=day,
                    key_index=key_index,
                )
            )
            used = await session.scalar(
                select(UserDailyAllocation.requests_used_today).where(
                    UserDailyAllocation.user_id == user_id,
                    UserDailyAllocation.model_name == model_name,
                    UserDailyAllocation.allocation_date == day,
                )
            )
            await session.commit()
        return used or 0

    async def count_active_users(
        self, model_name: str, start: date, end: date
    ) -> int:
        """Distinct users with at least one request between start and end."""
        async with self._session_maker() as session:
            count = await session.scalar(
                select(func.count(func.distinct(UserDailyAllocation.user_id))).where(
                    UserDailyAllocation.model_name == model_name,
                    UserDailyAllocation.allocation_date >= start,
                    UserDailyAllocation.allocation_date <= end,
                    UserDailyAllocation.requests_used_today > 0,
                )
            )
        return count or 0

    async def upsert_system_tracking(
        self,
        model_name: str,
        day: date,
        total_available: int,
        active_users: int,
        requests_per_user: int,
    ) -> None:
        now = utcnow()
        stmt = self._insert(SystemDailyTracking).values(
            model_name=model_name,
            tracking_date=day,
            total_requests_available=total_available,
            total_requests_used=0,
            active_users_count=active_users,
            requests_per_user=requests_per_user,
            last_allocation_update=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=_SYSTEM_ROW_KEY,
            set_={
                "total_requests_available": stmt.excluded.total_requests_available,
                "active_users_count": stmt.excluded.active_users_count,
                "requests_per_user": stmt.excluded.requests_per_user,
                "last_allocation_update": now,
                "updated_at": now,
            },
        )
        async with self._session_maker() as session:
            await session.execute(stmt)
            await session.commit()

    async def get_system_tracking(
        self, model_name: str, day: date
    ) -> Optional[SystemDailyTracking]:
        async with self._session_maker() as session:
            return await session.scalar(
                select(SystemDailyTracking).where(
                    SystemDailyTracking.model_name == model_name,
                    SystemDailyTracking.tracking_date == day,
                )
            )

    async def count_usage_records(self, user_id: str, model_name: str) -> int:
        async with self._session_maker() as session:
            count = await session.scalar(
                select(func.count(UsageRecord.id)).where(
                    UsageRecord.user_id == user_id,
                    UsageRecord.model_name == model_name,
                )
            )
        return count or 0


async def init_store(database_url: str) -> CounterStore:
    store = CounterStore(create_db_engine(database_url))
    await store.create_tables()
    logger.info("Counter store ready (%s)", make_url(database_url).get_backend_name())
    return store
