"""
Async engine and session management for the itinerary store.

PostgreSQL runs through asyncpg with a bounded pool; SQLite (local runs and
tests) runs through aiosqlite with foreign keys switched on per connection.
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional, Dict, Any
from urllib.parse import urlparse

from sqlmodel import SQLModel, text
from sqlalchemy import event, inspect
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.exc import SQLAlchemyError, DisconnectionError
from sqlalchemy.pool import StaticPool

from smartgo.core.settings import Settings, get_settings

logger = logging.getLogger(__name__)

ITINERARY_TABLES = ("trips", "itinerary_days", "pois", "day_poi")

_ASYNC_DRIVERS = {
    "postgresql": "postgresql+asyncpg",
    "postgres": "postgresql+asyncpg",
    "sqlite": "sqlite+aiosqlite",
}


def to_async_url(database_url: str) -> str:
    """Swap a plain postgresql:// or sqlite:// URL onto its async driver"""
    if not database_url:
        raise ValueError("DB_URL environment variable is required")

    scheme, sep, rest = database_url.partition("://")
    if not sep or not urlparse(database_url).scheme:
        raise ValueError("Invalid database URL format")
    return f"{_ASYNC_DRIVERS.get(scheme, scheme)}://{rest}"


def is_memory_sqlite(database_url: str) -> bool:
    return database_url.startswith("sqlite") and (
        database_url.rstrip("/").endswith(":memory:") or database_url.endswith("://")
    )


class DatabaseManager:
    """Owns the async engine and hands out sessions / transactions"""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.engine: Optional[AsyncEngine] = None
        self.async_session: Optional[async_sessionmaker] = None
        self._connection_stats = {
            "total_connections": 0,
            "active_connections": 0,
            "failed_connections": 0,
            "last_health_check": None,
            "health_status": "unknown"
        }

    def _prepare_database_url(self) -> str:
        url = to_async_url(self.settings.DB_URL)
        parsed = urlparse(url)
        logger.info(f"Database URL prepared: {parsed.scheme}://{parsed.hostname or ''}{parsed.path}")
        return url

    def _create_engine(self) -> AsyncEngine:
        database_url = self._prepare_database_url()
        engine_config: Dict[str, Any] = {"echo": self.settings.DB_ECHO}

        if database_url.startswith("postgresql"):
            engine_config.update({
                "pool_pre_ping": True,
                "pool_size": self.settings.DB_POOL_SIZE,
                "max_overflow": self.settings.DB_MAX_OVERFLOW,
                "pool_timeout": self.settings.DB_POOL_TIMEOUT,
                "pool_recycle": self.settings.DB_POOL_RECYCLE,
            })
        elif is_memory_sqlite(database_url):
            # one shared connection, otherwise every session sees an empty database
            engine_config.update({
                "poolclass": StaticPool,
                "connect_args": {"check_same_thread": False},
            })

        engine = create_async_engine(database_url, **engine_config)
        self._setup_event_listeners(engine)
        logger.info(f"Database engine created for {engine.url.get_backend_name()}")
        return engine

    def _setup_event_listeners(self, engine: AsyncEngine) -> None:
        stats = self._connection_stats
        enforce_foreign_keys = engine.url.get_backend_name() == "sqlite"

        @event.listens_for(engine.sync_engine, "connect")
        def on_connect(dbapi_connection, connection_record):
            stats["total_connections"] += 1
            stats["active_connections"] += 1
            if enforce_foreign_keys:
                cursor = dbapi_connection.cursor()
                cursor.execute("PRAGMA foreign_keys=ON")
                cursor.close()

        @event.listens_for(engine.sync_engine, "close")
        def on_close(dbapi_connection, connection_record):
            stats["active_connections"] = max(0, stats["active_connections"] - 1)

        @event.listens_for(engine.sync_engine, "handle_error")
        def on_error(exception_context):
            stats["failed_connections"] += 1
            logger.error(f"Database connection error: {exception_context.original_exception}")

    async def initialize(self) -> None:
        """Create the engine and session factory, then probe connectivity"""
        try:
            self.engine = self._create_engine()
            self.async_session = async_sessionmaker(
                self.engine,
                class_=AsyncSession,
                expire_on_commit=False,
                autoflush=True,
            )
            await self.health_check()
            logger.info("Database manager initialized successfully")
        except Exception as e:
            logger.error(f"Failed to initialize database manager: {e}")
            raise

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """
        One session per request. Commits are left to the caller (the sync
        engine's unit of work); anything escaping the block rolls back.
        """
        if not self.async_session:
            raise RuntimeError("Database manager not initialized")

        session = self.async_session()
        try:
            yield session
        except DisconnectionError:
            logger.error("Database disconnection detected")
            self._connection_stats["failed_connections"] += 1
            await session.rollback()
            raise
        except SQLAlchemyError as e:
            logger.error(f"Database session error: {e}")
            await session.rollback()
            raise
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    @asynccontextmanager
    async def transaction(self):
        """Session inside BEGIN; commits when the block exits cleanly"""
        async with self.get_session() as session:
            try:
                async with session.begin():
                    yield session
            except Exception:
                logger.warning("Transaction rolled back due to error")
                raise

    async def _missing_tables(self) -> list:
        async with self.engine.connect() as conn:
            existing = await conn.run_sync(lambda sync_conn: set(inspect(sync_conn).get_table_names()))
        return [name for name in ITINERARY_TABLES if name not in existing]

    async def health_check(self) -> Dict[str, Any]:
        """Connectivity probe plus a check that the itinerary tables exist"""
        health_info = {
            "status": "healthy",
            "timestamp": time.time(),
            "connection_stats": self._connection_stats.copy(),
            "checks": {}
        }

        try:
            start_time = time.time()
            async with self.get_session() as session:
                await session.execute(text("SELECT 1"))
            health_info["checks"]["connectivity"] = {
                "status": "pass",
                "response_time": f"{time.time() - start_time:.3f}s"
            }

            missing = await self._missing_tables()
            # tables are created right after the startup probe, so a gap here is informational
            health_info["checks"]["schema"] = {
                "status": "fail" if missing else "pass",
                "missing_tables": missing,
            }
            self._connection_stats["health_status"] = "healthy"
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            health_info["status"] = "unhealthy"
            health_info["error"] = str(e)
            health_info["checks"]["connectivity"] = {"status": "fail", "error": str(e)}
            self._connection_stats["health_status"] = "unhealthy"

        self._connection_stats["last_health_check"] = time.time()
        return health_info

    async def init_db(self) -> None:
        """Create tables for every registered SQLModel"""
        if not self.engine:
            raise RuntimeError("Database engine not initialized")

        # registers the tables on SQLModel.metadata
        import smartgo.db.models  # noqa: F401

        async with self.engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)
        logger.info(f"Database tables ready: {', '.join(ITINERARY_TABLES)}")

    async def close(self) -> None:
        if self.engine:
            logger.info("Closing database connections...")
            await self.engine.dispose()
            self.engine = None
            self.async_session = None


db_manager = DatabaseManager()


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding one session per request"""
    async with db_manager.get_session() as session:
        yield session
