"""
Database Configuration and Session Management
============================================

Engine and session factory builders for the Bounty Escrow Engine.

Production runs on PostgreSQL (asyncpg) at SERIALIZABLE isolation. Local runs
and the test-suite run on SQLite (aiosqlite), where every transaction is opened
with BEGIN IMMEDIATE so concurrent writers serialize on the database lock
instead of failing at commit time.
"""

import logging
from typing import Optional

from sqlalchemy import event, inspect, text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from config import Config
from models import Base

logger = logging.getLogger(__name__)


def normalize_async_url(url: str) -> str:
    """Rewrite a plain database URL for the async drivers"""
    if url.startswith('postgres://'):
        url = url.replace('postgres://', 'postgresql://', 1)
    if url.startswith('postgresql://'):
        url = url.replace('postgresql://', 'postgresql+asyncpg://', 1)
        # asyncpg uses 'ssl' instead of 'sslmode' parameter
        url = url.replace('sslmode=require', 'ssl=require')
        url = url.replace('sslmode=prefer', 'ssl=prefer')
        url = url.replace('sslmode=disable', 'ssl=disable')
    elif url.startswith('sqlite://'):
        url = url.replace('sqlite://', 'sqlite+aiosqlite://', 1)
    return url


def _install_sqlite_locking(engine: AsyncEngine) -> None:
    """Take the write lock at BEGIN so read-check-write sequences cannot interleave"""

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # Disable the driver's implicit BEGIN; the "begin" listener issues its own
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_async_engine(url: Optional[str] = None, echo: Optional[bool] = None) -> AsyncEngine:
    """Create the async engine for ``url`` (defaults to Config.DATABASE_URL)"""
    database_url = normalize_async_url(url or Config.DATABASE_URL)
    if not database_url:
        raise ValueError("DATABASE_URL environment variable is required")

    echo = Config.DATABASE_ECHO if echo is None else echo

    if database_url.startswith('sqlite'):
        engine = create_async_engine(
            database_url,
            echo=echo,
            connect_args={"timeout": Config.SQLITE_BUSY_TIMEOUT},
        )
        _install_sqlite_locking(engine)
        logger.info("🗄️ Bounty store: SQLite (BEGIN IMMEDIATE write locking)")
        return engine

    engine = create_async_engine(
        database_url,
        isolation_level="SERIALIZABLE",
        pool_size=Config.DB_POOL_SIZE,
        max_overflow=Config.DB_MAX_OVERFLOW,
        pool_pre_ping=True,    # Validate connections before use
        pool_recycle=3600,     # Recycle connections every hour
        pool_timeout=Config.DB_POOL_TIMEOUT,
        echo=echo,
        connect_args={
            "server_settings": {
                "application_name": "bounty_escrow_engine",  # For monitoring in pg_stat_activity
            },
            "timeout": 10,
            "command_timeout": 30,
        }
    )
    logger.info("🗄️ Bounty store: PostgreSQL (SERIALIZABLE)")
    return engine


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    """Session factory bound to ``engine``"""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        autoflush=False,
        expire_on_commit=False  # Returned rows stay readable after commit
    )


async def create_tables(engine: AsyncEngine) -> None:
    """Create all database tables if they don't exist"""
    logger.info("🏗️ Creating database tables (if they don't exist)...")
    logger.info(f"📊 Found {len(Base.metadata.tables)} table models to create")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all, checkfirst=True)
        existing_tables = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())

    logger.info(f"✅ Database schema verified: {len(existing_tables)} tables available")


async def check_connection(engine: AsyncEngine) -> bool:
    """Test database connection"""
    try:
        async with engine.connect() as connection:
            await connection.execute(text("SELECT 1"))
        logger.info("✅ Database connection test successful")
        return True
    except Exception as e:
        logger.error(f"❌ Database connection test failed: {e}")
        return False

