"""
Database session management with SQLAlchemy async
"""

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool
from core.config import settings
import logging

logger = logging.getLogger(__name__)


def configure_sqlite(engine: AsyncEngine) -> None:
    """
    Make SQLite behave like the production database for sync runs.

    pysqlite starts transactions lazily and never emits SAVEPOINT correctly,
    so BEGIN is issued explicitly and foreign keys are switched on.
    """
    if engine.dialect.name != "sqlite":
        return

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine for the given URL"""
    engine = create_async_engine(
        database_url,
        echo=echo,
        poolclass=NullPool,
        future=True
    )
    configure_sqlite(engine)
    return engine


def build_session_maker(engine: AsyncEngine) -> async_sessionmaker:
    """Create a session factory bound to the engine"""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False
    )


# Create async engine
engine = build_engine(
    settings.DATABASE_URL,
    echo=settings.ENVIRONMENT == "development"
)

# Create session factory
async_session_maker = build_session_maker(engine)


async def get_session() -> AsyncSession:
    """Get database session"""
    async with async_session_maker() as session:
        yield session
