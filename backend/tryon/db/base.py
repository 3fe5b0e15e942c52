"""Shared SQLAlchemy base, engine lifecycle and session factory."""

from sqlalchemy import MetaData, event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from tryon.core.config import get_settings

# Stable constraint names so Alembic autogenerate diffs cleanly
NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


class Base(DeclarativeBase):
    metadata = MetaData(naming_convention=NAMING_CONVENTION)


_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _enable_sqlite_foreign_keys(engine: AsyncEngine) -> None:
    """SQLite ignores FOREIGN KEY clauses unless asked per connection."""

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def make_engine(url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine, applying dialect-specific setup."""
    if url.startswith("sqlite"):
        engine = create_async_engine(url, echo=echo)
        _enable_sqlite_foreign_keys(engine)
        return engine
    return create_async_engine(url, echo=echo, pool_pre_ping=True)


def bind_engine(engine: AsyncEngine | None) -> async_sessionmaker[AsyncSession] | None:
    """Point the module-level factory at ``engine`` (or clear it with None)."""
    global _engine, _session_factory

    _engine = engine
    _session_factory = (
        async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False) if engine is not None else None
    )
    return _session_factory


async def create_schema(engine: AsyncEngine) -> None:
    # Import all models so metadata is populated before create_all
    import tryon.db.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def init_db(url: str | None = None) -> None:
    """Initialize the async database engine and session factory.

    Creates all tables defined via Base.metadata. Production deployments
    also run the Alembic migrations; create_all is a no-op on existing tables.
    """
    if _engine is not None:
        return

    settings = get_settings()
    engine = make_engine(url or settings.database_url, echo=settings.debug)
    bind_engine(engine)
    await create_schema(engine)


async def close_db() -> None:
    """Dispose of the engine and release all connections."""
    if _engine is not None:
        await _engine.dispose()
        bind_engine(None)


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the configured session factory.

    Raises RuntimeError if init_db() has not been called.
    """
    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _session_factory
