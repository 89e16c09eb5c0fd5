from contextlib import asynccontextmanager

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from taskboard.core.config import get_settings


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def build_engine(url: str, echo: bool = False) -> AsyncEngine:
    engine = create_async_engine(
        url,
        echo=echo,
        future=True,
        pool_pre_ping=True,
    )
    if engine.dialect.name == "sqlite":
        event.listen(engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
    return engine


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


settings = get_settings()

# Create async engine
engine = build_engine(settings.database_url, echo=settings.database_echo)

# Create async session factory using async_sessionmaker
async_session = build_session_factory(engine)


# Dependency for getting DB session
async def get_db():
    async with async_session() as session:
        yield session


@asynccontextmanager
async def atomic(db: AsyncSession):
    """Commit everything done inside the block, or roll all of it back."""
    try:
        yield db
        await db.commit()
    except BaseException:
        await db.rollback()
        raise


async def create_db_and_tables(target: AsyncEngine = engine):
    # Import table models so they register on SQLModel.metadata
    import taskboard.models  # noqa: F401

    async with target.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
