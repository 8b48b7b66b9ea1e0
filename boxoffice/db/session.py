from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from boxoffice.core.config import settings


def normalize_async_url(url: str) -> str:
    if url.startswith("sqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    return url


def make_async_engine(database_url: str):
    db_url = normalize_async_url(database_url)
    kw = dict(pool_pre_ping=True)

    if db_url.startswith("postgresql+asyncpg://"):
        kw.update(
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
            pool_timeout=settings.DB_POOL_TIMEOUT,
            # connect + per-statement timeouts so a stalled database cannot
            # eat the webhook acknowledgment budget
            connect_args={
                "timeout": settings.DB_COMMAND_TIMEOUT,
                "command_timeout": settings.DB_COMMAND_TIMEOUT,
            },
        )

    engine = create_async_engine(db_url, **kw)

    if db_url.startswith("sqlite+aiosqlite://"):
        @event.listens_for(engine.sync_engine, "connect")
        def _sqlite_pragmas(dbapi_connection, _):
            # take over transaction control from pysqlite
            dbapi_connection.isolation_level = None
            cur = dbapi_connection.cursor()
            cur.execute("PRAGMA journal_mode=WAL;")
            cur.execute("PRAGMA busy_timeout=5000;")
            cur.execute("PRAGMA synchronous=NORMAL;")
            cur.execute("PRAGMA foreign_keys=ON;")
            cur.close()

        @event.listens_for(engine.sync_engine, "begin")
        def _sqlite_begin(conn):
            # SQLite has no SELECT ... FOR UPDATE; writers serialize on BEGIN IMMEDIATE
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def make_session_factory(engine) -> async_sessionmaker:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


engine = make_async_engine(settings.DATABASE_URL)

AsyncSessionLocal = make_session_factory(engine)

# Alias for scripts
async_session = AsyncSessionLocal


# FastAPI dependencies
async def get_db() -> AsyncSession:
    async with AsyncSessionLocal() as session:
        yield session


def get_session_factory() -> async_sessionmaker:
    """Units of work that must commit independently (ledger, fulfillment, escalation) open their own sessions."""
    return AsyncSessionLocal
