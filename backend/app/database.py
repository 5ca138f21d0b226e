"""
Async engine and sessions for the local sync tables.

``billing_sync``, ``tebra_documents`` and ``subscriptions`` share one
engine.  Request handlers get a session from ``get_db``; the nightly
billing loop and the health check open their own with
``AsyncSessionLocal``.
"""

from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from app.config import get_settings

settings = get_settings()

# Shared by webhook bursts and the nightly billing run
engine = create_async_engine(
    settings.DATABASE_URL,
    pool_size=settings.DB_POOL_SIZE,
    max_overflow=settings.DB_MAX_OVERFLOW,
    pool_timeout=settings.DB_POOL_TIMEOUT,
    pool_recycle=1800,
    pool_pre_ping=True,
    connect_args={"server_settings": {"statement_timeout": "30000"}},
)

# Loaded attributes survive commit
AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
)

Base = declarative_base()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield a request-scoped session.

    The billing stores only flush; callers commit, so the webhook flow
    controls when a ``received`` record becomes durable.  The session is
    rolled back if the handler raises.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
