"""
Database Configuration and Session Management
Async engine for the SQL-backed assignment store
"""

from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from sqlalchemy import text
import structlog

from tenant_rbac.core.config import Settings, database_config

logger = structlog.get_logger()

# Create declarative base
Base = declarative_base()


def normalize_database_url(database_url: str) -> str:
    """Select the async driver for plain URLs"""
    if database_url.startswith("postgresql://"):
        return database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if database_url.startswith("sqlite://") and "+aiosqlite" not in database_url:
        return database_url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return database_url


def create_engine(settings: Settings) -> AsyncEngine:
    """
    Create the async engine for the assignment store

    Args:
        settings: Engine settings; DATABASE_URL must be set

    Returns:
        Configured async engine
    """
    if not settings.DATABASE_URL:
        raise ValueError("DATABASE_URL is required for the SQL assignment store")

    database_url = normalize_database_url(settings.DATABASE_URL)
    engine_kwargs = database_config(settings)

    # Only add connect_args for PostgreSQL
    if "postgresql" in database_url:
        engine_kwargs["connect_args"] = {
            "server_settings": {
                "application_name": "tenant-rbac",
            }
        }

    return create_async_engine(database_url, **engine_kwargs)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def check_database_health(engine: AsyncEngine) -> bool:
    """
    Check database connectivity
    Used by readiness probes of the embedding service
    """
    try:
        async with engine.begin() as conn:
            result = await conn.execute(text("SELECT 1"))
            return result.scalar() == 1
    except Exception as e:
        logger.error("Database health check failed", error=str(e))
        return False


async def init_database(engine: AsyncEngine):
    """
    Create assignment tables
    Migrations own the schema in deployed environments; this is for tests and local runs
    """
    try:
        async with engine.begin() as conn:
            # Import all models to ensure they're registered
            from tenant_rbac.models import assignment, tenant  # noqa: F401

            await conn.run_sync(Base.metadata.create_all)

        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error("Database initialization failed", error=str(e))
        raise


async def close_database(engine: AsyncEngine):
    """
    Close database connections
    Called during runtime shutdown
    """
    try:
        await engine.dispose()
        logger.info("Database connections closed")
    except Exception as e:
        logger.error("Error closing database connections", error=str(e))
