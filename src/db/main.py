from sqlmodel import SQLModel

from config import Config
from sqlmodel.ext.asyncio.session import AsyncSession
from sqlalchemy.orm import sessionmaker
from typing import AsyncGenerator, Dict

from sqlalchemy.ext.asyncio import create_async_engine


def get_postgres_config() -> Dict:
    """Get PostgreSQL-specific connection configurations."""
    return {
        # Connection pooling settings
        "pool_size": 20,  # Maximum number of connections in the pool
        "max_overflow": 10,  # Additional connections beyond pool_size
        "pool_timeout": 30,  # Timeout for acquiring connections
        "pool_recycle": 1800,  # Recycle connections after 30 minutes
        "pool_pre_ping": True,  # Enable health checks for pooled connections
    }


def get_engine_options(url: str) -> Dict:
    if url.startswith("postgresql"):
        return get_postgres_config()
    return {}


DB_URL = Config.database_url
engine = create_async_engine(
    DB_URL,
    echo=Config.DB_ECHO,
    future=True,
    **get_engine_options(DB_URL)
)


def import_models():
    """Import every table module so SQLModel.metadata is complete."""
    import players.models  # noqa: F401
    import teams.models  # noqa: F401
    import ratings.models  # noqa: F401
    import servers.models  # noqa: F401
    import competitions.models.tournaments  # noqa: F401
    import matches.models  # noqa: F401


async def init_db():
    """Initialize database and create all tables."""
    import_models()
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)


async_session = sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Get a database session, committing on success."""
    async with async_session() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()
