from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import NullPool
from .config import settings


def _engine_options(url: str) -> dict:
    if not url.startswith("postgresql"):
        # SQLite connections are not shared between event loops
        return {"echo": False, "poolclass": NullPool}
    return {
        "pool_size": 20,
        "max_overflow": 40,
        "pool_pre_ping": True,
        "pool_recycle": 1800,
        "pool_timeout": 20,
        "echo": False,
        "connect_args": {
            "server_settings": {
                "application_name": "examportal_api"
            }
        },
    }


async_engine = create_async_engine(
    settings.async_database_url,
    **_engine_options(settings.async_database_url)
)
AsyncSessionLocal = sessionmaker(
    bind=async_engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)

Base = declarative_base()


async def get_async_db() -> AsyncSession:
    async with AsyncSessionLocal() as session:
        yield session


async def create_db_and_tables():
    from ..models import exam  # noqa: F401  registers tables on Base.metadata

    async with async_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
