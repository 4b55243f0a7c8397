import logging
import ssl

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.core.config import settings

logger = logging.getLogger(__name__)


def _connect_args() -> dict:
    if not settings.async_database_url.startswith("postgresql+asyncpg://"):
        return {}
    # pgbouncer in transaction mode does not support prepared statements
    args = {"statement_cache_size": 0, "prepared_statement_cache_size": 0}
    if settings.DATABASE_SSL:
        ssl_context = ssl.create_default_context()
        ssl_context.check_hostname = False
        ssl_context.verify_mode = ssl.CERT_NONE
        args["ssl"] = ssl_context
    return args


db_url = settings.async_database_url
masked_url = db_url.split("@")[-1] if "@" in db_url else db_url
logger.info(f"DB ENGINE CONFIG: host={masked_url}, ssl={settings.DATABASE_SSL}")

engine = create_async_engine(
    db_url,
    pool_pre_ping=True,
    pool_recycle=300,
    connect_args=_connect_args(),
)

async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_db():
    async with async_session_factory() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_models() -> None:
    from app.models import group, group_member, notification  # noqa: F401
    from app.models.base import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
