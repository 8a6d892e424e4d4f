from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from .config import Settings, get_settings
from .models import Base


def build_engine(settings: Settings) -> AsyncEngine:
    options: dict[str, object] = {"echo": settings.echo_sql, "pool_pre_ping": True}
    if settings.database_url.startswith("mysql"):
        # MySQL drops idle connections after wait_timeout
        options["pool_recycle"] = 3600
    return create_async_engine(settings.database_url, **options)


engine = build_engine(get_settings())

async_session = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


async def create_schema(bind: AsyncEngine = engine) -> None:
    """Create missing tables. Deployments with migrations skip this."""
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
