import asyncio

from sqlalchemy.ext.asyncio import AsyncEngine

from video_enrichment.core.config import get_settings
from video_enrichment.db.models import Base
from video_enrichment.db.session import create_engine


async def init_models(db_engine: AsyncEngine) -> None:
    """Create database tables."""

    async with db_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def _main() -> None:
    engine = create_engine(get_settings())
    try:
        await init_models(engine)
    finally:
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(_main())
