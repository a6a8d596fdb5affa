import asyncio

from config.settings import settings
from core.db import create_all, create_engine_and_sessionmaker


async def main():
    """
    One-time script to create all tables in the configured MySQL database.
    Uses a temporary async engine built from settings.MYSQL_ASYNC_URL.
    """
    if not settings.db_enabled:
        raise RuntimeError(f"MYSQL_ASYNC_URL is not configured correctly: {settings.MYSQL_ASYNC_URL}")

    engine, _ = create_engine_and_sessionmaker(settings.MYSQL_ASYNC_URL)
    await create_all(engine)
    await engine.dispose()
    print("Database schema created/updated successfully.")


if __name__ == "__main__":
    asyncio.run(main())
