"""
Async database engine and session management.

Purpose:
- Create SQLAlchemy async engine (MySQL/aiomysql in prod, SQLite/aiosqlite in tests)
- Provide async session factory, handed explicitly to the DB-backed services
- Provide Base declarative class for ORM models

Production notes:
- Use connection pooling with appropriate pool_size and max_overflow
- Each concurrent work unit opens its own session from the factory;
  an AsyncSession must never be shared between tasks
"""
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base
from datetime import datetime, timezone
import logging

logger = logging.getLogger(__name__)

Base = declarative_base()


def create_engine_and_sessionmaker(url: str, echo: bool = False) -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
	"""Build the engine + session factory once at process start."""
	engine = create_async_engine(url, echo=echo, future=True)
	session_maker = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
	logger.info("Async DB engine created: %s", engine.url.render_as_string(hide_password=True))
	return engine, session_maker


async def create_all(engine: AsyncEngine) -> None:
	"""Create tables for every model registered on Base."""
	from models import db_models  # noqa: F401 ensure models are imported so tables are registered

	async with engine.begin() as conn:
		await conn.run_sync(Base.metadata.create_all)


def utcnow() -> datetime:
	"""Naive UTC timestamp. DateTime columns and history records store naive UTC."""
	return datetime.now(timezone.utc).replace(tzinfo=None)
