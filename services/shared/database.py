"""
Shared — データベース接続

Database per Service: 各サービスは自分専用の DB を持つ。
起動時に DB へ届かなくてもプロセスは落とさず、
バックグラウンドでスキーマ作成を再試行する。
"""

import asyncio
import logging

from sqlalchemy import MetaData
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from tenacity import RetryError

from .backoff import RetryPolicy

logger = logging.getLogger(__name__)


def create_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    return create_async_engine(database_url, echo=echo, pool_pre_ping=True)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def ensure_schema(
    engine: AsyncEngine,
    metadata: MetaData,
    stop_event: asyncio.Event,
    retry_policy: RetryPolicy | None = None,
) -> bool:
    """テーブルを作成する。DB に届くまでバックオフしながら繰り返す。"""
    retry_policy = retry_policy or RetryPolicy()
    try:
        async for attempt in retry_policy.retrying(stop_event, (SQLAlchemyError, OSError), logger):
            with attempt:
                async with engine.begin() as conn:
                    await conn.run_sync(metadata.create_all)
    except RetryError:
        return False
    logger.info("Database schema ready (%d tables)", len(metadata.tables))
    return True
