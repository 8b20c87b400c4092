"""
Notification Service — FastAPI エントリーポイント

order_notifications を購読し、注文受付の通知を送る。
HTTP は通知ログの参照とヘルスチェックのみ。

┌───────────────┐  order_notifications  ┌──────────────────────┐
│ Order Service │ ──── Redis ─────────▶ │ Notification Service │
│ (Outbox Relay)│   Streams             │ (手動 ack + 重複排除)  │
└───────────────┘                       └──────────────────────┘
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI
from sqlalchemy.ext.asyncio import AsyncSession

from services.shared.backoff import RetryPolicy
from services.shared.broker import RedisStreamBroker
from services.shared.config import get_settings
from services.shared.database import create_engine, create_session_factory, ensure_schema
from services.shared.errors import install_error_handlers
from services.shared.logs import configure_logging

from . import queries
from .notifier import OrderNotifier
from .schema import metadata
from .subscriber import build_consumer

settings = get_settings()
configure_logging(settings.log_level)
logger = logging.getLogger(__name__)

engine = create_engine(settings.database_url)
async_session = create_session_factory(engine)
broker = RedisStreamBroker(settings.redis_url)


def _retry_policy() -> RetryPolicy:
    return RetryPolicy(settings.retry_base_delay, settings.retry_max_delay)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """起動時にサブスクライバをバックグラウンドタスクとして開始する。"""
    for name in settings.missing_connections():
        logger.warning("%s is not set; using default", name)

    notifier = OrderNotifier(settings.notification_webhook_url)
    consumer = build_consumer(broker, async_session, notifier, settings)

    shutdown_event = asyncio.Event()
    tasks = [
        asyncio.create_task(ensure_schema(engine, metadata, shutdown_event, _retry_policy())),
        asyncio.create_task(broker.maintain(shutdown_event, settings.broker_health_interval, _retry_policy())),
        asyncio.create_task(consumer.run(shutdown_event)),
    ]
    yield
    shutdown_event.set()
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
    await broker.close()
    await notifier.aclose()
    await engine.dispose()


app = FastAPI(title="Notification Service", lifespan=lifespan)
install_error_handlers(app)


async def get_session():
    async with async_session() as session:
        yield session


@app.get("/notifications")
async def list_notifications(session: AsyncSession = Depends(get_session)):
    """送信済み通知の一覧"""
    return await queries.list_notifications(session)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "notification-service", "broker_connected": broker.connected}
