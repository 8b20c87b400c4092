"""
Order Service — FastAPI エントリーポイント

POST /orders は注文と Outbox イベントをローカルトランザクションで書くだけ。
呼び出し元が見るのは「pending で受け付けた」という結果のみで、
在庫引き当てによる確定 / 失敗は GET /orders/{id} で非同期に確認する。

バックグラウンドタスク:
  - Outbox Relay        outbox_events → order_notifications
  - inventory_events の購読 → 注文の confirmed / failed
  - ブローカー接続の監視と再接続
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from uuid import UUID

from fastapi import Depends, FastAPI
from pydantic import Field
from sqlalchemy.ext.asyncio import AsyncSession

from services.shared.backoff import RetryPolicy
from services.shared.broker import RedisStreamBroker
from services.shared.config import get_settings
from services.shared.database import create_engine, create_session_factory, ensure_schema
from services.shared.errors import install_error_handlers
from services.shared.events import CamelModel
from services.shared.logs import configure_logging
from services.shared.outbox import OutboxRelay, list_events

from . import commands, queries
from .pricing import InventoryPriceClient
from .schema import metadata, outbox_events
from .subscriber import build_consumer

settings = get_settings()
configure_logging(settings.log_level)
logger = logging.getLogger(__name__)

engine = create_engine(settings.database_url)
async_session = create_session_factory(engine)
broker = RedisStreamBroker(settings.redis_url)
price_client: InventoryPriceClient | None = None


def _retry_policy() -> RetryPolicy:
    return RetryPolicy(settings.retry_base_delay, settings.retry_max_delay)


@asynccontextmanager
async def lifespan(app: FastAPI):
    global price_client
    for name in settings.missing_connections():
        logger.warning("%s is not set; using default", name)

    price_client = InventoryPriceClient(settings.inventory_service_url)
    relay = OutboxRelay(
        broker,
        async_session,
        outbox_events,
        batch_size=settings.outbox_batch_size,
        poll_interval=settings.outbox_poll_interval,
        retry_policy=_retry_policy(),
    )
    consumer = build_consumer(broker, async_session, settings)

    shutdown_event = asyncio.Event()
    tasks = [
        asyncio.create_task(ensure_schema(engine, metadata, shutdown_event, _retry_policy())),
        asyncio.create_task(broker.maintain(shutdown_event, settings.broker_health_interval, _retry_policy())),
        asyncio.create_task(relay.run(shutdown_event)),
        asyncio.create_task(consumer.run(shutdown_event)),
    ]
    yield
    shutdown_event.set()
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
    await broker.close()
    await price_client.aclose()
    await engine.dispose()


app = FastAPI(title="Order Service", lifespan=lifespan)
install_error_handlers(app)


async def get_session():
    async with async_session() as session:
        yield session


def get_price_client() -> InventoryPriceClient:
    return price_client


# ── Request Models ───────────────────────────────

class LineItemRequest(CamelModel):
    product_id: UUID
    quantity: int


class CreateOrderRequest(CamelModel):
    user_id: str = Field(min_length=1)
    products: list[LineItemRequest]
    total_price: float | None = None


# ── Command Endpoints ────────────────────────────

@app.post("/orders", status_code=201)
async def create_order(
    req: CreateOrderRequest,
    session: AsyncSession = Depends(get_session),
    pricing: InventoryPriceClient = Depends(get_price_client),
):
    """注文作成 — pending で受け付ける (201)"""
    lines = commands.normalize_lines([(p.product_id, p.quantity) for p in req.products])
    prices = await pricing.unit_prices([pid for pid, _ in lines])
    agg = await commands.submit_order(
        session,
        user_id=req.user_id,
        products=lines,
        prices=prices,
        total_price=req.total_price,
    )
    return agg.to_snapshot().to_message()


# ── Query Endpoints ──────────────────────────────

@app.get("/orders")
async def list_orders(session: AsyncSession = Depends(get_session)):
    return await queries.list_orders(session)


@app.get("/orders/{order_id}")
async def get_order(order_id: UUID, session: AsyncSession = Depends(get_session)):
    return await queries.get_order(session, order_id)


# ── Outbox (学習・デバッグ用) ─────────────────────

@app.get("/outbox")
async def get_outbox(session: AsyncSession = Depends(get_session)):
    """Outbox の全イベントと発行状態を返す"""
    return await list_events(session, outbox_events)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "order-service", "broker_connected": broker.connected}
