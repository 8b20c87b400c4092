"""
Inventory Service — FastAPI エントリーポイント

在庫 (products.stock) を持つ唯一のサービス。
在庫の減算はすべて条件付き UPDATE で行い、負の在庫は起こり得ない。

バックグラウンドタスク:
  - order_notifications の購読 → 全明細の在庫引き当て
  - Outbox Relay        outbox_events → inventory_events
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
from services.shared.outbox import OutboxRelay

from . import commands, queries
from .schema import metadata, outbox_events
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
    for name in settings.missing_connections():
        logger.warning("%s is not set; using default", name)

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
        asyncio.create_task(consumer.run(shutdown_event)),
        asyncio.create_task(relay.run(shutdown_event)),
    ]
    yield
    shutdown_event.set()
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
    await broker.close()
    await engine.dispose()


app = FastAPI(title="Inventory Service", lifespan=lifespan)
install_error_handlers(app)


async def get_session():
    async with async_session() as session:
        yield session


# ── Request Models ───────────────────────────────

class CreateProductRequest(CamelModel):
    name: str = Field(min_length=1)
    description: str = ""
    price: float
    stock: int


class ReduceStockRequest(CamelModel):
    quantity: int


class ReserveRequest(CamelModel):
    order_id: UUID
    product_id: UUID
    quantity: int


# ── Command Endpoints ────────────────────────────

@app.post("/products", status_code=201)
async def create_product(req: CreateProductRequest, session: AsyncSession = Depends(get_session)):
    return await commands.create_product(
        session, req.name, req.price, req.stock, description=req.description
    )


@app.put("/products/{product_id}/reduce-stock")
async def reduce_stock(
    product_id: UUID,
    req: ReduceStockRequest,
    session: AsyncSession = Depends(get_session),
):
    """在庫を減らす。在庫不足なら 400 {"message": "Insufficient stock"}"""
    return await commands.reduce_stock(session, product_id, req.quantity)


@app.post("/reservations")
async def reserve(req: ReserveRequest, session: AsyncSession = Depends(get_session)):
    """在庫引き当て — 同じ (orderId, productId) の再送は前回の結果を返す"""
    reservation = await commands.reserve_stock(session, req.order_id, req.product_id, req.quantity)
    return {
        "orderId": str(reservation.order_id),
        "productId": str(reservation.product_id),
        "quantity": reservation.quantity,
        "stock": reservation.stock,
        "replayed": reservation.replayed,
    }


# ── Query Endpoints ──────────────────────────────

@app.get("/products")
async def list_products(session: AsyncSession = Depends(get_session)):
    return await queries.list_products(session)


@app.get("/products/{product_id}")
async def get_product(product_id: UUID, session: AsyncSession = Depends(get_session)):
    return await queries.get_product(session, product_id)


@app.get("/orders/{order_id}/reservations")
async def get_reservations(order_id: UUID, session: AsyncSession = Depends(get_session)):
    return await queries.list_reservations(session, order_id)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "inventory-service", "broker_connected": broker.connected}
