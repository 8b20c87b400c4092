"""
Order Service — inventory_events サブスクライバー

Inventory Service が在庫引き当ての結果 (OrderStockResolved) を発行する。
それを受けて注文を confirmed / failed に遷移させる。

┌───────────────────┐  inventory_events  ┌───────────────┐
│ Inventory Service │ ──── Redis ──────▶ │ Order Service │
│ (Outbox Relay)    │   Streams          │ (status 更新)  │
└───────────────────┘                    └───────────────┘
"""

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from services.shared.backoff import RetryPolicy
from services.shared.broker import Delivery, RedisStreamBroker
from services.shared.config import Settings
from services.shared.consumer import StreamConsumer
from services.shared.events import INVENTORY_EVENTS, ORDER_STOCK_RESOLVED, OrderStockResolved

from . import commands
from .schema import consumed_messages

GROUP = "order-service"


async def handle_stock_resolved(session: AsyncSession, delivery: Delivery) -> None:
    event = OrderStockResolved.model_validate(delivery.body)
    await commands.apply_stock_outcome(session, event)


def build_consumer(
    broker: RedisStreamBroker,
    session_factory: async_sessionmaker[AsyncSession],
    settings: Settings,
) -> StreamConsumer:
    return StreamConsumer(
        broker,
        session_factory,
        consumed_messages,
        queue=INVENTORY_EVENTS,
        group=GROUP,
        handlers={ORDER_STOCK_RESOLVED: handle_stock_resolved},
        consumer_name=settings.service_name,
        batch_size=settings.consumer_batch_size,
        block_ms=settings.consumer_block_ms,
        redelivery_idle_ms=settings.redelivery_idle_ms,
        max_deliveries=settings.max_deliveries,
        retry_policy=RetryPolicy(settings.retry_base_delay, settings.retry_max_delay),
    )
