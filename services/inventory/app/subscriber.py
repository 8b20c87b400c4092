"""
Inventory Service — order_notifications サブスクライバー

OrderCreated を受けて全明細の在庫を引き当て、その結果 (OrderStockResolved) を
自サービスの Outbox に書く。結果の発行は Inventory Service の Outbox Relay が行う。

Outbox への書き込みと処理済みメッセージの記録は同じトランザクションなので、
再配信されても結果イベントは 1 つだけになる。引き当て自体も
(order_id, product_id) で重複排除されるので、在庫が二重に減ることはない。
"""

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from services.shared.backoff import RetryPolicy
from services.shared.broker import Delivery, RedisStreamBroker
from services.shared.config import Settings
from services.shared.consumer import Handler, StreamConsumer
from services.shared.events import (
    INVENTORY_EVENTS,
    ORDER_CREATED,
    ORDER_NOTIFICATIONS,
    ORDER_STOCK_RESOLVED,
    OrderCreated,
)
from services.shared.outbox import stage_event

from . import commands
from .schema import consumed_messages, outbox_events

GROUP = "inventory-service"


def make_order_created_handler(session_factory: async_sessionmaker[AsyncSession]) -> Handler:
    async def handle_order_created(session: AsyncSession, delivery: Delivery) -> None:
        order = OrderCreated.model_validate(delivery.body)
        outcome = await commands.fulfill_order(session_factory, order)
        await stage_event(
            session,
            outbox_events,
            aggregate_id=order.id,
            event_type=ORDER_STOCK_RESOLVED,
            destination=INVENTORY_EVENTS,
            payload=outcome.to_message(),
        )

    return handle_order_created


def build_consumer(
    broker: RedisStreamBroker,
    session_factory: async_sessionmaker[AsyncSession],
    settings: Settings,
) -> StreamConsumer:
    return StreamConsumer(
        broker,
        session_factory,
        consumed_messages,
        queue=ORDER_NOTIFICATIONS,
        group=GROUP,
        handlers={ORDER_CREATED: make_order_created_handler(session_factory)},
        consumer_name=settings.service_name,
        batch_size=settings.consumer_batch_size,
        block_ms=settings.consumer_block_ms,
        redelivery_idle_ms=settings.redelivery_idle_ms,
        max_deliveries=settings.max_deliveries,
        retry_policy=RetryPolicy(settings.retry_base_delay, settings.retry_max_delay),
    )
