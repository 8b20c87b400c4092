"""
Notification Service — order_notifications サブスクライバー

手動 ack で OrderCreated を消費する。

  - 処理済みのメッセージ ID → 副作用なしで ack
  - 未処理 → 通知を送り、通知ログと処理済み記録をコミットしてから ack
  - 送信失敗 → ack しない。一定時間後に再配信され、上限を超えたら dead-letter へ
"""

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from services.shared.backoff import RetryPolicy
from services.shared.broker import Delivery, RedisStreamBroker
from services.shared.config import Settings
from services.shared.consumer import Handler, StreamConsumer
from services.shared.events import ORDER_CREATED, ORDER_NOTIFICATIONS, OrderCreated

from .notifier import OrderNotifier, render
from .schema import consumed_messages, notifications

GROUP = "notification-service"


def make_order_created_handler(notifier: OrderNotifier) -> Handler:
    async def handle_order_created(session: AsyncSession, delivery: Delivery) -> None:
        order = OrderCreated.model_validate(delivery.body)
        channel = await notifier.send(order)
        await session.execute(
            insert(notifications).values(
                id=str(uuid4()),
                message_id=delivery.message_id,
                order_id=str(order.id),
                user_id=order.user_id,
                channel=channel,
                body=render(order),
                created_at=datetime.now(timezone.utc),
            )
        )

    return handle_order_created


def build_consumer(
    broker: RedisStreamBroker,
    session_factory: async_sessionmaker[AsyncSession],
    notifier: OrderNotifier,
    settings: Settings,
) -> StreamConsumer:
    return StreamConsumer(
        broker,
        session_factory,
        consumed_messages,
        queue=ORDER_NOTIFICATIONS,
        group=GROUP,
        handlers={ORDER_CREATED: make_order_created_handler(notifier)},
        consumer_name=settings.service_name,
        batch_size=settings.consumer_batch_size,
        block_ms=settings.consumer_block_ms,
        redelivery_idle_ms=settings.redelivery_idle_ms,
        max_deliveries=settings.max_deliveries,
        retry_policy=RetryPolicy(settings.retry_base_delay, settings.retry_max_delay),
    )
