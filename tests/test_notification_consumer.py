"""
Notification コンシューマ: 手動 ack、重複排除、再配信、dead-letter
"""

import asyncio
from dataclasses import replace
from datetime import datetime, timezone
from uuid import uuid4

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import create_async_engine

from services.notification.app import queries
from services.notification.app.notifier import OrderNotifier, render
from services.notification.app.schema import metadata
from services.notification.app.subscriber import GROUP, build_consumer
from services.shared.config import Settings
from services.shared.consumer import ACKED, DEAD_LETTERED, IGNORED, REQUEUED, SKIPPED
from services.shared.database import create_session_factory
from services.shared.events import (
    ORDER_CREATED,
    ORDER_NOTIFICATIONS,
    OrderCreated,
    OrderLine,
    dead_letter_stream,
)

pytestmark = pytest.mark.asyncio

WEBHOOK = "http://hooks.test/orders"


class Webhook:
    """httpx.MockTransport の受け口。fail_next 回だけ 503 を返す。"""

    def __init__(self) -> None:
        self.calls: list[httpx.Request] = []
        self.fail_next = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        if self.fail_next:
            self.fail_next -= 1
            return httpx.Response(503)
        return httpx.Response(204)


@pytest.fixture
def webhook() -> Webhook:
    return Webhook()


@pytest_asyncio.fixture
async def notifier(webhook):
    client = httpx.AsyncClient(transport=httpx.MockTransport(webhook))
    notifier = OrderNotifier(WEBHOOK, client=client)
    yield notifier
    await notifier.aclose()


@pytest.fixture
def consumer(broker, notification_db, notifier):
    return build_consumer(broker, notification_db, notifier, Settings(max_deliveries=3))


def _order() -> OrderCreated:
    return OrderCreated(
        id=uuid4(),
        user_id="user-7",
        products=[OrderLine(product_id=uuid4(), quantity=2, unit_price=3.5)],
        total_price=7.0,
        status="pending",
        created_at=datetime.now(timezone.utc),
    )


async def _publish(broker, order: OrderCreated, message_id: str | None = None) -> str:
    message_id = message_id or str(uuid4())
    await broker.ensure_group(ORDER_NOTIFICATIONS, GROUP)
    await broker.publish(ORDER_NOTIFICATIONS, ORDER_CREATED, order.to_message(), message_id)
    return message_id


async def _drain(broker, consumer) -> list[str]:
    deliveries = await broker.fetch(ORDER_NOTIFICATIONS, GROUP, "worker-1")
    return [await consumer.process(delivery) for delivery in deliveries]


async def _notifications(notification_db) -> list[dict]:
    async with notification_db() as session:
        return await queries.list_notifications(session)


async def test_order_created_sends_notification_and_acks(broker, consumer, webhook, notification_db):
    order = _order()
    message_id = await _publish(broker, order)

    assert await _drain(broker, consumer) == [ACKED]

    assert len(webhook.calls) == 1
    [notification] = await _notifications(notification_db)
    assert notification["messageId"] == message_id
    assert notification["orderId"] == str(order.id)
    assert notification["channel"] == "webhook"
    assert notification["body"] == render(order)
    assert broker.pending(ORDER_NOTIFICATIONS, GROUP) == {}


async def test_redelivered_message_is_notified_once(broker, consumer, webhook, notification_db):
    order = _order()
    message_id = await _publish(broker, order)
    await _publish(broker, order, message_id)

    assert await _drain(broker, consumer) == [ACKED, SKIPPED]
    assert len(webhook.calls) == 1
    assert len(await _notifications(notification_db)) == 1


async def test_failed_send_is_redelivered_until_it_succeeds(broker, consumer, webhook, notification_db):
    webhook.fail_next = 1
    await _publish(broker, _order())

    assert await _drain(broker, consumer) == [REQUEUED]
    assert await _notifications(notification_db) == []
    assert list(broker.pending(ORDER_NOTIFICATIONS, GROUP).values()) == [1]

    assert await _drain(broker, consumer) == [ACKED]
    assert len(webhook.calls) == 2
    assert len(await _notifications(notification_db)) == 1


async def test_poison_message_is_dead_lettered_after_max_deliveries(broker, consumer, webhook, notification_db):
    webhook.fail_next = 100
    message_id = await _publish(broker, _order())

    results = []
    for _ in range(4):
        results.extend(await _drain(broker, consumer))

    assert results == [REQUEUED, REQUEUED, REQUEUED, DEAD_LETTERED]
    assert len(webhook.calls) == 3
    [dead] = broker.messages(dead_letter_stream(ORDER_NOTIFICATIONS))
    assert dead["message_id"] == message_id
    assert broker.pending(ORDER_NOTIFICATIONS, GROUP) == {}
    assert await _notifications(notification_db) == []


async def test_unknown_event_type_is_acked_and_ignored(broker, consumer, webhook):
    await broker.ensure_group(ORDER_NOTIFICATIONS, GROUP)
    await broker.publish(ORDER_NOTIFICATIONS, "OrderShipped", {"id": str(uuid4())}, str(uuid4()))

    assert await _drain(broker, consumer) == [IGNORED]
    assert webhook.calls == []
    assert broker.pending(ORDER_NOTIFICATIONS, GROUP) == {}


async def test_log_channel_without_webhook(broker, notification_db):
    notifier = OrderNotifier(None)
    consumer = build_consumer(broker, notification_db, notifier, Settings())
    await _publish(broker, _order())

    assert await _drain(broker, consumer) == [ACKED]
    [notification] = await _notifications(notification_db)
    assert notification["channel"] == "log"
    await notifier.aclose()


@pytest_asyncio.fixture
async def unreachable_db(tmp_path):
    """テーブルがまだ作られていない DB (マイグレーション前・別ホストへの切り替え中など)"""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'down'}.db")
    yield engine
    await engine.dispose()


async def test_database_outage_is_not_counted_as_failed_delivery(broker, notifier, webhook, unreachable_db):
    consumer = build_consumer(
        broker, create_session_factory(unreachable_db), notifier, Settings(max_deliveries=3)
    )
    await _publish(broker, _order())
    [delivery] = await broker.fetch(ORDER_NOTIFICATIONS, GROUP, "worker-1")

    with pytest.raises(SQLAlchemyError):
        await consumer.process(replace(delivery, delivery_count=4))

    assert webhook.calls == []
    assert broker.messages(dead_letter_stream(ORDER_NOTIFICATIONS)) == []
    assert list(broker.pending(ORDER_NOTIFICATIONS, GROUP)) == [delivery.entry_id]


async def test_run_waits_for_database_and_then_processes_once(broker, notifier, webhook, unreachable_db):
    settings = Settings(max_deliveries=3, retry_base_delay=0.01, retry_max_delay=0.02, consumer_block_ms=10)
    session_factory = create_session_factory(unreachable_db)
    consumer = build_consumer(broker, session_factory, notifier, settings)
    await _publish(broker, _order())
    stop = asyncio.Event()
    task = asyncio.create_task(consumer.run(stop))

    await asyncio.sleep(0.1)
    assert not task.done()
    assert webhook.calls == []
    assert broker.messages(dead_letter_stream(ORDER_NOTIFICATIONS)) == []

    async with unreachable_db.begin() as conn:
        await conn.run_sync(metadata.create_all)
    for _ in range(200):
        if broker.pending(ORDER_NOTIFICATIONS, GROUP) == {}:
            break
        await asyncio.sleep(0.01)

    stop.set()
    await asyncio.wait_for(task, timeout=1.0)

    assert len(webhook.calls) == 1
    assert len(await _notifications(session_factory)) == 1
    assert broker.messages(dead_letter_stream(ORDER_NOTIFICATIONS)) == []
    assert broker.pending(ORDER_NOTIFICATIONS, GROUP) == {}
