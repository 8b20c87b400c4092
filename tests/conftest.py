"""
Pytest fixtures

各サービスの DB はテストごとに SQLite (aiosqlite) のファイルで作る。
ブローカーは RedisStreamBroker と同じインターフェースを持つインメモリ実装を使う。
"""

import asyncio
import json
from typing import Any, AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy import MetaData
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from services.shared.broker import Delivery
from services.shared.database import create_session_factory
from services.shared.errors import BrokerUnavailableError
from services.shared.events import dead_letter_stream


class InMemoryBroker:
    """
    Redis Streams のコンシューマグループを単純化したテスト用ブローカー。

    - publish: ストリームに追記してエントリ ID を返す
    - fetch: 未 ack の配信があれば配信回数を増やして再配信、なければ新着を返す
    - available = False の間はすべての操作が BrokerUnavailableError になる
    """

    def __init__(self) -> None:
        self.streams: dict[str, list[tuple[str, dict]]] = {}
        self.groups: dict[tuple[str, str], dict] = {}
        self.available = True
        self._seq = 0

    @property
    def connected(self) -> bool:
        return self.available

    def _check(self) -> None:
        if not self.available:
            raise BrokerUnavailableError("broker is down")

    async def publish(self, queue: str, event_type: str, body: dict, message_id: str) -> str:
        self._check()
        self._seq += 1
        entry_id = f"{self._seq}-0"
        fields = {
            "message_id": message_id,
            "event_type": event_type,
            "body": json.loads(json.dumps(body, default=str)),
        }
        self.streams.setdefault(queue, []).append((entry_id, fields))
        return entry_id

    async def ensure_group(self, queue: str, group: str) -> None:
        self._check()
        self.groups.setdefault((queue, group), {"cursor": 0, "pending": {}})

    async def fetch(
        self,
        queue: str,
        group: str,
        consumer: str,
        count: int = 10,
        block_ms: int = 0,
        min_idle_ms: int = 0,
    ) -> list[Delivery]:
        self._check()
        state = self.groups.setdefault((queue, group), {"cursor": 0, "pending": {}})
        entries = dict(self.streams.get(queue, []))

        if state["pending"]:
            deliveries = []
            for entry_id in list(state["pending"])[:count]:
                state["pending"][entry_id] += 1
                deliveries.append(self._delivery(queue, entry_id, entries[entry_id], state["pending"][entry_id]))
            return deliveries

        new = self.streams.get(queue, [])[state["cursor"]:state["cursor"] + count]
        state["cursor"] += len(new)
        if not new:
            # XREADGROUP の block と同じく、新着がなければ少し待ってから空を返す
            await asyncio.sleep(min(block_ms, 10) / 1000)
        for entry_id, _ in new:
            state["pending"][entry_id] = 1
        return [self._delivery(queue, entry_id, fields, 1) for entry_id, fields in new]

    async def ack(self, delivery: Delivery, group: str) -> None:
        self._check()
        self.groups[(delivery.queue, group)]["pending"].pop(delivery.entry_id, None)

    async def dead_letter(self, delivery: Delivery, group: str, reason: str) -> None:
        self._check()
        self.streams.setdefault(dead_letter_stream(delivery.queue), []).append(
            (delivery.entry_id, {"message_id": delivery.message_id, "reason": reason, "body": delivery.body})
        )
        self.groups[(delivery.queue, group)]["pending"].pop(delivery.entry_id, None)

    def messages(self, queue: str) -> list[dict]:
        return [fields for _, fields in self.streams.get(queue, [])]

    def pending(self, queue: str, group: str) -> dict[str, int]:
        return dict(self.groups.get((queue, group), {"pending": {}})["pending"])

    @staticmethod
    def _delivery(queue: str, entry_id: str, fields: dict, count: int) -> Delivery:
        return Delivery(
            queue=queue,
            entry_id=entry_id,
            message_id=fields["message_id"],
            event_type=fields["event_type"],
            body=dict(fields["body"]),
            delivery_count=count,
        )


async def _database(tmp_path, name: str, metadata: MetaData):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / name}.db")
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
    return engine


@pytest.fixture
def broker() -> InMemoryBroker:
    return InMemoryBroker()


@pytest_asyncio.fixture
async def order_db(tmp_path) -> AsyncGenerator[async_sessionmaker, Any]:
    from services.order.app.schema import metadata

    engine = await _database(tmp_path, "order", metadata)
    yield create_session_factory(engine)
    await engine.dispose()


@pytest_asyncio.fixture
async def inventory_db(tmp_path) -> AsyncGenerator[async_sessionmaker, Any]:
    from services.inventory.app.schema import metadata

    engine = await _database(tmp_path, "inventory", metadata)
    yield create_session_factory(engine)
    await engine.dispose()


@pytest_asyncio.fixture
async def notification_db(tmp_path) -> AsyncGenerator[async_sessionmaker, Any]:
    from services.notification.app.schema import metadata

    engine = await _database(tmp_path, "notification", metadata)
    yield create_session_factory(engine)
    await engine.dispose()
