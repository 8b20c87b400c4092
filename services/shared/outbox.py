"""
Shared — トランザクショナル Outbox

「DB へのコミット」と「キューへの発行」を別々に行うと、
片方だけ成功する二重書き込み (dual write) 問題が起きる。

Outbox パターン:
  1. ドメインの変更と同じトランザクションで outbox_events に pending 行を書く
  2. Relay がバックグラウンドで pending 行を読み、ブローカーへ発行する
  3. ブローカーが受領を返したら published にする

発行後・published 更新前にクラッシュすると同じイベントが再発行される (at-least-once)。
そのためメッセージ ID に Outbox イベント ID を使い、コンシューマ側で重複排除する。
"""

import asyncio
import logging
from datetime import datetime, timezone
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    MetaData,
    String,
    Table,
    UniqueConstraint,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import RetryError

from .backoff import RetryPolicy, sleep_or_stop
from .broker import RedisStreamBroker
from .errors import BrokerUnavailableError

logger = logging.getLogger(__name__)

PENDING = "pending"
PUBLISHED = "published"

_TRANSIENT_ERRORS = (BrokerUnavailableError, SQLAlchemyError, OSError)


def outbox_table(metadata: MetaData) -> Table:
    return Table(
        "outbox_events",
        metadata,
        Column("id", String(36), primary_key=True),
        Column("aggregate_id", String(36), nullable=False, index=True),
        Column("event_type", String(64), nullable=False),
        Column("destination", String(128), nullable=False),
        Column("payload", JSON, nullable=False),
        Column("status", String(16), nullable=False, default=PENDING, index=True),
        Column("created_at", DateTime(timezone=True), nullable=False),
        Column("published_at", DateTime(timezone=True)),
        UniqueConstraint("aggregate_id", "event_type", name="uq_outbox_aggregate_event"),
    )


async def stage_event(
    session: AsyncSession,
    table: Table,
    *,
    aggregate_id: UUID,
    event_type: str,
    destination: str,
    payload: dict,
    now: datetime | None = None,
) -> UUID:
    """
    pending の Outbox イベントを追加する。コミットは呼び出し側のトランザクションに任せる。
    """
    event_id = uuid4()
    await session.execute(
        insert(table).values(
            id=str(event_id),
            aggregate_id=str(aggregate_id),
            event_type=event_type,
            destination=destination,
            payload=payload,
            status=PENDING,
            created_at=now or datetime.now(timezone.utc),
        )
    )
    return event_id


def _row_to_dict(row) -> dict:
    return {
        "id": row.id,
        "aggregate_id": row.aggregate_id,
        "event_type": row.event_type,
        "destination": row.destination,
        "payload": row.payload,
        "status": row.status,
        "created_at": row.created_at.isoformat() if row.created_at else None,
        "published_at": row.published_at.isoformat() if row.published_at else None,
    }


async def list_events(session: AsyncSession, table: Table) -> list[dict]:
    """Outbox の全イベントを時系列で返す (デバッグ・学習用)。"""
    result = await session.execute(select(table).order_by(table.c.created_at))
    return [_row_to_dict(row) for row in result.fetchall()]


class OutboxRelay:
    """pending の Outbox イベントをブローカーへ発行するバックグラウンドワーカー"""

    def __init__(
        self,
        broker: RedisStreamBroker,
        session_factory: async_sessionmaker[AsyncSession],
        table: Table,
        batch_size: int = 100,
        poll_interval: float = 1.0,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self.broker = broker
        self.session_factory = session_factory
        self.table = table
        self.batch_size = batch_size
        self.poll_interval = poll_interval
        self.retry_policy = retry_policy or RetryPolicy()

    async def relay_once(self) -> int:
        """
        pending イベントを 1 バッチ発行し、発行できた件数を返す。

        ブローカーが落ちていれば BrokerUnavailableError をそのまま投げる。
        残りのイベントは pending のまま次の周回で再試行される。
        """
        async with self.session_factory() as session:
            result = await session.execute(
                select(self.table)
                .where(self.table.c.status == PENDING)
                .order_by(self.table.c.created_at)
                .limit(self.batch_size)
            )
            events = result.fetchall()

        published = 0
        for event in events:
            await self.broker.publish(
                event.destination, event.event_type, event.payload, message_id=event.id
            )
            async with self.session_factory() as session:
                await session.execute(
                    update(self.table)
                    .where(self.table.c.id == event.id, self.table.c.status == PENDING)
                    .values(status=PUBLISHED, published_at=datetime.now(timezone.utc))
                )
                await session.commit()
            published += 1
            logger.info(
                "Relayed %s %s for %s to %s",
                event.event_type, event.id, event.aggregate_id, event.destination,
            )
        return published

    async def run(self, stop_event: asyncio.Event) -> None:
        """stop_event がセットされるまでポーリングを続ける。"""
        logger.info("Outbox relay started")
        while not stop_event.is_set():
            try:
                async for attempt in self.retry_policy.retrying(stop_event, _TRANSIENT_ERRORS, logger):
                    with attempt:
                        published = await self.relay_once()
            except RetryError:
                break
            if published == 0 and await sleep_or_stop(stop_event, self.poll_interval):
                break
        logger.info("Outbox relay stopped")

    async def pending_count(self) -> int:
        async with self.session_factory() as session:
            result = await session.execute(
                select(func.count()).select_from(self.table).where(self.table.c.status == PENDING)
            )
            return result.scalar_one()
