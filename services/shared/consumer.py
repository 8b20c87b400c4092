"""
Shared — ストリームコンシューマ (手動 ack + 冪等な消費)

1 件の配信に対する処理:

  ┌──────────────────────────────────────────────────────────┐
  │  1. 処理済みメッセージ ID なら → 副作用なしで ack           │
  │  2. 配信回数が上限超え → dead-letter へ移して終了           │
  │  3. ハンドラ実行 + 処理済み記録 → 同じトランザクションで commit │
  │  4. ack                                                  │
  │     ハンドラが失敗したら ack しない → 一定時間後に再配信される │
  └──────────────────────────────────────────────────────────┘

自分の DB に届かないときはメッセージの失敗として数えない。
process から例外を投げ、run がバックオフしながら DB の復旧を待つ。
"""

import asyncio
import logging
from typing import Awaitable, Callable

from sqlalchemy import Table
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import RetryError

from . import inbox
from .backoff import RetryPolicy
from .broker import Delivery, RedisStreamBroker
from .errors import BrokerUnavailableError, DuplicateDeliveryError, PersistenceError

logger = logging.getLogger(__name__)

Handler = Callable[[AsyncSession, Delivery], Awaitable[None]]

ACKED = "acked"
SKIPPED = "skipped"
IGNORED = "ignored"
REQUEUED = "requeued"
DEAD_LETTERED = "dead_lettered"

_TRANSIENT_ERRORS = (BrokerUnavailableError, PersistenceError, SQLAlchemyError, OSError)


class StreamConsumer:
    def __init__(
        self,
        broker: RedisStreamBroker,
        session_factory: async_sessionmaker[AsyncSession],
        consumed_table: Table,
        *,
        queue: str,
        group: str,
        handlers: dict[str, Handler],
        consumer_name: str = "worker-1",
        batch_size: int = 10,
        block_ms: int = 1000,
        redelivery_idle_ms: int = 30000,
        max_deliveries: int = 5,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self.broker = broker
        self.session_factory = session_factory
        self.consumed_table = consumed_table
        self.queue = queue
        self.group = group
        self.handlers = handlers
        self.consumer_name = consumer_name
        self.batch_size = batch_size
        self.block_ms = block_ms
        self.redelivery_idle_ms = redelivery_idle_ms
        self.max_deliveries = max_deliveries
        self.retry_policy = retry_policy or RetryPolicy()

    async def process(self, delivery: Delivery) -> str:
        """
        1 件の配信を処理し、結果 (acked / skipped / ignored / requeued / dead_lettered) を返す。

        DB / ブローカーの障害 (SQLAlchemyError, PersistenceError, OSError, BrokerUnavailableError) は
        そのまま投げる。配信は ack されずに残り、障害が直ってから再処理される。
        """
        handler = self.handlers.get(delivery.event_type)
        if handler is None:
            logger.warning("Ignoring unknown event type %r on %s", delivery.event_type, self.queue)
            await self.broker.ack(delivery, self.group)
            return IGNORED

        async with self.session_factory() as session:
            if await inbox.already_consumed(session, self.consumed_table, self.group, delivery.message_id):
                logger.info("Skipping duplicate delivery %s", delivery.message_id)
                await self.broker.ack(delivery, self.group)
                return SKIPPED

            if delivery.delivery_count > self.max_deliveries:
                await self.broker.dead_letter(
                    delivery,
                    self.group,
                    reason=f"exceeded {self.max_deliveries} deliveries",
                )
                logger.error(
                    "Dead-lettered %s %s after %d deliveries",
                    delivery.event_type, delivery.message_id, delivery.delivery_count,
                )
                return DEAD_LETTERED

            try:
                await self._handle(session, handler, delivery)
            except DuplicateDeliveryError:
                logger.info("Skipping duplicate delivery %s", delivery.message_id)
                await self.broker.ack(delivery, self.group)
                return SKIPPED
            except _TRANSIENT_ERRORS:
                raise
            except Exception:
                logger.exception(
                    "Failed to process %s %s (delivery %d); leaving unacknowledged",
                    delivery.event_type, delivery.message_id, delivery.delivery_count,
                )
                return REQUEUED

        await self.broker.ack(delivery, self.group)
        logger.info("Processed %s %s", delivery.event_type, delivery.message_id)
        return ACKED

    async def _handle(self, session: AsyncSession, handler: Handler, delivery: Delivery) -> None:
        try:
            await handler(session, delivery)
            await inbox.record_consumed(session, self.consumed_table, self.group, delivery.message_id)
            await session.commit()
        except IntegrityError as exc:
            # 同じメッセージを並行して処理した別の配信が先にコミットした
            await session.rollback()
            raise DuplicateDeliveryError(delivery.message_id) from exc

    async def _prepare(self) -> None:
        """グループを用意し、処理済み記録のテーブルに届くことを確かめる。"""
        await self.broker.ensure_group(self.queue, self.group)
        async with self.session_factory() as session:
            await inbox.check_reachable(session, self.consumed_table)

    async def poll_once(self) -> int:
        deliveries = await self.broker.fetch(
            self.queue,
            self.group,
            self.consumer_name,
            count=self.batch_size,
            block_ms=self.block_ms,
            min_idle_ms=self.redelivery_idle_ms,
        )
        for delivery in deliveries:
            await self.process(delivery)
        return len(deliveries)

    async def run(self, stop_event: asyncio.Event) -> None:
        """
        stop_event がセットされるまで配信を処理し続ける。

        障害のあとは DB とブローカーに届くのを確かめてから取得を再開する。
        """
        ready = False
        logger.info("Consumer %s started on %s", self.group, self.queue)
        while not stop_event.is_set():
            try:
                async for attempt in self.retry_policy.retrying(stop_event, _TRANSIENT_ERRORS, logger):
                    with attempt:
                        if not ready or attempt.retry_state.attempt_number > 1:
                            await self._prepare()
                            ready = True
                        await self.poll_once()
            except RetryError:
                break
        logger.info("Consumer %s stopped", self.group)
