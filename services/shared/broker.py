"""
Shared — ブローカーアダプタ (Redis Streams)

Redis Pub/Sub は fire-and-forget なので、購読者が落ちている間のイベントは失われる。
ここでは Redis Streams + コンシューマグループを使い、

  - XADD の戻り値 (エントリ ID) を「ブローカーが永続的に受け取った」確認とする
  - XREADGROUP で配信し、処理が終わってから XACK する (手動 ack)
  - ack されなかったエントリは PEL に残り、XAUTOCLAIM で再配信される
  - 配信回数 (XPENDING の times_delivered) が上限を超えたら dead-letter ストリームへ移す

接続は 1 プロセス 1 つを使い回す。切断されたら破棄して次の呼び出しで張り直す。
未 ack のエントリはサーバ側の PEL に残るので、再接続しても失われない。
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable

import redis.asyncio as aioredis
from redis.exceptions import RedisError, ResponseError
from tenacity import RetryError

from .backoff import RetryPolicy, sleep_or_stop
from .errors import BrokerUnavailableError
from .events import dead_letter_stream

logger = logging.getLogger(__name__)

# 接続断だけでなく、フェイルオーバー中の READONLY や OOM・NOAUTH もすべて一時障害として扱う
_BROKER_ERRORS = (RedisError, OSError)


@dataclass
class Delivery:
    """コンシューマに渡される 1 件の配信"""
    queue: str
    entry_id: str
    message_id: str
    event_type: str
    body: dict
    delivery_count: int = 1


class RedisStreamBroker:
    """明示的なライフサイクルを持つブローカー接続 (connect / health check / reconnect / close)"""

    def __init__(
        self,
        url: str,
        client_factory: Callable[[str], Any] | None = None,
    ) -> None:
        self.url = url
        self._client_factory = client_factory or (
            lambda u: aioredis.from_url(u, decode_responses=True)
        )
        self._client: aioredis.Redis | None = None
        self._lock = asyncio.Lock()

    @property
    def connected(self) -> bool:
        return self._client is not None

    # ── ライフサイクル ───────────────────────────

    async def connect(self) -> None:
        async with self._lock:
            if self._client is not None:
                return
            client = self._client_factory(self.url)
            try:
                await client.ping()
            except _BROKER_ERRORS as exc:
                await self._close_quietly(client)
                raise BrokerUnavailableError(f"Cannot reach broker: {exc}") from exc
            self._client = client
            logger.info("Connected to broker")

    async def health_check(self) -> bool:
        if self._client is None:
            return False
        try:
            await self._client.ping()
        except _BROKER_ERRORS:
            logger.warning("Broker health check failed; dropping connection")
            await self._drop()
            return False
        return True

    async def maintain(
        self,
        stop_event: asyncio.Event,
        interval: float = 5.0,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        """接続を監視し、切れていればバックオフしながら張り直す。"""
        retry_policy = retry_policy or RetryPolicy()
        while not stop_event.is_set():
            if not await self.health_check():
                try:
                    async for attempt in retry_policy.retrying(stop_event, BrokerUnavailableError, logger):
                        with attempt:
                            await self.connect()
                except RetryError:
                    return
            if await sleep_or_stop(stop_event, interval):
                return

    async def close(self) -> None:
        async with self._lock:
            client, self._client = self._client, None
        if client is not None:
            await self._close_quietly(client)
            logger.info("Broker connection closed")

    # ── 送信 ─────────────────────────────────────

    async def publish(self, queue: str, event_type: str, body: dict, message_id: str) -> str:
        """
        メッセージを追記し、ブローカーが付けたエントリ ID を返す。
        message_id は冪等キー (Outbox イベント ID) で、コンシューマ側の重複排除に使う。
        """
        client = await self._ensure_client()
        fields = {
            "message_id": message_id,
            "event_type": event_type,
            "body": json.dumps(body, default=str),
        }
        try:
            return await client.xadd(queue, fields)
        except _BROKER_ERRORS as exc:
            await self._drop()
            raise BrokerUnavailableError(f"Publish to {queue} failed: {exc}") from exc

    # ── 受信 ─────────────────────────────────────

    async def ensure_group(self, queue: str, group: str) -> None:
        client = await self._ensure_client()
        try:
            await client.xgroup_create(queue, group, id="0", mkstream=True)
            logger.info("Created consumer group %s on %s", group, queue)
        except ResponseError as exc:
            if "BUSYGROUP" not in str(exc):
                await self._drop()
                raise BrokerUnavailableError(f"Cannot create group {group} on {queue}: {exc}") from exc
        except _BROKER_ERRORS as exc:
            await self._drop()
            raise BrokerUnavailableError(str(exc)) from exc

    async def fetch(
        self,
        queue: str,
        group: str,
        consumer: str,
        count: int = 10,
        block_ms: int = 1000,
        min_idle_ms: int = 30000,
    ) -> list[Delivery]:
        """
        配信を取得する。
        まず一定時間 ack されていないエントリを取り戻し (再配信)、
        なければ新着を待つ。
        """
        client = await self._ensure_client()
        try:
            reclaimed = await self._reclaim(client, queue, group, consumer, count, min_idle_ms)
            if reclaimed:
                return reclaimed
            response = await client.xreadgroup(
                group, consumer, {queue: ">"}, count=count, block=block_ms
            )
        except ResponseError as exc:
            if "NOGROUP" not in str(exc):
                await self._drop()
                raise BrokerUnavailableError(f"Fetch from {queue} failed: {exc}") from exc
            # Redis 側でストリームが消えた (再起動など)。グループを作り直して次の周回へ
            logger.warning("Consumer group %s missing on %s; recreating", group, queue)
            await self.ensure_group(queue, group)
            return []
        except _BROKER_ERRORS as exc:
            await self._drop()
            raise BrokerUnavailableError(f"Fetch from {queue} failed: {exc}") from exc

        deliveries = []
        for _stream, entries in _stream_entries(response):
            for entry_id, fields in entries:
                if fields:
                    deliveries.append(_to_delivery(queue, entry_id, fields, 1))
        return deliveries

    async def _reclaim(
        self,
        client: aioredis.Redis,
        queue: str,
        group: str,
        consumer: str,
        count: int,
        min_idle_ms: int,
    ) -> list[Delivery]:
        result = await client.xautoclaim(
            queue, group, consumer, min_idle_time=min_idle_ms, start_id="0-0", count=count
        )
        deliveries = []
        for entry_id, fields in result[1]:
            if not fields:
                # ストリームから削除済みのエントリ。ack して PEL から消す
                await client.xack(queue, group, entry_id)
                continue
            pending = await client.xpending_range(queue, group, min=entry_id, max=entry_id, count=1)
            times = pending[0]["times_delivered"] if pending else 1
            deliveries.append(_to_delivery(queue, entry_id, fields, times))
        if deliveries:
            logger.info("Reclaimed %d unacknowledged deliveries from %s", len(deliveries), queue)
        return deliveries

    async def ack(self, delivery: Delivery, group: str) -> None:
        client = await self._ensure_client()
        try:
            await client.xack(delivery.queue, group, delivery.entry_id)
        except _BROKER_ERRORS as exc:
            await self._drop()
            raise BrokerUnavailableError(str(exc)) from exc

    async def dead_letter(self, delivery: Delivery, group: str, reason: str) -> None:
        """配信を dead-letter ストリームへ移し、元のエントリを ack する。"""
        client = await self._ensure_client()
        try:
            await client.xadd(
                dead_letter_stream(delivery.queue),
                {
                    "message_id": delivery.message_id,
                    "event_type": delivery.event_type,
                    "body": json.dumps(delivery.body, default=str),
                    "group": group,
                    "delivery_count": str(delivery.delivery_count),
                    "reason": reason,
                },
            )
            await client.xack(delivery.queue, group, delivery.entry_id)
        except _BROKER_ERRORS as exc:
            await self._drop()
            raise BrokerUnavailableError(str(exc)) from exc

    # ── 内部 ─────────────────────────────────────

    async def _ensure_client(self) -> aioredis.Redis:
        if self._client is None:
            await self.connect()
        return self._client

    async def _drop(self) -> None:
        async with self._lock:
            client, self._client = self._client, None
        if client is not None:
            await self._close_quietly(client)

    @staticmethod
    async def _close_quietly(client: Any) -> None:
        try:
            await client.aclose()
        except _BROKER_ERRORS:
            logger.debug("Ignoring error while closing broker client", exc_info=True)


def _stream_entries(response: Any) -> list:
    # XREADGROUP (RESP2): [[stream, [(entry_id, fields), ...]], ...]。タイムアウト時は空
    if not response:
        return []
    return [(stream, entries) for stream, entries in response]


def _to_delivery(queue: str, entry_id: str, fields: dict, delivery_count: int) -> Delivery:
    raw = fields.get("body", "{}")
    try:
        body = json.loads(raw)
    except ValueError:
        # 壊れた本文もそのまま渡す。ハンドラが失敗し、上限到達で dead-letter へ行く
        body = {"raw": raw}
    return Delivery(
        queue=queue,
        entry_id=entry_id,
        message_id=fields.get("message_id", entry_id),
        event_type=fields.get("event_type", ""),
        body=body,
        delivery_count=delivery_count,
    )
