"""
Shared — リトライ (指数バックオフ)

ブローカーや DB が落ちているとき、Relay / Consumer / スキーマ作成は
データを捨てずに待ってから再試行する。待ち時間は 2 倍ずつ伸び、上限で止まる。
再試行そのものは tenacity に任せ、ここではシャットダウンとの連動だけを足す。

  - stop:  stop_event がセットされたら再試行をやめる (RetryError)
  - sleep: 待機中でも stop_event がセットされたらすぐ起きる
"""

import asyncio
import logging
from functools import partial

from tenacity import AsyncRetrying, before_sleep_log, retry_if_exception_type, wait_exponential
from tenacity.stop import stop_base


async def sleep_or_stop(stop_event: asyncio.Event, delay: float) -> bool:
    """delay 秒待つ。途中で stop_event がセットされたら True を返してすぐ戻る。"""
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return False
    return True


class stop_when_set(stop_base):
    """イベントがセットされていたら止める tenacity の stop 条件"""

    def __init__(self, event: asyncio.Event) -> None:
        self.event = event

    def __call__(self, retry_state) -> bool:
        return self.event.is_set()


class RetryPolicy:
    """base, base×2, base×4 … と待ち、cap で頭打ちにする無期限リトライ"""

    def __init__(self, base: float = 0.5, cap: float = 30.0) -> None:
        self.base = base
        self.cap = cap

    def retrying(
        self,
        stop_event: asyncio.Event,
        retry_on: type[BaseException] | tuple[type[BaseException], ...],
        logger: logging.Logger,
    ) -> AsyncRetrying:
        return AsyncRetrying(
            wait=wait_exponential(multiplier=self.base, max=self.cap),
            retry=retry_if_exception_type(retry_on),
            stop=stop_when_set(stop_event),
            sleep=partial(sleep_or_stop, stop_event),
            before_sleep=before_sleep_log(logger, logging.WARNING),
        )
