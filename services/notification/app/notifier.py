"""
Notification Service — 通知の送信

NOTIFICATION_WEBHOOK_URL が設定されていれば Webhook に POST する。
未設定ならログに出すだけ。
送信に失敗したら例外をそのまま投げる → コンシューマは ack せず、後で再配信される。
"""

import logging

import httpx

from services.shared.events import OrderCreated

logger = logging.getLogger(__name__)


def render(order: OrderCreated) -> str:
    items = sum(line.quantity for line in order.products)
    return (
        f"Order {order.id} received: {items} item(s), "
        f"total {order.total_price:.2f}. We will let you know once it is confirmed."
    )


class OrderNotifier:
    def __init__(self, webhook_url: str | None = None, client: httpx.AsyncClient | None = None) -> None:
        self.webhook_url = webhook_url
        self.client = client or httpx.AsyncClient(timeout=10.0)

    @property
    def channel(self) -> str:
        return "webhook" if self.webhook_url else "log"

    async def send(self, order: OrderCreated) -> str:
        """通知を送り、使ったチャネル名を返す"""
        body = render(order)
        if self.webhook_url:
            resp = await self.client.post(
                self.webhook_url,
                json={"userId": order.user_id, "orderId": str(order.id), "message": body},
            )
            resp.raise_for_status()
        logger.info("Notified user %s via %s: %s", order.user_id, self.channel, body)
        return self.channel

    async def aclose(self) -> None:
        await self.client.aclose()
