"""
Order Service — コマンドハンドラ (Write 側)

注文作成では、注文と OrderCreated の Outbox イベントを
1 つのローカルトランザクションで書き込む。
ブローカーには一切触れない → 「DB はコミットされたが発行に失敗した」
(またはその逆) という二重書き込みの不整合が起きない。
発行は Outbox Relay がバックグラウンドで行う。
"""

import logging
from datetime import datetime, timezone
from uuid import UUID, uuid4

from sqlalchemy import insert, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from services.shared.errors import NotFoundError, PersistenceError, ValidationError
from services.shared.events import ORDER_CREATED, ORDER_NOTIFICATIONS, OrderLine, OrderStockResolved
from services.shared.outbox import stage_event

from .aggregate import PENDING, OrderAggregate
from .schema import order_lines, orders, outbox_events

logger = logging.getLogger(__name__)


def normalize_lines(products: list[tuple[UUID, int]]) -> list[tuple[UUID, int]]:
    """
    明細を検証し、同じ商品の行を合算する。
    明細は順序を持たない多重集合なので、商品ごとに 1 行にまとめても意味は変わらない。
    """
    if not products:
        raise ValidationError("Order must contain at least one product")

    merged: dict[UUID, int] = {}
    for product_id, quantity in products:
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise ValidationError(f"Quantity for product {product_id} must be a positive integer")
        merged[product_id] = merged.get(product_id, 0) + quantity
    return list(merged.items())


async def submit_order(
    session: AsyncSession,
    user_id: str,
    products: list[tuple[UUID, int]],
    prices: dict[UUID, float],
    total_price: float | None = None,
    order_id: UUID | None = None,
) -> OrderAggregate:
    """
    注文作成コマンド

    1. 明細を検証し、注文時点の単価で合計金額を確定する
    2. 注文 (pending) と明細を INSERT
    3. OrderCreated を Outbox に pending で追加
    4. まとめて 1 回だけ commit。失敗したら何も残さない
    """
    if not user_id:
        raise ValidationError("userId is required")
    lines = normalize_lines(products)

    missing = [str(pid) for pid, _ in lines if pid not in prices]
    if missing:
        raise ValidationError(f"No price captured for products: {', '.join(missing)}")

    computed_total = round(sum(prices[pid] * qty for pid, qty in lines), 2)
    if total_price is not None and abs(total_price - computed_total) > 0.005:
        raise ValidationError(
            f"totalPrice {total_price} does not match current prices (expected {computed_total})"
        )

    now = datetime.now(timezone.utc)
    agg = OrderAggregate(
        id=order_id or uuid4(),
        user_id=user_id,
        lines=[
            OrderLine(product_id=pid, quantity=qty, unit_price=prices[pid]) for pid, qty in lines
        ],
        total_price=computed_total,
        status=PENDING,
        created_at=now,
    )

    try:
        await session.execute(
            insert(orders).values(
                id=str(agg.id),
                user_id=agg.user_id,
                total_price=agg.total_price,
                status=agg.status,
                created_at=now,
                updated_at=now,
            )
        )
        await session.execute(
            insert(order_lines),
            [
                {
                    "order_id": str(agg.id),
                    "product_id": str(line.product_id),
                    "position": position,
                    "quantity": line.quantity,
                    "unit_price": line.unit_price,
                }
                for position, line in enumerate(agg.lines)
            ],
        )
        await stage_event(
            session,
            outbox_events,
            aggregate_id=agg.id,
            event_type=ORDER_CREATED,
            destination=ORDER_NOTIFICATIONS,
            payload=agg.to_snapshot().to_message(),
            now=now,
        )
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.exception("Failed to persist order %s", agg.id)
        raise PersistenceError("Error creating order") from exc

    logger.info("Order %s accepted for user %s (total=%.2f)", agg.id, agg.user_id, agg.total_price)
    return agg


async def load_order(session: AsyncSession, order_id: UUID) -> OrderAggregate:
    result = await session.execute(select(orders).where(orders.c.id == str(order_id)))
    row = result.fetchone()
    if not row:
        raise NotFoundError("Order not found")
    lines = await session.execute(
        select(order_lines)
        .where(order_lines.c.order_id == str(order_id))
        .order_by(order_lines.c.position)
    )
    return OrderAggregate.from_rows(row, lines.fetchall())


async def apply_stock_outcome(session: AsyncSession, event: OrderStockResolved) -> OrderAggregate:
    """
    注文確定 / 失敗コマンド (inventory_events のコンシューマから呼ばれる)

    commit は呼び出し側 (処理済みメッセージの記録と同じトランザクション) に任せる。
    """
    agg = await load_order(session, event.order_id)
    if agg.apply_outcome(event):
        await session.execute(
            update(orders)
            .where(orders.c.id == str(agg.id), orders.c.status == PENDING)
            .values(status=agg.status, updated_at=datetime.now(timezone.utc))
        )
        if event.reserved:
            logger.info("Order %s confirmed", agg.id)
        else:
            logger.info("Order %s failed: %s", agg.id, event.reason)
    return agg
