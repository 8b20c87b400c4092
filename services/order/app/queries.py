"""
Order Service — クエリハンドラ (Read 側)

下流の確定 / 失敗は非同期に反映されるので、
利用者は GET /orders/{id} で status を確認する。
"""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .aggregate import OrderAggregate
from .commands import load_order
from .schema import order_lines, orders


async def get_order(session: AsyncSession, order_id: UUID) -> dict:
    agg = await load_order(session, order_id)
    return agg.to_snapshot().to_message()


async def list_orders(session: AsyncSession) -> list[dict]:
    """全注文一覧 (新しい順)"""
    result = await session.execute(select(orders).order_by(orders.c.created_at.desc()))
    rows = result.fetchall()
    lines = await session.execute(select(order_lines).order_by(order_lines.c.position))
    lines_by_order: dict[str, list] = {}
    for line in lines.fetchall():
        lines_by_order.setdefault(line.order_id, []).append(line)
    return [
        OrderAggregate.from_rows(row, lines_by_order.get(row.id, [])).to_snapshot().to_message()
        for row in rows
    ]
