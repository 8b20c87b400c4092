"""
Inventory Service — クエリハンドラ (Read 側)
"""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from services.shared.errors import NotFoundError

from .schema import products, stock_reservations


def product_to_dict(row) -> dict:
    return {
        "id": str(row.id),
        "name": row.name,
        "description": row.description,
        "price": float(row.price),
        "stock": row.stock,
        "updatedAt": row.updated_at.isoformat() if row.updated_at else None,
    }


async def get_product(session: AsyncSession, product_id: UUID) -> dict:
    result = await session.execute(select(products).where(products.c.id == str(product_id)))
    row = result.fetchone()
    if not row:
        raise NotFoundError("Product not found")
    return product_to_dict(row)


async def list_products(session: AsyncSession) -> list[dict]:
    result = await session.execute(select(products).order_by(products.c.name))
    return [product_to_dict(row) for row in result.fetchall()]


async def list_reservations(session: AsyncSession, order_id: UUID) -> list[dict]:
    result = await session.execute(
        select(stock_reservations).where(stock_reservations.c.order_id == str(order_id))
    )
    return [
        {
            "orderId": row.order_id,
            "productId": row.product_id,
            "quantity": row.quantity,
            "stockAfter": row.stock_after,
            "status": row.status,
        }
        for row in result.fetchall()
    ]
