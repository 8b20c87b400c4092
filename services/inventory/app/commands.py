"""
Inventory Service — コマンドハンドラ (Write 側)

在庫の確認と減算は必ず 1 つの条件付き UPDATE で行う:

    UPDATE products SET stock = stock - :qty
    WHERE id = :id AND stock >= :qty

「読んでから書く」を 2 回の呼び出しに分けると、同じ商品への注文が同時に来たとき
両方が「在庫あり」を見て両方成功してしまう。条件付き UPDATE なら
DB が行単位で直列化するので、成功するのは在庫が足りる分だけになる。
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from uuid import UUID, uuid4

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from services.shared.errors import (
    InsufficientStockError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from services.shared.events import OrderCreated, OrderStockResolved

from .queries import get_product
from .schema import products, stock_reservations

logger = logging.getLogger(__name__)

RESERVED = "reserved"
RELEASED = "released"


@dataclass
class Reservation:
    order_id: UUID
    product_id: UUID
    quantity: int
    stock: int
    replayed: bool = False


def _require_positive(quantity: int) -> None:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise ValidationError("Quantity must be a positive integer")


async def create_product(
    session: AsyncSession,
    name: str,
    price: float,
    stock: int,
    description: str = "",
    product_id: UUID | None = None,
) -> dict:
    if not name:
        raise ValidationError("name is required")
    if price < 0:
        raise ValidationError("price must not be negative")
    if isinstance(stock, bool) or not isinstance(stock, int) or stock < 0:
        raise ValidationError("stock must be a non-negative integer")

    product_id = product_id or uuid4()
    try:
        await session.execute(
            insert(products).values(
                id=str(product_id),
                name=name,
                description=description,
                price=price,
                stock=stock,
                updated_at=datetime.now(timezone.utc),
            )
        )
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        raise PersistenceError("Error creating product") from exc
    return await get_product(session, product_id)


async def _decrement(session: AsyncSession, product_id: UUID, quantity: int) -> int:
    """
    条件付き減算。成功したら減算後の在庫を返す (トランザクションは開いたまま)。
    在庫不足・商品なしのときは何も変更せずにロールバックして例外を投げる。
    """
    result = await session.execute(
        update(products)
        .where(products.c.id == str(product_id), products.c.stock >= quantity)
        .values(stock=products.c.stock - quantity, updated_at=datetime.now(timezone.utc))
    )
    if result.rowcount == 0:
        current = await session.execute(
            select(products.c.stock).where(products.c.id == str(product_id))
        )
        row = current.first()
        await session.rollback()
        if row is None:
            raise NotFoundError("Product not found")
        raise InsufficientStockError(product_id, quantity, row.stock)

    current = await session.execute(select(products.c.stock).where(products.c.id == str(product_id)))
    return current.scalar_one()


async def reduce_stock(session: AsyncSession, product_id: UUID, quantity: int) -> dict:
    """在庫を直接減らす (PUT /products/{id}/reduce-stock)。重複排除はしない。"""
    _require_positive(quantity)
    try:
        await _decrement(session, product_id, quantity)
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        raise PersistenceError("Error reducing stock") from exc
    return await get_product(session, product_id)


async def _find_reservation(session: AsyncSession, order_id: UUID, product_id: UUID):
    result = await session.execute(
        select(stock_reservations).where(
            stock_reservations.c.order_id == str(order_id),
            stock_reservations.c.product_id == str(product_id),
        )
    )
    return result.fetchone()


def _replay(existing, order_id: UUID, product_id: UUID, quantity: int) -> Reservation:
    # 補償で解放済みの引き当ては成功として返さない
    if existing.status == RELEASED:
        raise InsufficientStockError(product_id, quantity)
    return Reservation(order_id, product_id, existing.quantity, existing.stock_after, replayed=True)


async def reserve_stock(
    session: AsyncSession,
    order_id: UUID,
    product_id: UUID,
    quantity: int,
) -> Reservation:
    """
    在庫引き当てコマンド — (order_id, product_id) ごとに 1 回だけ減算する。

    同じキーで再度呼ばれたら (再配信)、減算せずに前回の結果を返す。
    前回の引き当てが補償で released になっていれば InsufficientStockError を投げる。
    減算と引き当て記録は同じトランザクションでコミットする。
    並行して同じキーが来た場合は主キー違反になった側がロールバックし、勝った側の結果を返す。
    """
    _require_positive(quantity)

    existing = await _find_reservation(session, order_id, product_id)
    if existing:
        return _replay(existing, order_id, product_id, quantity)

    try:
        stock = await _decrement(session, product_id, quantity)
        await session.execute(
            insert(stock_reservations).values(
                order_id=str(order_id),
                product_id=str(product_id),
                quantity=quantity,
                stock_after=stock,
                status=RESERVED,
                created_at=datetime.now(timezone.utc),
            )
        )
        await session.commit()
    except IntegrityError:
        await session.rollback()
        existing = await _find_reservation(session, order_id, product_id)
        if existing is None:
            raise PersistenceError("Error reserving stock")
        return _replay(existing, order_id, product_id, quantity)
    except SQLAlchemyError as exc:
        await session.rollback()
        raise PersistenceError("Error reserving stock") from exc

    logger.info("Reserved %d of %s for order %s (stock=%d)", quantity, product_id, order_id, stock)
    return Reservation(order_id, product_id, quantity, stock)


async def release_stock(session: AsyncSession, order_id: UUID, product_id: UUID) -> bool:
    """
    在庫解放コマンド (補償)

    reserved の引き当てを released にし、同じトランザクションで在庫を戻す。
    既に解放済みなら何もしない (False)。
    """
    try:
        result = await session.execute(
            update(stock_reservations)
            .where(
                stock_reservations.c.order_id == str(order_id),
                stock_reservations.c.product_id == str(product_id),
                stock_reservations.c.status == RESERVED,
            )
            .values(status=RELEASED)
        )
        if result.rowcount == 0:
            await session.rollback()
            return False

        reservation = await _find_reservation(session, order_id, product_id)
        await session.execute(
            update(products)
            .where(products.c.id == str(product_id))
            .values(
                stock=products.c.stock + reservation.quantity,
                updated_at=datetime.now(timezone.utc),
            )
        )
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        raise PersistenceError("Error releasing stock") from exc

    logger.info("Released %d of %s for order %s", reservation.quantity, product_id, order_id)
    return True


async def release_order(session: AsyncSession, order_id: UUID) -> int:
    """注文の引き当てをすべて解放し、解放した件数を返す。"""
    result = await session.execute(
        select(stock_reservations.c.product_id).where(
            stock_reservations.c.order_id == str(order_id),
            stock_reservations.c.status == RESERVED,
        )
    )
    product_ids = [UUID(row.product_id) for row in result.fetchall()]
    released = 0
    for product_id in product_ids:
        if await release_stock(session, order_id, product_id):
            released += 1
    return released


async def _has_released(session: AsyncSession, order_id: UUID) -> bool:
    result = await session.execute(
        select(stock_reservations.c.order_id).where(
            stock_reservations.c.order_id == str(order_id),
            stock_reservations.c.status == RELEASED,
        )
    )
    return result.first() is not None


async def fulfill_order(
    session_factory: async_sessionmaker[AsyncSession],
    order: OrderCreated,
) -> OrderStockResolved:
    """
    注文の全明細について在庫を引き当てる。

    1. 明細ごとに reserve_stock (それぞれ独立したトランザクション)
    2. どれかが在庫不足なら、その注文で引き当て済みの分をすべて戻す (補償)
    3. 前回の試行で既に補償していたら、結果は失敗のまま変えない
    """
    now = datetime.now(timezone.utc)

    async with session_factory() as session:
        if await _has_released(session, order.id):
            await release_order(session, order.id)
            return OrderStockResolved(
                order_id=order.id,
                reserved=False,
                reason="Reservation already compensated",
                timestamp=now,
            )

    quantities: dict[UUID, int] = {}
    for line in order.products:
        quantities[line.product_id] = quantities.get(line.product_id, 0) + line.quantity

    reason = None
    for product_id, quantity in quantities.items():
        async with session_factory() as session:
            try:
                await reserve_stock(session, order.id, product_id, quantity)
            except InsufficientStockError:
                reason = f"Insufficient stock for product {product_id}"
                break
            except NotFoundError:
                reason = f"Product {product_id} not found"
                break

    if reason is None:
        return OrderStockResolved(order_id=order.id, reserved=True, timestamp=now)

    async with session_factory() as session:
        released = await release_order(session, order.id)
    logger.info("Order %s rejected (%s); compensated %d reservations", order.id, reason, released)
    return OrderStockResolved(order_id=order.id, reserved=False, reason=reason, timestamp=now)
