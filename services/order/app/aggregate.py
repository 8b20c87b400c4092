"""
Order Service — 注文集約 (Order Aggregate)

注文の状態遷移をここに閉じ込める。

状態遷移:
    pending → confirmed  (全明細の在庫引き当て成功)
    pending → failed     (どれかの明細で在庫不足。引き当て済みの分は補償済み)

同じ結果が再配信されても状態は変わらない (冪等)。
確定済みの注文に逆の結果が届いた場合は無視する。
"""

import logging
from datetime import datetime
from uuid import UUID

from services.shared.events import OrderCreated, OrderLine, OrderStockResolved

logger = logging.getLogger(__name__)

PENDING = "pending"
CONFIRMED = "confirmed"
FAILED = "failed"


class OrderAggregate:
    def __init__(
        self,
        id: UUID,
        user_id: str,
        lines: list[OrderLine],
        total_price: float,
        status: str = PENDING,
        created_at: datetime | None = None,
    ) -> None:
        self.id = id
        self.user_id = user_id
        self.lines = lines
        self.total_price = total_price
        self.status = status
        self.created_at = created_at

    # ── 状態遷移 ─────────────────────────────────

    def confirm(self) -> bool:
        return self._transition(CONFIRMED)

    def fail(self) -> bool:
        return self._transition(FAILED)

    def _transition(self, target: str) -> bool:
        """状態を変えたら True。既に同じ状態、または別の終端状態なら False。"""
        if self.status == target:
            return False
        if self.status != PENDING:
            logger.warning(
                "Order %s is already %s; ignoring transition to %s", self.id, self.status, target
            )
            return False
        self.status = target
        return True

    def apply_outcome(self, event: OrderStockResolved) -> bool:
        return self.confirm() if event.reserved else self.fail()

    # ── 変換 ─────────────────────────────────────

    def to_snapshot(self) -> OrderCreated:
        return OrderCreated(
            id=self.id,
            user_id=self.user_id,
            products=self.lines,
            total_price=self.total_price,
            status=self.status,
            created_at=self.created_at,
        )

    @classmethod
    def from_rows(cls, row, line_rows) -> "OrderAggregate":
        return cls(
            id=UUID(row.id),
            user_id=row.user_id,
            lines=[
                OrderLine(
                    product_id=UUID(line.product_id),
                    quantity=line.quantity,
                    unit_price=float(line.unit_price),
                )
                for line in line_rows
            ],
            total_price=float(row.total_price),
            status=row.status,
            created_at=row.created_at,
        )
