"""
Shared — イベント定義 (サービス間のメッセージ契約)

イベントは過去形で命名し、不変(immutable)として扱う。
メッセージ本文は JSON (camelCase) で、HTTP の表現と同じ形にそろえる。

ストリーム:
  order_notifications   Order Service → Notification / Inventory  (OrderCreated)
  inventory_events      Inventory Service → Order Service          (OrderStockResolved)
"""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

ORDER_NOTIFICATIONS = "order_notifications"
INVENTORY_EVENTS = "inventory_events"

ORDER_CREATED = "OrderCreated"
ORDER_STOCK_RESOLVED = "OrderStockResolved"


def dead_letter_stream(queue: str) -> str:
    return f"{queue}.dead-letter"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_message(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


class OrderLine(CamelModel):
    product_id: UUID
    quantity: int
    unit_price: float


class OrderCreated(CamelModel):
    """注文が作成された (注文スナップショットそのもの)"""
    id: UUID
    user_id: str
    products: list[OrderLine]
    total_price: float
    status: str
    created_at: datetime


class OrderStockResolved(CamelModel):
    """注文の全明細について在庫引き当ての結果が確定した"""
    order_id: UUID
    reserved: bool
    reason: str | None = None
    timestamp: datetime
