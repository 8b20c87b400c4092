"""
Order Service — テーブル定義

orders / order_lines は注文の状態、outbox_events は未発行イベント、
consumed_messages は inventory_events の重複排除に使う。
"""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, MetaData, Numeric, String, Table

from services.shared.inbox import consumed_messages_table
from services.shared.outbox import outbox_table

metadata = MetaData()

orders = Table(
    "orders",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(64), nullable=False, index=True),
    Column("total_price", Numeric(12, 2, asdecimal=False), nullable=False),
    Column("status", String(16), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

order_lines = Table(
    "order_lines",
    metadata,
    Column("order_id", String(36), ForeignKey("orders.id"), primary_key=True),
    Column("product_id", String(36), primary_key=True),
    Column("position", Integer, nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("unit_price", Numeric(12, 2, asdecimal=False), nullable=False),
)

outbox_events = outbox_table(metadata)
consumed_messages = consumed_messages_table(metadata)
