"""
Inventory Service — テーブル定義

products.stock は複数の注文から同時に更新される唯一の共有リソース。
CHECK 制約でも負にならないことを保証する。
stock_reservations は (order_id, product_id) ごとの引き当て記録で、
再配信時の重複排除と補償 (在庫の戻し) の両方に使う。
"""

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
)

from services.shared.inbox import consumed_messages_table
from services.shared.outbox import outbox_table

metadata = MetaData()

products = Table(
    "products",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("description", Text, nullable=False, default=""),
    Column("price", Numeric(12, 2, asdecimal=False), nullable=False),
    Column("stock", Integer, nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    CheckConstraint("stock >= 0", name="ck_products_stock_non_negative"),
    CheckConstraint("price >= 0", name="ck_products_price_non_negative"),
)

stock_reservations = Table(
    "stock_reservations",
    metadata,
    Column("order_id", String(36), primary_key=True),
    Column("product_id", String(36), primary_key=True),
    Column("quantity", Integer, nullable=False),
    Column("stock_after", Integer, nullable=False),
    Column("status", String(16), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

outbox_events = outbox_table(metadata)
consumed_messages = consumed_messages_table(metadata)
