"""
Notification Service — テーブル定義
"""

from sqlalchemy import Column, DateTime, MetaData, String, Table, Text

from services.shared.inbox import consumed_messages_table

metadata = MetaData()

notifications = Table(
    "notifications",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("message_id", String(64), nullable=False, unique=True),
    Column("order_id", String(36), nullable=False, index=True),
    Column("user_id", String(64), nullable=False),
    Column("channel", String(32), nullable=False),
    Column("body", Text, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

consumed_messages = consumed_messages_table(metadata)
