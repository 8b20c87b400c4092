"""
Shared — 処理済みメッセージ記録 (ConsumedMessageRecord)

at-least-once 配信では同じメッセージが何度も届く。
処理結果と同じトランザクションでメッセージ ID を記録し、
2 回目以降は副作用なしで ack する (冪等な消費)。
"""

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, MetaData, String, Table, insert, select
from sqlalchemy.ext.asyncio import AsyncSession


def consumed_messages_table(metadata: MetaData) -> Table:
    return Table(
        "consumed_messages",
        metadata,
        Column("consumer", String(64), primary_key=True),
        Column("message_id", String(64), primary_key=True),
        Column("processed_at", DateTime(timezone=True), nullable=False),
    )


async def already_consumed(session: AsyncSession, table: Table, consumer: str, message_id: str) -> bool:
    result = await session.execute(
        select(table.c.message_id).where(
            table.c.consumer == consumer, table.c.message_id == message_id
        )
    )
    return result.first() is not None


async def record_consumed(session: AsyncSession, table: Table, consumer: str, message_id: str) -> None:
    await session.execute(
        insert(table).values(
            consumer=consumer,
            message_id=message_id,
            processed_at=datetime.now(timezone.utc),
        )
    )


async def check_reachable(session: AsyncSession, table: Table) -> None:
    """テーブルに届かなければ SQLAlchemyError を投げる。"""
    await session.execute(select(table.c.message_id).limit(1))
