"""
Notification Service — クエリハンドラ (Read 側)
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .schema import notifications


async def list_notifications(session: AsyncSession) -> list[dict]:
    result = await session.execute(select(notifications).order_by(notifications.c.created_at.desc()))
    return [
        {
            "id": row.id,
            "messageId": row.message_id,
            "orderId": row.order_id,
            "userId": row.user_id,
            "channel": row.channel,
            "body": row.body,
            "createdAt": row.created_at.isoformat() if row.created_at else None,
        }
        for row in result.fetchall()
    ]
