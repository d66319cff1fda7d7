from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.core.database import utcnow
from marketplace.models.conversation import Conversation
from marketplace.models.message import Message
from marketplace.services.conversation_events import emit_messages_read
from marketplace.services.conversations import get_conversation_for_user
from marketplace.services.event_bus import EventBus


def _unread_conditions(user_id: str):
    return (
        Message.sender_id != user_id,
        Message.read_at.is_(None),
        Message.deleted_at.is_(None),
    )


async def mark_conversation_read(
    db: AsyncSession,
    conversation_id: int,
    user_id: str,
    *,
    now: datetime | None = None,
    bus: EventBus | None = None,
) -> list[int]:
    """Marca como lidas, num único UPDATE, as mensagens do outro participante."""
    await get_conversation_for_user(db, conversation_id, user_id)

    message_ids = list(
        (
            await db.execute(
                select(Message.id).where(Message.conversation_id == conversation_id, *_unread_conditions(user_id))
            )
        ).scalars()
    )
    if not message_ids:
        return []

    await db.execute(
        update(Message)
        .where(Message.id.in_(message_ids), Message.read_at.is_(None))
        .values(read_at=now or utcnow())
        .execution_options(synchronize_session=False)
    )
    await db.commit()

    emit_messages_read(conversation_id, user_id, message_ids, bus)
    return message_ids


def _user_conversations(user_id: str):
    return select(Conversation.id).where(
        or_(Conversation.client_id == user_id, Conversation.professional_id == user_id)
    )


async def unread_count(db: AsyncSession, user_id: str) -> int:
    stmt = select(func.count(Message.id)).where(
        Message.conversation_id.in_(_user_conversations(user_id)),
        *_unread_conditions(user_id),
    )
    return int((await db.execute(stmt)).scalar_one() or 0)


async def unread_by_conversation(db: AsyncSession, user_id: str) -> dict[int, int]:
    stmt = (
        select(Message.conversation_id, func.count(Message.id))
        .where(Message.conversation_id.in_(_user_conversations(user_id)), *_unread_conditions(user_id))
        .group_by(Message.conversation_id)
    )
    return {conversation_id: count for conversation_id, count in (await db.execute(stmt)).all()}
