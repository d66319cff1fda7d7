from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import and_, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.core.database import utcnow
from marketplace.core.errors import NotFoundError, PermissionDeniedError, ValidationError
from marketplace.models.conversation import Conversation, ConversationClearance
from marketplace.models.message import Message

logger = logging.getLogger(__name__)


async def get_conversation(db: AsyncSession, conversation_id: int) -> Conversation:
    conversation = await db.get(Conversation, conversation_id)
    if conversation is None:
        raise NotFoundError("Conversa não encontrada", conversation_id=conversation_id)
    return conversation


def ensure_participant(conversation: Conversation, user_id: str) -> None:
    if user_id not in conversation.participants():
        raise PermissionDeniedError("Usuário não participa desta conversa", conversation_id=conversation.id)


async def get_conversation_for_user(db: AsyncSession, conversation_id: int, user_id: str) -> Conversation:
    conversation = await get_conversation(db, conversation_id)
    ensure_participant(conversation, user_id)
    return conversation


async def get_or_create_conversation(
    db: AsyncSession,
    client_id: str,
    professional_id: str,
    service_id: str | None = None,
) -> tuple[Conversation, bool]:
    client_id = (client_id or "").strip()
    professional_id = (professional_id or "").strip()
    if not client_id or not professional_id:
        raise ValidationError("Cliente e profissional são obrigatórios")
    if client_id == professional_id:
        raise ValidationError("Não é possível iniciar uma conversa consigo mesmo")

    service_filter = Conversation.service_id.is_(None) if service_id is None else Conversation.service_id == service_id
    stmt = select(Conversation).where(
        Conversation.client_id == client_id,
        Conversation.professional_id == professional_id,
        service_filter,
    )
    existing = (await db.execute(stmt)).scalars().first()
    if existing is not None:
        return existing, False

    now = utcnow()
    conversation = Conversation(
        client_id=client_id,
        professional_id=professional_id,
        service_id=service_id,
        created_at=now,
        last_message_at=now,
    )
    db.add(conversation)
    try:
        await db.commit()
    except IntegrityError:
        # outra requisição criou a mesma conversa entre o select e o insert
        await db.rollback()
        existing = (await db.execute(stmt)).scalars().first()
        if existing is None:
            raise
        return existing, False
    await db.refresh(conversation)
    logger.info("conversation created", extra={"conversation_id": conversation.id})
    return conversation, True


async def get_cleared_at(db: AsyncSession, conversation_id: int, user_id: str) -> datetime | None:
    stmt = select(ConversationClearance.cleared_at).where(
        ConversationClearance.conversation_id == conversation_id,
        ConversationClearance.user_id == user_id,
    )
    return (await db.execute(stmt)).scalar_one_or_none()


async def clear_conversation(
    db: AsyncSession,
    conversation_id: int,
    user_id: str,
    now: datetime | None = None,
) -> ConversationClearance:
    """Limpa a conversa só para ``user_id``; o outro participante continua vendo tudo."""
    await get_conversation_for_user(db, conversation_id, user_id)
    cleared_at = now or utcnow()

    stmt = select(ConversationClearance).where(
        ConversationClearance.conversation_id == conversation_id,
        ConversationClearance.user_id == user_id,
    )
    clearance = (await db.execute(stmt)).scalars().first()
    if clearance is None:
        clearance = ConversationClearance(conversation_id=conversation_id, user_id=user_id, cleared_at=cleared_at)
        db.add(clearance)
    elif cleared_at > clearance.cleared_at:
        clearance.cleared_at = cleared_at
    await db.commit()
    await db.refresh(clearance)
    return clearance


async def list_conversations(db: AsyncSession, user_id: str) -> list[dict[str, Any]]:
    conversations = (
        await db.execute(
            select(Conversation)
            .where(or_(Conversation.client_id == user_id, Conversation.professional_id == user_id))
            .order_by(Conversation.last_message_at.desc(), Conversation.id.desc())
        )
    ).scalars().all()
    if not conversations:
        return []

    conversation_ids = [conversation.id for conversation in conversations]

    clearances = dict(
        (
            await db.execute(
                select(ConversationClearance.conversation_id, ConversationClearance.cleared_at).where(
                    ConversationClearance.user_id == user_id,
                    ConversationClearance.conversation_id.in_(conversation_ids),
                )
            )
        ).all()
    )

    unread_rows = (
        await db.execute(
            select(Message.conversation_id, func.count(Message.id))
            .where(
                Message.conversation_id.in_(conversation_ids),
                Message.sender_id != user_id,
                Message.read_at.is_(None),
                Message.deleted_at.is_(None),
            )
            .group_by(Message.conversation_id)
        )
    ).all()
    unread = {conversation_id: count for conversation_id, count in unread_rows}

    result = []
    for conversation in conversations:
        last_message = await _last_visible_message(db, conversation.id, clearances.get(conversation.id))
        result.append(
            {
                "id": conversation.id,
                "client_id": conversation.client_id,
                "professional_id": conversation.professional_id,
                "service_id": conversation.service_id,
                "other_participant_id": conversation.other_participant(user_id),
                "created_at": conversation.created_at,
                "last_message_at": conversation.last_message_at,
                "last_message": _preview(last_message),
                "unread_count": unread.get(conversation.id, 0),
            }
        )
    return result


async def _last_visible_message(
    db: AsyncSession,
    conversation_id: int,
    cleared_at: datetime | None,
) -> Message | None:
    conditions = [Message.conversation_id == conversation_id, Message.deleted_at.is_(None)]
    if cleared_at is not None:
        conditions.append(Message.created_at > cleared_at)
    stmt = select(Message).where(and_(*conditions)).order_by(Message.created_at.desc(), Message.id.desc()).limit(1)
    return (await db.execute(stmt)).scalars().first()


def _preview(message: Message | None) -> dict[str, Any] | None:
    if message is None:
        return None
    if message.message_type == "image":
        text = "📷 Imagem"
    elif message.message_type == "file":
        text = f"📎 {message.file_name or 'Arquivo'}"
    else:
        text = message.content
    return {
        "id": message.id,
        "sender_id": message.sender_id,
        "message_type": message.message_type,
        "content": text,
        "created_at": message.created_at,
    }
