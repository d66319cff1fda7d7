from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.core.config import MAX_CHAT_FILE_BYTES
from marketplace.core.database import utcnow
from marketplace.core.errors import NotFoundError, PermissionDeniedError, ValidationError
from marketplace.models.conversation import Conversation
from marketplace.models.message import MESSAGE_TYPES, Message
from marketplace.services.chat_storage import ChatStorage
from marketplace.services.conversation_events import emit_message_created, emit_message_deleted
from marketplace.services.conversations import get_conversation_for_user
from marketplace.services.event_bus import EventBus

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 5000


async def get_message(db: AsyncSession, message_id: int) -> Message:
    message = await db.get(Message, message_id)
    if message is None:
        raise NotFoundError("Mensagem não encontrada", message_id=message_id)
    return message


async def _find_by_client_id(db: AsyncSession, conversation_id: int, client_message_id: str) -> Message | None:
    stmt = select(Message).where(
        Message.conversation_id == conversation_id,
        Message.client_message_id == client_message_id,
    )
    return (await db.execute(stmt)).scalars().first()


async def send_message(
    db: AsyncSession,
    conversation_id: int,
    sender_id: str,
    content: str = "",
    message_type: str = "text",
    file_url: str | None = None,
    file_name: str | None = None,
    reply_to_id: int | None = None,
    client_message_id: str | None = None,
    *,
    now: datetime | None = None,
    bus: EventBus | None = None,
) -> Message:
    conversation = await get_conversation_for_user(db, conversation_id, sender_id)

    message_type = (message_type or "text").strip().lower()
    if message_type not in MESSAGE_TYPES:
        raise ValidationError("Tipo de mensagem inválido", message_type=message_type)
    content = (content or "").strip()
    if message_type == "text" and not content:
        raise ValidationError("Mensagem vazia")
    if message_type != "text" and not file_url:
        raise ValidationError("Arquivo obrigatório para mensagens de imagem ou arquivo")
    if len(content) > MAX_MESSAGE_LENGTH:
        raise ValidationError("Mensagem muito longa")

    if client_message_id:
        existing = await _find_by_client_id(db, conversation_id, client_message_id)
        if existing is not None:
            return existing

    if reply_to_id is not None:
        target = await db.get(Message, reply_to_id)
        if target is None or target.conversation_id != conversation_id:
            raise ValidationError("Mensagem respondida não pertence a esta conversa", reply_to_id=reply_to_id)

    created_at = now or utcnow()
    message = Message(
        conversation_id=conversation_id,
        sender_id=sender_id,
        content=content,
        message_type=message_type,
        file_url=file_url,
        file_name=file_name,
        reply_to_id=reply_to_id,
        client_message_id=client_message_id,
        created_at=created_at,
    )
    db.add(message)
    if conversation.last_message_at is None or created_at > conversation.last_message_at:
        conversation.last_message_at = created_at

    try:
        await db.commit()
    except IntegrityError:
        # reenvio concorrente com a mesma chave
        await db.rollback()
        if client_message_id:
            existing = await _find_by_client_id(db, conversation_id, client_message_id)
            if existing is not None:
                return existing
        raise
    await db.refresh(message)

    logger.info("message sent", extra={"conversation_id": conversation_id})
    emit_message_created(message, bus)
    return message


async def send_file(
    db: AsyncSession,
    storage: ChatStorage,
    conversation_id: int,
    sender_id: str,
    *,
    filename: str,
    content_type: str,
    data: bytes,
    caption: str | None = None,
    reply_to_id: int | None = None,
    client_message_id: str | None = None,
    bus: EventBus | None = None,
) -> list[Message]:
    """Envia o arquivo e, se houver, a legenda como mensagem de texto separada.

    O upload acontece antes de qualquer escrita: se falhar, nada é enviado.
    """
    await get_conversation_for_user(db, conversation_id, sender_id)
    if not data:
        raise ValidationError("Arquivo vazio")
    if len(data) > MAX_CHAT_FILE_BYTES:
        raise ValidationError("Arquivo excede o tamanho máximo permitido")

    if client_message_id:
        existing = await _find_by_client_id(db, conversation_id, client_message_id)
        if existing is not None:
            sent = [existing]
            caption_message = await _find_by_client_id(db, conversation_id, f"{client_message_id}:caption")
            if caption_message is not None:
                sent.append(caption_message)
            return sent

    stored = await storage.save(
        conversation_id=conversation_id,
        filename=filename,
        content_type=content_type,
        data=data,
    )
    message_type = "image" if (content_type or "").lower().startswith("image/") else "file"
    file_message = await send_message(
        db,
        conversation_id,
        sender_id,
        content="",
        message_type=message_type,
        file_url=stored.url,
        file_name=filename,
        reply_to_id=reply_to_id,
        client_message_id=client_message_id,
        bus=bus,
    )
    sent = [file_message]

    caption = (caption or "").strip()
    if caption:
        caption_message = await send_message(
            db,
            conversation_id,
            sender_id,
            content=caption,
            client_message_id=f"{client_message_id}:caption" if client_message_id else None,
            bus=bus,
        )
        sent.append(caption_message)
    return sent


async def recompute_last_message_at(db: AsyncSession, conversation: Conversation) -> datetime:
    latest = (
        await db.execute(
            select(func.max(Message.created_at)).where(
                Message.conversation_id == conversation.id,
                Message.deleted_at.is_(None),
            )
        )
    ).scalar_one_or_none()
    conversation.last_message_at = latest or conversation.created_at
    return conversation.last_message_at


async def delete_message(
    db: AsyncSession,
    message_id: int,
    user_id: str,
    *,
    now: datetime | None = None,
    bus: EventBus | None = None,
) -> Message:
    message = await get_message(db, message_id)
    if message.sender_id != user_id:
        raise PermissionDeniedError("Somente o autor pode apagar a mensagem", message_id=message_id)
    if message.deleted_at is not None:
        return message

    conversation = await db.get(Conversation, message.conversation_id)
    message.deleted_at = now or utcnow()
    await db.flush()
    await recompute_last_message_at(db, conversation)
    await db.commit()
    await db.refresh(message)

    logger.info("message deleted", extra={"conversation_id": message.conversation_id})
    emit_message_deleted(message, bus)
    return message
