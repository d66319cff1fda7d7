from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.core.config import MAX_CHAT_FILE_BYTES
from marketplace.core.database import get_db
from marketplace.core.errors import ValidationError
from marketplace.deps import get_chat_storage, get_current_user_id, get_event_bus, get_presence_service
from marketplace.services.chat_storage import ChatStorage
from marketplace.services.conversation_events import build_message_payload
from marketplace.services.event_bus import EventBus
from marketplace.services.messages import delete_message, send_file, send_message
from marketplace.services.presence import PresenceService
from marketplace.services.read_tracker import mark_conversation_read, unread_by_conversation, unread_count

router = APIRouter(prefix="/api", tags=["messages"])


class MessageCreate(BaseModel):
    content: str = Field(default="", max_length=5000)
    message_type: str = "text"
    file_url: Optional[str] = None
    file_name: Optional[str] = None
    reply_to_id: Optional[int] = None
    client_message_id: Optional[str] = Field(default=None, max_length=64)


@router.post("/conversations/{conversation_id}/messages")
async def post_message(
    conversation_id: int,
    body: MessageCreate,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    bus: EventBus = Depends(get_event_bus),
    presence: PresenceService = Depends(get_presence_service),
):
    message = await send_message(
        db,
        conversation_id,
        user_id,
        content=body.content,
        message_type=body.message_type,
        file_url=body.file_url,
        file_name=body.file_name,
        reply_to_id=body.reply_to_id,
        client_message_id=body.client_message_id,
        bus=bus,
    )
    presence.clear(conversation_id, user_id)
    return build_message_payload(message)


@router.post("/conversations/{conversation_id}/files")
async def post_file(
    conversation_id: int,
    file: UploadFile = File(...),
    caption: Optional[str] = Form(default=None),
    reply_to_id: Optional[int] = Form(default=None),
    client_message_id: Optional[str] = Form(default=None),
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    bus: EventBus = Depends(get_event_bus),
    storage: ChatStorage = Depends(get_chat_storage),
):
    if not file.filename:
        raise ValidationError("Arquivo inválido")
    data = await file.read(MAX_CHAT_FILE_BYTES + 1)
    messages = await send_file(
        db,
        storage,
        conversation_id,
        user_id,
        filename=file.filename,
        content_type=file.content_type or "application/octet-stream",
        data=data,
        caption=caption,
        reply_to_id=reply_to_id,
        client_message_id=client_message_id,
        bus=bus,
    )
    return [build_message_payload(message) for message in messages]


@router.delete("/messages/{message_id}")
async def remove_message(
    message_id: int,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    bus: EventBus = Depends(get_event_bus),
):
    message = await delete_message(db, message_id, user_id, bus=bus)
    return build_message_payload(message)


@router.post("/conversations/{conversation_id}/read")
async def mark_read(
    conversation_id: int,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    bus: EventBus = Depends(get_event_bus),
):
    message_ids = await mark_conversation_read(db, conversation_id, user_id, bus=bus)
    return {"conversation_id": conversation_id, "marked": len(message_ids), "message_ids": message_ids}


@router.get("/messages/unread-count")
async def get_unread_count(
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    return {
        "total": await unread_count(db, user_id),
        "by_conversation": await unread_by_conversation(db, user_id),
    }
