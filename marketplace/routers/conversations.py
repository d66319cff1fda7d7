from __future__ import annotations

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, WebSocket, WebSocketDisconnect, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.core.database import get_db
from marketplace.core.errors import MarketplaceError, PermissionDeniedError
from marketplace.deps import get_current_user_id
from marketplace.services.conversations import (
    clear_conversation,
    get_conversation_for_user,
    get_or_create_conversation,
    list_conversations,
)
from marketplace.services.event_bus import conversation_topic
from marketplace.services.timeline import load_timeline

router = APIRouter(prefix="/api/conversations", tags=["conversations"])
logger = logging.getLogger(__name__)


class ConversationCreate(BaseModel):
    professional_id: str = Field(..., min_length=1, max_length=64)
    client_id: Optional[str] = Field(default=None, max_length=64)
    service_id: Optional[str] = Field(default=None, max_length=64)


def _conversation_to_dict(conversation) -> dict:
    return {
        "id": conversation.id,
        "client_id": conversation.client_id,
        "professional_id": conversation.professional_id,
        "service_id": conversation.service_id,
        "created_at": conversation.created_at,
        "last_message_at": conversation.last_message_at,
    }


@router.post("", status_code=status.HTTP_200_OK)
async def create_or_get_conversation(
    body: ConversationCreate,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    client_id = body.client_id or user_id
    if user_id not in (client_id, body.professional_id):
        raise PermissionDeniedError("Usuário não participa desta conversa")
    conversation, created = await get_or_create_conversation(db, client_id, body.professional_id, body.service_id)
    return {"conversation": _conversation_to_dict(conversation), "created": created}


@router.get("")
async def get_my_conversations(
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    return await list_conversations(db, user_id)


@router.get("/{conversation_id}/timeline")
async def get_timeline(
    conversation_id: int,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    entries = await load_timeline(db, conversation_id, user_id)
    return [entry.to_dict() for entry in entries]


@router.post("/{conversation_id}/clear")
async def clear_for_me(
    conversation_id: int,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    clearance = await clear_conversation(db, conversation_id, user_id)
    return {"conversation_id": conversation_id, "cleared_at": clearance.cleared_at}


@router.websocket("/{conversation_id}/ws")
async def conversation_events_ws(
    websocket: WebSocket,
    conversation_id: int,
    user_id: Optional[str] = Query(default=None),
    x_user_id: Optional[str] = Header(default=None, alias="X-User-ID"),
    db: AsyncSession = Depends(get_db),
):
    viewer_id = (x_user_id or user_id or "").strip()
    try:
        if not viewer_id:
            raise PermissionDeniedError("Usuário não autenticado")
        await get_conversation_for_user(db, conversation_id, viewer_id)
    except MarketplaceError as exc:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=exc.message)
        return
    finally:
        await db.close()

    await websocket.accept()
    bus = websocket.app.state.event_bus
    queue: asyncio.Queue = asyncio.Queue()
    unsubscribe = bus.subscribe(conversation_topic(conversation_id), queue.put_nowait)

    async def _forward() -> None:
        while True:
            await websocket.send_json(await queue.get())

    async def _drain() -> None:
        # mantém a conexão até o cliente desconectar
        while True:
            await websocket.receive_text()

    tasks = [asyncio.create_task(_forward()), asyncio.create_task(_drain())]
    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                logger.warning("conversation websocket closed with error: %s", exc)
    finally:
        unsubscribe()
