from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.core.database import get_db
from marketplace.deps import get_current_user_id, get_presence_service
from marketplace.services.conversations import get_conversation_for_user
from marketplace.services.presence import PresenceService

router = APIRouter(prefix="/api/conversations", tags=["presence"])


class TypingUpdate(BaseModel):
    is_typing: bool
    display_name: Optional[str] = Field(default=None, max_length=120)


@router.put("/{conversation_id}/typing")
async def publish_typing(
    conversation_id: int,
    body: TypingUpdate,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    presence: PresenceService = Depends(get_presence_service),
):
    await get_conversation_for_user(db, conversation_id, user_id)
    broadcast = presence.publish(conversation_id, user_id, body.is_typing, body.display_name)
    return {
        "broadcast": broadcast,
        "ttl_seconds": presence.ttl_seconds,
        "heartbeat_seconds": presence.heartbeat_seconds,
    }


@router.get("/{conversation_id}/typing")
async def get_typing(
    conversation_id: int,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    presence: PresenceService = Depends(get_presence_service),
):
    await get_conversation_for_user(db, conversation_id, user_id)
    return [state.to_dict() for state in presence.typing_users(conversation_id, user_id)]
