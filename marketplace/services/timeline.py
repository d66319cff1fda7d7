"""Linha do tempo da conversa: mensagens e orçamentos numa única lista ordenada.

Ordenação por ``(created_at, tipo, id)``: em empate de horário, mensagens vêm
antes de orçamentos e, dentro do mesmo tipo, vale a ordem de inserção.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Iterable
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.core.config import TIMELINE_TIMEZONE
from marketplace.models.message import Message
from marketplace.models.quote import Quote
from marketplace.services.conversation_events import build_message_payload, build_quote_payload
from marketplace.services.conversations import get_cleared_at, get_conversation_for_user

_KIND_RANK = {"message": 0, "quote": 1}
REPLY_PREVIEW_LENGTH = 120


@dataclass
class TimelineEntry:
    type: str
    data: dict[str, Any]
    created_at: datetime
    id: int
    show_date_divider: bool = False
    local_date: date | None = None
    reply_to: dict[str, Any] | None = field(default=None)

    def sort_key(self) -> tuple:
        return (self.created_at, _KIND_RANK[self.type], self.id)

    def to_dict(self) -> dict[str, Any]:
        payload = {
            "type": self.type,
            "data": self.data,
            "show_date_divider": self.show_date_divider,
            "date": self.local_date.isoformat() if self.local_date else None,
        }
        if self.type == "message":
            payload["reply_to"] = self.reply_to
        return payload


def _local_date(value: datetime, tz: ZoneInfo) -> date:
    return value.replace(tzinfo=timezone.utc).astimezone(tz).date()


def _reply_preview(message: Message, by_id: dict[int, Message]) -> dict[str, Any] | None:
    if message.reply_to_id is None:
        return None
    target = by_id.get(message.reply_to_id)
    if target is None or target.deleted_at is not None:
        return None
    content = target.content or target.file_name or ""
    return {
        "id": target.id,
        "sender_id": target.sender_id,
        "message_type": target.message_type,
        "content": content[:REPLY_PREVIEW_LENGTH],
    }


def merge_timeline(
    messages: Iterable[Message],
    quotes: Iterable[Quote],
    *,
    cleared_at: datetime | None = None,
    tz_name: str = TIMELINE_TIMEZONE,
) -> list[TimelineEntry]:
    """Combina mensagens e orçamentos já carregados.

    Mensagens apagadas somem para todos; mensagens anteriores à marca d'água
    ``cleared_at`` somem só para quem limpou. Orçamentos sempre aparecem.
    """
    tz = ZoneInfo(tz_name)
    all_messages = list(messages)
    by_id = {message.id: message for message in all_messages}

    entries: list[TimelineEntry] = []
    for message in all_messages:
        if message.deleted_at is not None:
            continue
        if cleared_at is not None and message.created_at <= cleared_at:
            continue
        entries.append(
            TimelineEntry(
                type="message",
                data=build_message_payload(message),
                created_at=message.created_at,
                id=message.id,
                reply_to=_reply_preview(message, by_id),
            )
        )
    for quote in quotes:
        entries.append(
            TimelineEntry(
                type="quote",
                data=build_quote_payload(quote),
                created_at=quote.created_at,
                id=quote.id,
            )
        )

    entries.sort(key=TimelineEntry.sort_key)

    previous_date: date | None = None
    for entry in entries:
        entry.local_date = _local_date(entry.created_at, tz)
        entry.show_date_divider = entry.local_date != previous_date
        previous_date = entry.local_date
    return entries


async def load_timeline(db: AsyncSession, conversation_id: int, viewer_id: str) -> list[TimelineEntry]:
    await get_conversation_for_user(db, conversation_id, viewer_id)
    messages = (
        await db.execute(select(Message).where(Message.conversation_id == conversation_id))
    ).scalars().all()
    quotes = (
        await db.execute(select(Quote).where(Quote.conversation_id == conversation_id))
    ).scalars().all()
    cleared_at = await get_cleared_at(db, conversation_id, viewer_id)
    return merge_timeline(messages, quotes, cleared_at=cleared_at)
