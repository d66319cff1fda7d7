from __future__ import annotations

from typing import Any

from marketplace.models.appointment import Appointment
from marketplace.models.message import Message
from marketplace.models.quote import Quote
from marketplace.services.event_bus import EventBus, conversation_topic, event_bus


def _iso(value) -> str | None:
    return value.isoformat() if value is not None else None


def build_message_payload(message: Message) -> dict[str, Any]:
    return {
        "id": message.id,
        "conversation_id": message.conversation_id,
        "sender_id": message.sender_id,
        "content": message.content,
        "message_type": message.message_type,
        "file_url": message.file_url,
        "file_name": message.file_name,
        "reply_to_id": message.reply_to_id,
        "client_message_id": message.client_message_id,
        "created_at": _iso(message.created_at),
        "read_at": _iso(message.read_at),
        "deleted_at": _iso(message.deleted_at),
    }


def build_quote_payload(quote: Quote) -> dict[str, Any]:
    return {
        "id": quote.id,
        "conversation_id": quote.conversation_id,
        "service_id": quote.service_id,
        "professional_id": quote.professional_id,
        "client_id": quote.client_id,
        "title": quote.title,
        "description": quote.description,
        "price": str(quote.price),
        "validity_days": quote.validity_days,
        "expires_at": _iso(quote.expires_at),
        "status": quote.status,
        "stage": quote.stage,
        "response_text": quote.response_text,
        "responded_at": _iso(quote.responded_at),
        "completed_at": _iso(quote.completed_at),
        "client_confirmed": bool(quote.client_confirmed),
        "client_confirmed_at": _iso(quote.client_confirmed_at),
        "pix_id": quote.pix_id,
        "created_at": _iso(quote.created_at),
        "updated_at": _iso(quote.updated_at),
    }


def build_appointment_payload(appointment: Appointment) -> dict[str, Any]:
    return {
        "id": appointment.id,
        "quote_id": appointment.quote_id,
        "conversation_id": appointment.conversation_id,
        "client_id": appointment.client_id,
        "professional_id": appointment.professional_id,
        "scheduled_date": _iso(appointment.scheduled_date),
        "scheduled_time": _iso(appointment.scheduled_time),
        "duration_minutes": appointment.duration_minutes,
        "location": appointment.location,
        "notes": appointment.notes,
        "status": appointment.status,
        "client_confirmed": bool(appointment.client_confirmed),
        "professional_confirmed": bool(appointment.professional_confirmed),
    }


def emit_conversation_event(
    conversation_id: int,
    event: str,
    data: dict[str, Any],
    bus: EventBus | None = None,
) -> None:
    (bus or event_bus).emit(
        conversation_topic(conversation_id),
        {"event": event, "conversation_id": conversation_id, "data": data},
    )


def emit_message_created(message: Message, bus: EventBus | None = None) -> None:
    emit_conversation_event(message.conversation_id, "message.created", build_message_payload(message), bus)


def emit_message_deleted(message: Message, bus: EventBus | None = None) -> None:
    emit_conversation_event(message.conversation_id, "message.deleted", build_message_payload(message), bus)


def emit_messages_read(
    conversation_id: int,
    reader_id: str,
    message_ids: list[int],
    bus: EventBus | None = None,
) -> None:
    if not message_ids:
        return
    emit_conversation_event(
        conversation_id,
        "messages.read",
        {"reader_id": reader_id, "message_ids": message_ids},
        bus,
    )


def emit_quote_changed(quote: Quote, previous_stage: str | None, bus: EventBus | None = None) -> None:
    payload = build_quote_payload(quote)
    payload["previous_stage"] = previous_stage
    emit_conversation_event(quote.conversation_id, "quote.changed", payload, bus)
    if quote.stage == "confirmed":
        emit_conversation_event(quote.conversation_id, "quote.confirmed", payload, bus)


def emit_appointment_changed(appointment: Appointment, bus: EventBus | None = None) -> None:
    emit_conversation_event(
        appointment.conversation_id,
        "appointment.changed",
        build_appointment_payload(appointment),
        bus,
    )


def emit_typing(conversation_id: int, state: dict[str, Any], bus: EventBus | None = None) -> None:
    emit_conversation_event(conversation_id, "typing", state, bus)
