from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.core.config import TIMELINE_TIMEZONE
from marketplace.core.database import utcnow
from marketplace.core.errors import (
    InvalidStateError,
    MarketplaceError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from marketplace.models.appointment import ACTIVE_APPOINTMENT_STATUSES, Appointment
from marketplace.services.conversation_events import emit_appointment_changed
from marketplace.services.event_bus import EventBus
from marketplace.services.messages import send_message
from marketplace.services.quotes import get_quote

logger = logging.getLogger(__name__)

MAX_DURATION_MINUTES = 12 * 60


def _window(scheduled_date: date, scheduled_time: time, duration_minutes: int) -> tuple[datetime, datetime]:
    start = datetime.combine(scheduled_date, scheduled_time)
    return start, start + timedelta(minutes=duration_minutes)


def _validate_duration(duration_minutes: int) -> int:
    value = int(duration_minutes)
    if value <= 0 or value > MAX_DURATION_MINUTES:
        raise ValidationError("Duração inválida")
    return value


async def get_appointment(db: AsyncSession, appointment_id: int) -> Appointment:
    appointment = await db.get(Appointment, appointment_id)
    if appointment is None:
        raise NotFoundError("Agendamento não encontrado", appointment_id=appointment_id)
    return appointment


async def get_appointment_for_quote(db: AsyncSession, quote_id: int) -> Appointment | None:
    stmt = select(Appointment).where(Appointment.quote_id == quote_id)
    return (await db.execute(stmt)).scalars().first()


async def _ensure_slot_free(
    db: AsyncSession,
    professional_id: str,
    scheduled_date: date,
    scheduled_time: time,
    duration_minutes: int,
    exclude_id: int | None = None,
) -> None:
    start, end = _window(scheduled_date, scheduled_time, duration_minutes)
    stmt = select(Appointment).where(
        Appointment.professional_id == professional_id,
        Appointment.scheduled_date == scheduled_date,
        Appointment.status.in_(ACTIVE_APPOINTMENT_STATUSES),
    )
    if exclude_id is not None:
        stmt = stmt.where(Appointment.id != exclude_id)
    for other in (await db.execute(stmt)).scalars():
        other_start, other_end = _window(other.scheduled_date, other.scheduled_time, other.duration_minutes)
        if start < other_end and other_start < end:
            raise InvalidStateError("Horário já ocupado", appointment_id=other.id)


async def create_appointment(
    db: AsyncSession,
    quote_id: int,
    professional_id: str,
    scheduled_date: date,
    scheduled_time: time,
    duration_minutes: int = 60,
    location: str | None = None,
    notes: str | None = None,
    *,
    bus: EventBus | None = None,
) -> Appointment:
    quote = await get_quote(db, quote_id)
    if professional_id != quote.professional_id:
        raise PermissionDeniedError("Somente o profissional pode agendar", quote_id=quote_id)
    if quote.status != "accepted" or quote.completed_at is not None or quote.client_confirmed:
        raise InvalidStateError("O orçamento precisa estar aceito para agendar", quote_id=quote_id)
    duration = _validate_duration(duration_minutes)

    appointment = await get_appointment_for_quote(db, quote_id)
    if appointment is not None and appointment.status != "cancelled":
        raise InvalidStateError("Este orçamento já possui agendamento", quote_id=quote_id)

    await _ensure_slot_free(
        db,
        professional_id,
        scheduled_date,
        scheduled_time,
        duration,
        exclude_id=appointment.id if appointment is not None else None,
    )

    if appointment is None:
        appointment = Appointment(
            quote_id=quote_id,
            conversation_id=quote.conversation_id,
            client_id=quote.client_id,
            professional_id=quote.professional_id,
        )
        db.add(appointment)
    appointment.scheduled_date = scheduled_date
    appointment.scheduled_time = scheduled_time
    appointment.duration_minutes = duration
    appointment.location = location
    appointment.notes = notes
    appointment.status = "scheduled"
    appointment.client_confirmed = False
    appointment.professional_confirmed = True
    appointment.updated_at = utcnow()
    await db.commit()
    await db.refresh(appointment)

    logger.info("appointment scheduled", extra={"quote_id": quote_id})
    emit_appointment_changed(appointment, bus)
    return appointment


async def reschedule_appointment(
    db: AsyncSession,
    appointment_id: int,
    user_id: str,
    scheduled_date: date | None = None,
    scheduled_time: time | None = None,
    duration_minutes: int | None = None,
    location: str | None = None,
    notes: str | None = None,
    *,
    bus: EventBus | None = None,
) -> Appointment:
    appointment = await get_appointment(db, appointment_id)
    if user_id != appointment.professional_id:
        raise PermissionDeniedError("Somente o profissional pode reagendar", appointment_id=appointment_id)
    if appointment.status not in ACTIVE_APPOINTMENT_STATUSES:
        raise InvalidStateError("Agendamento não pode ser alterado", appointment_id=appointment_id)

    new_date = scheduled_date or appointment.scheduled_date
    new_time = scheduled_time or appointment.scheduled_time
    new_duration = _validate_duration(duration_minutes) if duration_minutes is not None else appointment.duration_minutes
    moved = (
        new_date != appointment.scheduled_date
        or new_time != appointment.scheduled_time
        or new_duration != appointment.duration_minutes
    )
    if moved:
        await _ensure_slot_free(db, appointment.professional_id, new_date, new_time, new_duration, exclude_id=appointment.id)
        appointment.scheduled_date = new_date
        appointment.scheduled_time = new_time
        appointment.duration_minutes = new_duration
        # o cliente precisa confirmar o novo horário
        appointment.status = "scheduled"
        appointment.client_confirmed = False
    if location is not None:
        appointment.location = location
    if notes is not None:
        appointment.notes = notes
    appointment.updated_at = utcnow()
    await db.commit()
    await db.refresh(appointment)

    emit_appointment_changed(appointment, bus)
    return appointment


async def confirm_appointment(
    db: AsyncSession,
    appointment_id: int,
    client_id: str,
    *,
    bus: EventBus | None = None,
) -> Appointment:
    appointment = await get_appointment(db, appointment_id)
    if client_id != appointment.client_id:
        raise PermissionDeniedError("Somente o cliente pode confirmar o agendamento", appointment_id=appointment_id)
    if appointment.status != "scheduled":
        raise InvalidStateError("Agendamento não está aguardando confirmação", appointment_id=appointment_id)

    appointment.status = "confirmed"
    appointment.client_confirmed = True
    appointment.updated_at = utcnow()
    await db.commit()
    await db.refresh(appointment)

    emit_appointment_changed(appointment, bus)
    return appointment


async def cancel_appointment(
    db: AsyncSession,
    appointment_id: int,
    user_id: str,
    *,
    bus: EventBus | None = None,
) -> Appointment:
    appointment = await get_appointment(db, appointment_id)
    if user_id not in (appointment.client_id, appointment.professional_id):
        raise PermissionDeniedError("Usuário não participa deste agendamento", appointment_id=appointment_id)
    if appointment.status not in ACTIVE_APPOINTMENT_STATUSES:
        raise InvalidStateError("Agendamento não pode ser cancelado", appointment_id=appointment_id)

    appointment.status = "cancelled"
    appointment.updated_at = utcnow()
    await db.commit()
    await db.refresh(appointment)

    logger.info("appointment cancelled", extra={"quote_id": appointment.quote_id})
    emit_appointment_changed(appointment, bus)
    return appointment


def _reminder_24h_text(title: str, appointment: Appointment) -> str:
    lines = [
        "📅 Lembrete de Agendamento",
        "",
        f'Seu agendamento "{title}" está confirmado para amanhã às {appointment.scheduled_time:%H:%M}.',
    ]
    if appointment.location:
        lines.append(f"📍 Local: {appointment.location}")
    if appointment.notes:
        lines.append(f"📝 Obs: {appointment.notes}")
    lines += ["", "Não se esqueça de estar disponível no horário combinado!"]
    return "\n".join(lines)


def _reminder_1h_text(title: str, appointment: Appointment) -> str:
    lines = [
        "⏰ Lembrete Urgente",
        "",
        f'Seu agendamento "{title}" começa em menos de 1 hora ({appointment.scheduled_time:%H:%M})!',
    ]
    if appointment.location:
        lines.append(f"📍 Local: {appointment.location}")
    lines += ["", "Prepare-se para o atendimento."]
    return "\n".join(lines)


async def _deliver_reminder(
    db: AsyncSession,
    appointment_id: int,
    flag,
    build_text,
    now: datetime,
    bus: EventBus | None,
) -> bool:
    appointment = await get_appointment(db, appointment_id)
    quote = await get_quote(db, appointment.quote_id)
    content = build_text(quote.title, appointment)
    conversation_id = appointment.conversation_id
    sender_id = appointment.professional_id

    # marca antes de enviar; send_message faz o commit das duas coisas juntas
    result = await db.execute(
        update(Appointment)
        .where(Appointment.id == appointment_id, Appointment.status == "confirmed", flag == False)  # noqa: E712
        .values({flag: True})
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await db.rollback()
        return False
    try:
        await send_message(db, conversation_id, sender_id, content, now=now, bus=bus)
    except MarketplaceError as exc:
        await db.rollback()
        logger.warning("appointment reminder failed: %s", exc, extra={"appointment_id": appointment_id})
        return False
    return True


async def send_appointment_reminders(
    db: AsyncSession,
    now: datetime | None = None,
    *,
    tz_name: str = TIMELINE_TIMEZONE,
    bus: EventBus | None = None,
) -> int:
    """Envia os lembretes de agendamentos confirmados na conversa, em nome do profissional.

    Data e hora do agendamento são locais (``tz_name``); ``now`` é UTC sem fuso.
    Cada lembrete sai uma única vez: o de véspera para agendamentos de amanhã
    e o urgente para os que começam na próxima hora.
    """
    current = now or utcnow()
    local_now = current.replace(tzinfo=timezone.utc).astimezone(ZoneInfo(tz_name)).replace(tzinfo=None)
    today = local_now.date()
    tomorrow = today + timedelta(days=1)

    day_before_ids = list(
        (
            await db.execute(
                select(Appointment.id).where(
                    Appointment.status == "confirmed",
                    Appointment.reminder_24h_sent == False,  # noqa: E712
                    Appointment.scheduled_date == tomorrow,
                )
            )
        ).scalars()
    )

    imminent_ids = []
    candidates = (
        await db.execute(
            select(Appointment).where(
                Appointment.status == "confirmed",
                Appointment.reminder_1h_sent == False,  # noqa: E712
                Appointment.scheduled_date.in_([today, tomorrow]),
            )
        )
    ).scalars().all()
    for appointment in candidates:
        start = datetime.combine(appointment.scheduled_date, appointment.scheduled_time)
        if local_now <= start <= local_now + timedelta(hours=1):
            imminent_ids.append(appointment.id)

    sent = 0
    for appointment_id in day_before_ids:
        if await _deliver_reminder(db, appointment_id, Appointment.reminder_24h_sent, _reminder_24h_text, current, bus):
            sent += 1
    for appointment_id in imminent_ids:
        if await _deliver_reminder(db, appointment_id, Appointment.reminder_1h_sent, _reminder_1h_text, current, bus):
            sent += 1

    if sent:
        logger.info("sent %s appointment reminders", sent)
    return sent
