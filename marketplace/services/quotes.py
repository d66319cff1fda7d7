"""Ciclo de vida dos orçamentos.

Toda transição é um UPDATE condicionado ao estado anterior esperado; quem
perde uma corrida recebe ``InvalidStateError`` e nada é alterado.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.core.config import QUOTE_DEFAULT_VALIDITY_DAYS
from marketplace.core.database import utcnow
from marketplace.core.errors import InvalidStateError, NotFoundError, PermissionDeniedError, ValidationError
from marketplace.models.appointment import ACTIVE_APPOINTMENT_STATUSES, Appointment
from marketplace.models.quote import Quote
from marketplace.services.conversation_events import emit_quote_changed
from marketplace.services.conversations import get_conversation, get_conversation_for_user
from marketplace.services.event_bus import EventBus

logger = logging.getLogger(__name__)

RESPONSE_DECISIONS = {"accepted", "rejected"}
MAX_VALIDITY_DAYS = 90


def _parse_price(price: Any) -> Decimal:
    try:
        value = Decimal(str(price))
    except (InvalidOperation, ValueError, TypeError) as exc:
        raise ValidationError("Preço inválido") from exc
    if not value.is_finite() or value <= 0:
        raise ValidationError("O preço deve ser maior que zero")
    return value.quantize(Decimal("0.01"))


async def get_quote(db: AsyncSession, quote_id: int) -> Quote:
    quote = await db.get(Quote, quote_id)
    if quote is None:
        raise NotFoundError("Orçamento não encontrado", quote_id=quote_id)
    return quote


def ensure_quote_participant(quote: Quote, user_id: str) -> None:
    if user_id not in (quote.client_id, quote.professional_id):
        raise PermissionDeniedError("Usuário não participa deste orçamento", quote_id=quote.id)


async def get_quote_for_user(db: AsyncSession, quote_id: int, user_id: str) -> Quote:
    quote = await get_quote(db, quote_id)
    ensure_quote_participant(quote, user_id)
    return quote


async def list_quotes(db: AsyncSession, conversation_id: int, user_id: str | None = None) -> list[Quote]:
    if user_id is not None:
        await get_conversation_for_user(db, conversation_id, user_id)
    stmt = select(Quote).where(Quote.conversation_id == conversation_id).order_by(Quote.created_at, Quote.id)
    return list((await db.execute(stmt)).scalars().all())


async def _compare_and_set(db: AsyncSession, quote: Quote, conditions: list, values: dict[str, Any]) -> Quote:
    # o rollback expira a instância; depois dele só vale o id já lido
    quote_id = quote.id
    values.setdefault("updated_at", utcnow())
    result = await db.execute(
        update(Quote)
        .where(Quote.id == quote_id, *conditions)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await db.rollback()
        logger.info("quote transition lost", extra={"quote_id": quote_id})
        raise InvalidStateError("O orçamento foi alterado por outra ação", quote_id=quote_id)
    return quote


async def create_quote(
    db: AsyncSession,
    conversation_id: int,
    professional_id: str,
    client_id: str,
    price: Any,
    title: str,
    description: str | None = None,
    validity_days: int | None = None,
    service_id: str | None = None,
    *,
    now: datetime | None = None,
    bus: EventBus | None = None,
) -> Quote:
    conversation = await get_conversation(db, conversation_id)
    if professional_id != conversation.professional_id:
        raise PermissionDeniedError("Somente o profissional pode criar orçamentos", conversation_id=conversation_id)
    if client_id != conversation.client_id:
        raise ValidationError("O cliente não pertence a esta conversa", conversation_id=conversation_id)

    title = (title or "").strip()
    if not title:
        raise ValidationError("Título obrigatório")
    amount = _parse_price(price)
    validity = QUOTE_DEFAULT_VALIDITY_DAYS if validity_days is None else int(validity_days)
    if validity < 1 or validity > MAX_VALIDITY_DAYS:
        raise ValidationError("Validade inválida")

    created_at = now or utcnow()
    quote = Quote(
        conversation_id=conversation_id,
        service_id=service_id or conversation.service_id,
        professional_id=professional_id,
        client_id=client_id,
        title=title,
        description=(description or "").strip() or None,
        price=amount,
        validity_days=validity,
        expires_at=created_at + timedelta(days=validity),
        status="pending",
        created_at=created_at,
        updated_at=created_at,
    )
    db.add(quote)
    await db.commit()
    await db.refresh(quote)

    logger.info("quote created", extra={"quote_id": quote.id, "conversation_id": conversation_id})
    emit_quote_changed(quote, None, bus)
    return quote


async def respond_to_quote(
    db: AsyncSession,
    quote_id: int,
    client_id: str,
    decision: str,
    response_text: str | None = None,
    *,
    now: datetime | None = None,
    bus: EventBus | None = None,
) -> Quote:
    decision = (decision or "").strip().lower()
    if decision not in RESPONSE_DECISIONS:
        raise ValidationError("Resposta inválida", decision=decision)

    quote = await get_quote(db, quote_id)
    if client_id != quote.client_id:
        raise PermissionDeniedError("Somente o cliente pode responder ao orçamento", quote_id=quote_id)
    if quote.status != "pending":
        raise InvalidStateError("Orçamento já respondido", quote_id=quote_id, status=quote.status)
    responded_at = now or utcnow()
    if quote.expires_at is not None and responded_at > quote.expires_at:
        raise InvalidStateError("Orçamento expirado", quote_id=quote_id)

    previous_stage = quote.stage
    await _compare_and_set(
        db,
        quote,
        [Quote.status == "pending"],
        {
            "status": decision,
            "response_text": (response_text or "").strip() or None,
            "responded_at": responded_at,
        },
    )
    await db.commit()
    await db.refresh(quote)

    logger.info("quote %s", decision, extra={"quote_id": quote_id})
    emit_quote_changed(quote, previous_stage, bus)
    return quote


async def cancel_quote(
    db: AsyncSession,
    quote_id: int,
    user_id: str,
    *,
    now: datetime | None = None,
    bus: EventBus | None = None,
) -> Quote:
    quote = await get_quote_for_user(db, quote_id, user_id)
    if quote.status not in {"pending", "accepted"}:
        raise InvalidStateError("Orçamento não pode ser cancelado", quote_id=quote_id, status=quote.status)
    if quote.completed_at is not None:
        raise InvalidStateError("Serviço já concluído; o pagamento está em andamento", quote_id=quote_id)

    cancelled_at = now or utcnow()
    previous_stage = quote.stage
    await _compare_and_set(
        db,
        quote,
        [Quote.status == quote.status, Quote.completed_at.is_(None)],
        {"status": "cancelled", "updated_at": cancelled_at},
    )
    await db.execute(
        update(Appointment)
        .where(Appointment.quote_id == quote_id, Appointment.status.in_(ACTIVE_APPOINTMENT_STATUSES))
        .values(status="cancelled", updated_at=cancelled_at)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    await db.refresh(quote)

    logger.info("quote cancelled", extra={"quote_id": quote_id})
    emit_quote_changed(quote, previous_stage, bus)
    return quote


async def complete_service(
    db: AsyncSession,
    quote_id: int,
    professional_id: str,
    *,
    now: datetime | None = None,
    bus: EventBus | None = None,
) -> Quote:
    quote = await get_quote(db, quote_id)
    if professional_id != quote.professional_id:
        raise PermissionDeniedError("Somente o profissional pode concluir o serviço", quote_id=quote_id)
    if quote.status != "accepted":
        raise InvalidStateError("Orçamento não está aceito", quote_id=quote_id, status=quote.status)
    if quote.completed_at is not None:
        raise InvalidStateError("Serviço já concluído", quote_id=quote_id)

    completed_at = now or utcnow()
    previous_stage = quote.stage
    await _compare_and_set(
        db,
        quote,
        [Quote.status == "accepted", Quote.completed_at.is_(None)],
        {"completed_at": completed_at},
    )
    await db.execute(
        update(Appointment)
        .where(Appointment.quote_id == quote_id, Appointment.status.in_(ACTIVE_APPOINTMENT_STATUSES))
        .values(status="completed", updated_at=completed_at)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    await db.refresh(quote)

    logger.info("service completed", extra={"quote_id": quote_id})
    emit_quote_changed(quote, previous_stage, bus)
    return quote


def ensure_payable(quote: Quote, client_id: str) -> None:
    if client_id != quote.client_id:
        raise PermissionDeniedError("Somente o cliente pode confirmar e pagar", quote_id=quote.id)
    if quote.status != "accepted":
        raise InvalidStateError("Orçamento não está aceito", quote_id=quote.id, status=quote.status)
    if quote.completed_at is None:
        raise InvalidStateError("O serviço ainda não foi concluído", quote_id=quote.id)
    if quote.client_confirmed:
        raise InvalidStateError("Pagamento já confirmado", quote_id=quote.id)


async def confirm_completion(db: AsyncSession, coordinator, quote_id: int, client_id: str):
    """Inicia o pagamento. ``client_confirmed`` só muda quando o PIX é pago."""
    quote = await get_quote(db, quote_id)
    ensure_payable(quote, client_id)
    return await coordinator.initiate_payment(quote_id, client_id)


async def expire_overdue_quotes(
    db: AsyncSession,
    now: datetime | None = None,
    *,
    bus: EventBus | None = None,
) -> int:
    current = now or utcnow()
    overdue = (
        await db.execute(
            select(Quote).where(
                Quote.status == "pending",
                Quote.expires_at.is_not(None),
                Quote.expires_at < current,
            )
        )
    ).scalars().all()

    expired = 0
    for quote_id in [quote.id for quote in overdue]:
        result = await db.execute(
            update(Quote)
            .where(Quote.id == quote_id, Quote.status == "pending")
            .values(status="expired", updated_at=current)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        if result.rowcount != 1:
            continue
        quote = await get_quote(db, quote_id)
        await db.refresh(quote)
        expired += 1
        emit_quote_changed(quote, "pending", bus)

    if expired:
        logger.info("expired %s overdue quotes", expired)
    return expired
