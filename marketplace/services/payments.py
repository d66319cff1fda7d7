"""Coordenação do pagamento PIX de um orçamento concluído.

O ``PaymentCoordinator`` cria (ou reaproveita) a cobrança no gateway e
acompanha o status por polling enquanto a tela de pagamento está aberta.
Só um PAID observado para o ``pix_id`` atual confirma o orçamento.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketplace.core.config import PAYMENT_POLL_INTERVAL_SECONDS, PIX_REUSE_MIN_REMAINING_SECONDS
from marketplace.core.database import utcnow
from marketplace.core.errors import ExternalServiceError, InvalidStateError, NotFoundError, PermissionDeniedError
from marketplace.integrations.pix_gateway import PixCustomer, PixGateway
from marketplace.models.payment_session import PaymentSession
from marketplace.models.quote import Quote
from marketplace.services.conversation_events import emit_quote_changed
from marketplace.services.event_bus import EventBus
from marketplace.services.identity import collect_identity, get_profile, is_valid_cpf
from marketplace.services.quotes import ensure_payable, ensure_quote_participant, get_quote
from marketplace.services.wallet import credit_for_quote

logger = logging.getLogger(__name__)

FINAL_STAGES = {"confirmed", "rejected", "cancelled", "expired"}


@dataclass
class PaymentInitiation:
    status: str  # identity_required / pending / paid
    quote_id: int
    session: PaymentSession | None = None
    reused: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "quote_id": self.quote_id,
            "reused": self.reused,
            "session": serialize_session(self.session),
        }


@dataclass
class PaymentCheck:
    status: str  # PENDING / PAID / EXPIRED / NO_PIX
    quote_id: int
    quote_stage: str
    session: PaymentSession | None = None

    @property
    def finished(self) -> bool:
        return self.status in {"PAID", "EXPIRED", "NO_PIX"} or self.quote_stage in FINAL_STAGES

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "quote_id": self.quote_id,
            "quote_stage": self.quote_stage,
            "paid": self.status == "PAID",
            "session": serialize_session(self.session),
        }


def serialize_session(session: PaymentSession | None) -> dict[str, Any] | None:
    if session is None:
        return None
    return {
        "id": session.id,
        "quote_id": session.quote_id,
        "pix_id": session.pix_id,
        "br_code": session.br_code,
        "br_code_base64": session.br_code_base64,
        "amount": str(session.amount),
        "expires_at": session.expires_at.isoformat() if session.expires_at else None,
        "status": session.status,
        "paid_at": session.paid_at.isoformat() if session.paid_at else None,
    }


def to_cents(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1")))


async def _live_session(db: AsyncSession, quote_id: int, now: datetime) -> PaymentSession | None:
    stmt = (
        select(PaymentSession)
        .where(
            PaymentSession.quote_id == quote_id,
            PaymentSession.status == "PENDING",
            PaymentSession.expires_at > now,
        )
        .order_by(PaymentSession.created_at.desc(), PaymentSession.id.desc())
    )
    return (await db.execute(stmt)).scalars().first()


async def _session_for_pix(db: AsyncSession, pix_id: str) -> PaymentSession | None:
    stmt = select(PaymentSession).where(PaymentSession.pix_id == pix_id)
    return (await db.execute(stmt)).scalars().first()


class PaymentCoordinator:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: PixGateway,
        *,
        bus: EventBus | None = None,
        poll_interval: float = PAYMENT_POLL_INTERVAL_SECONDS,
        reuse_min_remaining_seconds: int = PIX_REUSE_MIN_REMAINING_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self.gateway = gateway
        self._bus = bus
        self.poll_interval = poll_interval
        self.reuse_min_remaining_seconds = reuse_min_remaining_seconds
        self._clock = clock
        self._locks: dict[int, asyncio.Lock] = {}
        self._awaiting_identity: set[int] = set()
        self._watchers: dict[int, asyncio.Task] = {}

    def _lock_for(self, quote_id: int) -> asyncio.Lock:
        lock = self._locks.get(quote_id)
        if lock is None:
            lock = self._locks[quote_id] = asyncio.Lock()
        return lock

    def _release(self, quote_id: int) -> None:
        # orçamento confirmado não inicia novo pagamento
        self._locks.pop(quote_id, None)
        self._awaiting_identity.discard(quote_id)

    def has_lock(self, quote_id: int) -> bool:
        return quote_id in self._locks

    def is_awaiting_identity(self, quote_id: int) -> bool:
        return quote_id in self._awaiting_identity

    async def initiate_payment(self, quote_id: int, client_id: str) -> PaymentInitiation:
        async with self._lock_for(quote_id):
            async with self._session_factory() as db:
                quote = await get_quote(db, quote_id)
                if quote.client_confirmed:
                    self._release(quote_id)
                ensure_payable(quote, client_id)

                profile = await get_profile(db, client_id)
                if profile is None or not is_valid_cpf(profile.cpf):
                    self._awaiting_identity.add(quote_id)
                    logger.info("payment waiting for identity", extra={"quote_id": quote_id})
                    return PaymentInitiation(status="identity_required", quote_id=quote_id)
                self._awaiting_identity.discard(quote_id)

                now = self._clock()
                session = await _live_session(db, quote_id, now)
                if session is not None and session.pix_id == quote.pix_id:
                    remaining = (session.expires_at - now).total_seconds()
                    if remaining >= self.reuse_min_remaining_seconds:
                        logger.info("reusing PIX charge", extra={"quote_id": quote_id, "pix_id": session.pix_id})
                        return PaymentInitiation(status="pending", quote_id=quote_id, session=session, reused=True)

                charge = await self.gateway.create_charge(
                    amount_cents=to_cents(quote.price),
                    reference=f"quote-{quote.id}",
                    description=quote.title,
                    customer=PixCustomer(
                        name=profile.full_name or "Cliente",
                        tax_id=profile.cpf,
                        email=profile.email,
                        cellphone=profile.phone,
                    ),
                    metadata={
                        "quote_id": quote.id,
                        "client_id": quote.client_id,
                        "professional_id": quote.professional_id,
                        "conversation_id": quote.conversation_id,
                    },
                )

                # no máximo uma sessão viva por orçamento
                await db.execute(
                    update(PaymentSession)
                    .where(PaymentSession.quote_id == quote_id, PaymentSession.status == "PENDING")
                    .values(status="EXPIRED")
                    .execution_options(synchronize_session=False)
                )
                session = PaymentSession(
                    quote_id=quote_id,
                    pix_id=charge.pix_id,
                    br_code=charge.br_code,
                    br_code_base64=charge.br_code_base64,
                    amount=Decimal(quote.price),
                    expires_at=charge.expires_at,
                    status="PENDING",
                    created_at=now,
                )
                db.add(session)
                result = await db.execute(
                    update(Quote)
                    .where(
                        Quote.id == quote_id,
                        Quote.status == "accepted",
                        Quote.completed_at.is_not(None),
                        Quote.client_confirmed == False,  # noqa: E712
                    )
                    .values(pix_id=charge.pix_id, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    await db.rollback()
                    raise InvalidStateError("O orçamento foi alterado por outra ação", quote_id=quote_id)
                await db.commit()
                await db.refresh(session)

                logger.info("PIX charge created for quote", extra={"quote_id": quote_id, "pix_id": charge.pix_id})
                return PaymentInitiation(status="pending", quote_id=quote_id, session=session)

    async def provide_identity(
        self,
        quote_id: int,
        client_id: str,
        document: str,
        full_name: str | None = None,
    ) -> PaymentInitiation:
        async with self._session_factory() as db:
            quote = await get_quote(db, quote_id)
            if client_id != quote.client_id:
                raise PermissionDeniedError("Somente o cliente pode informar o CPF", quote_id=quote_id)
            await collect_identity(db, client_id, document, full_name=full_name)
        return await self.initiate_payment(quote_id, client_id)

    async def check_status(self, quote_id: int, *, ask_gateway_when_expired: bool = False) -> PaymentCheck:
        """Consulta o gateway uma vez e aplica o resultado.

        Uma cobrança vencida localmente é dada como EXPIRED sem consultar o
        gateway, a não ser com ``ask_gateway_when_expired``: a reconciliação
        usa isso para achar um PAID que chegou depois do prazo local.
        """
        async with self._session_factory() as db:
            quote = await get_quote(db, quote_id)
            if quote.client_confirmed:
                self._release(quote_id)
                session = await _session_for_pix(db, quote.pix_id) if quote.pix_id else None
                return PaymentCheck("PAID", quote_id, quote.stage, session)
            if not quote.pix_id:
                return PaymentCheck("NO_PIX", quote_id, quote.stage)

            session = await _session_for_pix(db, quote.pix_id)
            if session is None:
                return PaymentCheck("EXPIRED", quote_id, quote.stage)

            now = self._clock()
            locally_expired = session.status == "EXPIRED" or session.expires_at <= now
            if locally_expired and not ask_gateway_when_expired:
                await self._expire_session(db, session)
                return PaymentCheck("EXPIRED", quote_id, quote.stage, session)

            status = await self.gateway.get_status(session.pix_id)
            if status == "PAID":
                quote = await self._apply_paid(db, quote, session, now)
                return PaymentCheck("PAID" if quote.client_confirmed else "PENDING", quote_id, quote.stage, session)
            if status == "EXPIRED" or locally_expired:
                await self._expire_session(db, session)
                return PaymentCheck("EXPIRED", quote_id, quote.stage, session)
            return PaymentCheck("PENDING", quote_id, quote.stage, session)

    async def payment_view(self, quote_id: int, user_id: str) -> PaymentCheck:
        async with self._session_factory() as db:
            quote = await get_quote(db, quote_id)
            ensure_quote_participant(quote, user_id)
        check = await self.check_status(quote_id)
        if not check.finished:
            self.open_payment_view(quote_id)
        return check

    async def _expire_session(self, db: AsyncSession, session: PaymentSession) -> None:
        if session.status != "PENDING":
            return
        session_id, quote_id, pix_id = session.id, session.quote_id, session.pix_id
        result = await db.execute(
            update(PaymentSession)
            .where(PaymentSession.id == session_id, PaymentSession.status == "PENDING")
            .values(status="EXPIRED")
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        await db.refresh(session)
        if result.rowcount == 1:
            logger.info("PIX charge expired", extra={"quote_id": quote_id, "pix_id": pix_id})

    async def _apply_paid(self, db: AsyncSession, quote: Quote, session: PaymentSession, now: datetime) -> Quote:
        quote_id, pix_id = quote.id, session.pix_id
        previous_stage = quote.stage
        result = await db.execute(
            update(Quote)
            .where(
                Quote.id == quote_id,
                Quote.status == "accepted",
                Quote.completed_at.is_not(None),
                Quote.client_confirmed == False,  # noqa: E712
                Quote.pix_id == pix_id,
            )
            .values(client_confirmed=True, client_confirmed_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            # outra verificação venceu; o rollback expira as duas instâncias
            await db.rollback()
            await db.refresh(quote)
            await db.refresh(session)
            if quote.client_confirmed:
                self._release(quote_id)
            else:
                logger.warning("PAID ignored, quote no longer payable", extra={"quote_id": quote_id, "pix_id": pix_id})
            return quote

        await db.execute(
            update(PaymentSession)
            .where(PaymentSession.id == session.id)
            .values(status="PAID", paid_at=now)
            .execution_options(synchronize_session=False)
        )
        profile = await get_profile(db, quote.client_id)
        await credit_for_quote(db, quote, customer_name=profile.full_name if profile else None, now=now)
        await db.commit()
        await db.refresh(quote)
        await db.refresh(session)

        self._release(quote_id)
        logger.info("payment confirmed", extra={"quote_id": quote_id, "pix_id": pix_id})
        emit_quote_changed(quote, previous_stage, self._bus)
        return quote

    def open_payment_view(self, quote_id: int) -> asyncio.Task:
        task = self._watchers.get(quote_id)
        if task is not None and not task.done():
            return task
        task = asyncio.create_task(self._watch(quote_id), name=f"payment-watch-{quote_id}")
        self._watchers[quote_id] = task
        return task

    def is_watching(self, quote_id: int) -> bool:
        task = self._watchers.get(quote_id)
        return task is not None and not task.done()

    async def close_payment_view(self, quote_id: int) -> None:
        task = self._watchers.pop(quote_id, None)
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _watch(self, quote_id: int) -> None:
        try:
            while True:
                try:
                    check = await self.check_status(quote_id)
                except ExternalServiceError as exc:
                    logger.warning("payment poll failed, retrying: %s", exc, extra={"quote_id": quote_id})
                    await asyncio.sleep(self.poll_interval)
                    continue
                except NotFoundError:
                    return

                if check.finished:
                    logger.info("payment watcher finished status=%s", check.status, extra={"quote_id": quote_id})
                    return

                delay = self.poll_interval
                if check.session is not None:
                    remaining = (check.session.expires_at - self._clock()).total_seconds()
                    delay = max(0.0, min(delay, remaining))
                await asyncio.sleep(delay)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("payment watcher crashed", extra={"quote_id": quote_id})
        finally:
            if self._watchers.get(quote_id) is asyncio.current_task():
                self._watchers.pop(quote_id, None)

    async def reconcile_pending_payments(self) -> int:
        """Confirma pagamentos cujo PAID não foi observado pela tela de pagamento."""
        async with self._session_factory() as db:
            quote_ids = list(
                (
                    await db.execute(
                        select(Quote.id).where(
                            Quote.status == "accepted",
                            Quote.completed_at.is_not(None),
                            Quote.client_confirmed == False,  # noqa: E712
                            Quote.pix_id.is_not(None),
                        )
                    )
                ).scalars()
            )

        confirmed = 0
        for quote_id in quote_ids:
            try:
                check = await self.check_status(quote_id, ask_gateway_when_expired=True)
            except ExternalServiceError as exc:
                logger.warning("reconciliation check failed: %s", exc, extra={"quote_id": quote_id})
                continue
            if check.status == "PAID":
                confirmed += 1
        if confirmed:
            logger.info("reconciled %s paid quotes", confirmed)
        return confirmed

    async def shutdown(self) -> None:
        for quote_id in list(self._watchers):
            await self.close_payment_view(quote_id)
