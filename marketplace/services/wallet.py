from __future__ import annotations

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.core.config import PLATFORM_FEE_RATE
from marketplace.models.quote import Quote
from marketplace.models.wallet import WalletTransaction

CENTS = Decimal("0.01")


def split_platform_fee(amount: Decimal, rate: Decimal = PLATFORM_FEE_RATE) -> tuple[Decimal, Decimal]:
    fee = (Decimal(amount) * rate).quantize(CENTS, rounding=ROUND_HALF_UP)
    return fee, (Decimal(amount) - fee).quantize(CENTS, rounding=ROUND_HALF_UP)


async def credit_for_quote(
    db: AsyncSession,
    quote: Quote,
    *,
    customer_name: str | None = None,
    now: datetime | None = None,
) -> WalletTransaction:
    """Adiciona o crédito do profissional na transação corrente (sem commit)."""
    existing = (
        await db.execute(select(WalletTransaction).where(WalletTransaction.quote_id == quote.id))
    ).scalars().first()
    if existing is not None:
        return existing

    amount = Decimal(quote.price)
    fee, net_amount = split_platform_fee(amount)
    transaction = WalletTransaction(
        user_id=quote.professional_id,
        quote_id=quote.id,
        type="credit",
        amount=amount,
        fee=fee,
        net_amount=net_amount,
        description=f"Pagamento: {quote.title}",
        customer_name=customer_name or "Cliente",
        status="completed",
    )
    if now is not None:
        transaction.created_at = now
    db.add(transaction)
    return transaction


async def get_balance(db: AsyncSession, user_id: str) -> Decimal:
    signed = case(
        (WalletTransaction.type == "debit", -WalletTransaction.net_amount),
        else_=WalletTransaction.net_amount,
    )
    stmt = select(func.coalesce(func.sum(signed), 0)).where(
        WalletTransaction.user_id == user_id,
        WalletTransaction.status == "completed",
    )
    return Decimal(str((await db.execute(stmt)).scalar_one())).quantize(CENTS)


async def list_transactions(db: AsyncSession, user_id: str) -> list[WalletTransaction]:
    stmt = (
        select(WalletTransaction)
        .where(WalletTransaction.user_id == user_id)
        .order_by(WalletTransaction.created_at.desc(), WalletTransaction.id.desc())
    )
    return list((await db.execute(stmt)).scalars().all())
