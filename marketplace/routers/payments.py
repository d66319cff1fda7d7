from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.core.database import get_db
from marketplace.deps import get_current_user_id, get_payment_coordinator
from marketplace.services.payments import PaymentCoordinator
from marketplace.services.quotes import get_quote_for_user
from marketplace.services.wallet import get_balance, list_transactions

router = APIRouter(prefix="/api", tags=["payments"])


class IdentityPayload(BaseModel):
    cpf: str = Field(..., min_length=11, max_length=14)
    full_name: Optional[str] = Field(default=None, max_length=120)


@router.post("/quotes/{quote_id}/identity")
async def post_identity(
    quote_id: int,
    body: IdentityPayload,
    user_id: str = Depends(get_current_user_id),
    coordinator: PaymentCoordinator = Depends(get_payment_coordinator),
):
    initiation = await coordinator.provide_identity(quote_id, user_id, body.cpf, full_name=body.full_name)
    return initiation.to_dict()


@router.get("/quotes/{quote_id}/payment")
async def get_payment(
    quote_id: int,
    user_id: str = Depends(get_current_user_id),
    coordinator: PaymentCoordinator = Depends(get_payment_coordinator),
):
    check = await coordinator.payment_view(quote_id, user_id)
    payload = check.to_dict()
    payload["watching"] = coordinator.is_watching(quote_id)
    return payload


@router.delete("/quotes/{quote_id}/payment/watch", status_code=status.HTTP_204_NO_CONTENT)
async def close_payment_watch(
    quote_id: int,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    coordinator: PaymentCoordinator = Depends(get_payment_coordinator),
):
    await get_quote_for_user(db, quote_id, user_id)
    await coordinator.close_payment_view(quote_id)


@router.get("/wallet")
async def get_wallet(
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    transactions = await list_transactions(db, user_id)
    return {
        "balance": str(await get_balance(db, user_id)),
        "transactions": [
            {
                "id": transaction.id,
                "quote_id": transaction.quote_id,
                "type": transaction.type,
                "amount": str(transaction.amount),
                "fee": str(transaction.fee),
                "net_amount": str(transaction.net_amount),
                "description": transaction.description,
                "customer_name": transaction.customer_name,
                "status": transaction.status,
                "created_at": transaction.created_at,
            }
            for transaction in transactions
        ],
    }
