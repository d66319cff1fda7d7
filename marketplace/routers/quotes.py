from __future__ import annotations

from decimal import Decimal
from typing import Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.core.database import get_db
from marketplace.deps import get_current_user_id, get_event_bus, get_payment_coordinator
from marketplace.services.conversation_events import build_quote_payload
from marketplace.services.conversations import get_conversation
from marketplace.services.event_bus import EventBus
from marketplace.services.payments import PaymentCoordinator
from marketplace.services.quotes import (
    cancel_quote,
    complete_service,
    confirm_completion,
    create_quote,
    get_quote_for_user,
    list_quotes,
    respond_to_quote,
)

router = APIRouter(prefix="/api", tags=["quotes"])


class QuoteCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    price: Decimal = Field(..., gt=0, max_digits=10, decimal_places=2)
    description: Optional[str] = Field(default=None, max_length=2000)
    validity_days: Optional[int] = Field(default=None, ge=1, le=90)
    service_id: Optional[str] = Field(default=None, max_length=64)


class QuoteResponse(BaseModel):
    decision: Literal["accepted", "rejected"]
    response_text: Optional[str] = Field(default=None, max_length=2000)


@router.post("/conversations/{conversation_id}/quotes")
async def post_quote(
    conversation_id: int,
    body: QuoteCreate,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    bus: EventBus = Depends(get_event_bus),
):
    conversation = await get_conversation(db, conversation_id)
    quote = await create_quote(
        db,
        conversation_id,
        professional_id=user_id,
        client_id=conversation.client_id,
        price=body.price,
        title=body.title,
        description=body.description,
        validity_days=body.validity_days,
        service_id=body.service_id,
        bus=bus,
    )
    return build_quote_payload(quote)


@router.get("/conversations/{conversation_id}/quotes")
async def get_quotes(
    conversation_id: int,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    quotes = await list_quotes(db, conversation_id, user_id)
    return [build_quote_payload(quote) for quote in quotes]


@router.get("/quotes/{quote_id}")
async def get_quote_detail(
    quote_id: int,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    quote = await get_quote_for_user(db, quote_id, user_id)
    return build_quote_payload(quote)


@router.post("/quotes/{quote_id}/respond")
async def post_response(
    quote_id: int,
    body: QuoteResponse,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    bus: EventBus = Depends(get_event_bus),
):
    quote = await respond_to_quote(db, quote_id, user_id, body.decision, body.response_text, bus=bus)
    return build_quote_payload(quote)


@router.post("/quotes/{quote_id}/cancel")
async def post_cancel(
    quote_id: int,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    bus: EventBus = Depends(get_event_bus),
):
    quote = await cancel_quote(db, quote_id, user_id, bus=bus)
    return build_quote_payload(quote)


@router.post("/quotes/{quote_id}/complete")
async def post_complete(
    quote_id: int,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    bus: EventBus = Depends(get_event_bus),
):
    quote = await complete_service(db, quote_id, user_id, bus=bus)
    return build_quote_payload(quote)


@router.post("/quotes/{quote_id}/confirm")
async def post_confirm(
    quote_id: int,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    coordinator: PaymentCoordinator = Depends(get_payment_coordinator),
):
    initiation = await confirm_completion(db, coordinator, quote_id, user_id)
    return initiation.to_dict()
