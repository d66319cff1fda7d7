from __future__ import annotations

from datetime import date, time
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.core.database import get_db
from marketplace.core.errors import NotFoundError
from marketplace.deps import get_current_user_id, get_event_bus
from marketplace.services.appointments import (
    cancel_appointment,
    confirm_appointment,
    create_appointment,
    get_appointment_for_quote,
    reschedule_appointment,
)
from marketplace.services.conversation_events import build_appointment_payload
from marketplace.services.event_bus import EventBus
from marketplace.services.quotes import get_quote_for_user

router = APIRouter(prefix="/api", tags=["appointments"])


class AppointmentCreate(BaseModel):
    scheduled_date: date
    scheduled_time: time
    duration_minutes: int = Field(default=60, ge=1, le=720)
    location: Optional[str] = Field(default=None, max_length=500)
    notes: Optional[str] = Field(default=None, max_length=2000)


class AppointmentUpdate(BaseModel):
    scheduled_date: Optional[date] = None
    scheduled_time: Optional[time] = None
    duration_minutes: Optional[int] = Field(default=None, ge=1, le=720)
    location: Optional[str] = Field(default=None, max_length=500)
    notes: Optional[str] = Field(default=None, max_length=2000)


@router.post("/quotes/{quote_id}/appointment")
async def post_appointment(
    quote_id: int,
    body: AppointmentCreate,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    bus: EventBus = Depends(get_event_bus),
):
    appointment = await create_appointment(
        db,
        quote_id,
        user_id,
        body.scheduled_date,
        body.scheduled_time,
        duration_minutes=body.duration_minutes,
        location=body.location,
        notes=body.notes,
        bus=bus,
    )
    return build_appointment_payload(appointment)


@router.get("/quotes/{quote_id}/appointment")
async def get_appointment(
    quote_id: int,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    await get_quote_for_user(db, quote_id, user_id)
    appointment = await get_appointment_for_quote(db, quote_id)
    if appointment is None:
        raise NotFoundError("Agendamento não encontrado", quote_id=quote_id)
    return build_appointment_payload(appointment)


@router.patch("/appointments/{appointment_id}")
async def patch_appointment(
    appointment_id: int,
    body: AppointmentUpdate,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    bus: EventBus = Depends(get_event_bus),
):
    appointment = await reschedule_appointment(
        db,
        appointment_id,
        user_id,
        scheduled_date=body.scheduled_date,
        scheduled_time=body.scheduled_time,
        duration_minutes=body.duration_minutes,
        location=body.location,
        notes=body.notes,
        bus=bus,
    )
    return build_appointment_payload(appointment)


@router.post("/appointments/{appointment_id}/confirm")
async def post_confirm_appointment(
    appointment_id: int,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    bus: EventBus = Depends(get_event_bus),
):
    appointment = await confirm_appointment(db, appointment_id, user_id, bus=bus)
    return build_appointment_payload(appointment)


@router.post("/appointments/{appointment_id}/cancel")
async def post_cancel_appointment(
    appointment_id: int,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    bus: EventBus = Depends(get_event_bus),
):
    appointment = await cancel_appointment(db, appointment_id, user_id, bus=bus)
    return build_appointment_payload(appointment)
