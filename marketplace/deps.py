from __future__ import annotations

from fastapi import Header, HTTPException, Request, status

from marketplace.services.chat_storage import ChatStorage
from marketplace.services.event_bus import EventBus
from marketplace.services.payments import PaymentCoordinator
from marketplace.services.presence import PresenceService


def get_current_user_id(x_user_id: str | None = Header(default=None, alias="X-User-ID")) -> str:
    """Usuário autenticado, repassado pelo proxy de autenticação no header ``X-User-ID``."""
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Usuário não autenticado",
        )
    return user_id


def get_event_bus(request: Request) -> EventBus:
    return request.app.state.event_bus


def get_payment_coordinator(request: Request) -> PaymentCoordinator:
    return request.app.state.payment_coordinator


def get_presence_service(request: Request) -> PresenceService:
    return request.app.state.presence


def get_chat_storage(request: Request) -> ChatStorage:
    return request.app.state.chat_storage
