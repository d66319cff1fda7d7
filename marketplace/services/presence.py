from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable

from marketplace.core.config import TYPING_THROTTLE_SECONDS, TYPING_TTL_SECONDS
from marketplace.services.conversation_events import emit_typing
from marketplace.services.event_bus import EventBus


@dataclass
class TypingState:
    conversation_id: int
    user_id: str
    is_typing: bool
    display_name: str | None
    expires_at: float
    last_broadcast_at: float | None = None
    last_broadcast_typing: bool | None = None

    def to_dict(self) -> dict:
        return {
            "conversation_id": self.conversation_id,
            "user_id": self.user_id,
            "is_typing": self.is_typing,
            "display_name": self.display_name,
        }


class PresenceService:
    """Estado efêmero de "digitando" por conversa.

    Contrato: quem está digitando republica pelo menos a cada ``ttl / 2``
    segundos. Um estado não renovado dentro do TTL deixa de ser visível.
    Nada é persistido.
    """

    def __init__(
        self,
        *,
        ttl_seconds: float = TYPING_TTL_SECONDS,
        throttle_seconds: float = TYPING_THROTTLE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        bus: EventBus | None = None,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.throttle_seconds = throttle_seconds
        self._clock = clock
        self._bus = bus
        self._states: dict[int, dict[str, TypingState]] = {}

    @property
    def heartbeat_seconds(self) -> float:
        return self.ttl_seconds / 2

    def publish(
        self,
        conversation_id: int,
        user_id: str,
        is_typing: bool,
        display_name: str | None = None,
    ) -> bool:
        """Registra o estado e devolve True quando ele foi retransmitido."""
        now = self._clock()
        states = self._states.setdefault(conversation_id, {})
        state = states.get(user_id)
        if state is None:
            state = TypingState(conversation_id, user_id, is_typing, display_name, now + self.ttl_seconds)
            states[user_id] = state
        else:
            state.is_typing = is_typing
            state.display_name = display_name or state.display_name
            state.expires_at = now + self.ttl_seconds

        if not is_typing and state.last_broadcast_typing is not True:
            return False
        changed = state.last_broadcast_typing != is_typing
        throttled = (
            state.last_broadcast_at is not None
            and now - state.last_broadcast_at < self.throttle_seconds
        )
        if not changed and throttled:
            return False

        state.last_broadcast_at = now
        state.last_broadcast_typing = is_typing
        emit_typing(conversation_id, state.to_dict(), self._bus)
        return True

    def clear(self, conversation_id: int, user_id: str) -> None:
        state = self._states.get(conversation_id, {}).get(user_id)
        if state is not None and state.is_typing:
            self.publish(conversation_id, user_id, False, state.display_name)

    def typing_users(self, conversation_id: int, viewer_id: str) -> list[TypingState]:
        now = self._clock()
        self._prune(conversation_id, now)
        states = self._states.get(conversation_id, {})
        return [
            state
            for user_id, state in states.items()
            if user_id != viewer_id and state.is_typing and state.expires_at > now
        ]

    def _prune(self, conversation_id: int, now: float) -> None:
        states = self._states.get(conversation_id)
        if not states:
            return
        for user_id in [uid for uid, state in states.items() if state.expires_at <= now]:
            states.pop(user_id, None)
        if not states:
            self._states.pop(conversation_id, None)
