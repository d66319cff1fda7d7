"""Contexto da requisição corrente, lido pelo formatter de log."""

from __future__ import annotations

from contextvars import ContextVar

_request_id: ContextVar[str | None] = ContextVar("request_id", default=None)
_user_id: ContextVar[str | None] = ContextVar("user_id", default=None)
_conversation_id: ContextVar[str | None] = ContextVar("conversation_id", default=None)

_ALL = (_request_id, _user_id, _conversation_id)


def set_request_context(
    *,
    request_id: str | None = None,
    user_id: str | None = None,
    conversation_id: str | None = None,
) -> None:
    for var, value in zip(_ALL, (request_id, user_id, conversation_id)):
        if value is not None:
            var.set(value)


def get_request_id() -> str | None:
    return _request_id.get()


def get_user_id() -> str | None:
    return _user_id.get()


def get_conversation_id() -> str | None:
    return _conversation_id.get()


def clear_request_context() -> None:
    for var in _ALL:
        var.set(None)
