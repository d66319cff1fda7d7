"""Cliente HTTP assíncrono da API de conversas.

Mensagens enviadas entram numa caixa de saída local como ``pending`` e viram
``sent`` ou ``failed``. Reenviar reutiliza o mesmo ``client_message_id``, então
o servidor nunca grava a mensagem duas vezes.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable

import httpx

from marketplace.core.config import TYPING_THROTTLE_SECONDS

logger = logging.getLogger(__name__)

PENDING = "pending"
SENT = "sent"
FAILED = "failed"


class ConversationClientError(RuntimeError):
    def __init__(self, status_code: int, detail: str):
        super().__init__(f"Erro da API {status_code}: {detail}")
        self.status_code = status_code
        self.detail = detail


@dataclass
class OutgoingMessage:
    client_message_id: str
    conversation_id: int
    content: str
    reply_to_id: int | None = None
    status: str = PENDING
    server_message: dict[str, Any] | None = None
    error: str | None = None
    attempts: int = 0
    queued_at: float = field(default_factory=time.time)


class ConversationClient:
    def __init__(
        self,
        base_url: str,
        user_id: str,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 10.0,
        typing_throttle_seconds: float = TYPING_THROTTLE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.user_id = user_id
        self._http = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={"X-User-ID": user_id},
            timeout=timeout,
            transport=transport,
        )
        self.typing_throttle_seconds = typing_throttle_seconds
        self._clock = clock
        self._outbox: dict[str, OutgoingMessage] = {}
        self._typing_sent: dict[int, tuple[bool, float]] = {}

    async def __aenter__(self) -> "ConversationClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        response = await self._http.request(method, path, **kwargs)
        if response.status_code >= 400:
            try:
                detail = response.json().get("detail", response.text)
            except ValueError:
                detail = response.text
            raise ConversationClientError(response.status_code, str(detail))
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    # Conversas

    async def open_conversation(self, professional_id: str, service_id: str | None = None) -> dict[str, Any]:
        payload = {"professional_id": professional_id, "service_id": service_id}
        return (await self._request("POST", "/api/conversations", json=payload))["conversation"]

    async def list_conversations(self) -> list[dict[str, Any]]:
        return await self._request("GET", "/api/conversations")

    async def timeline(self, conversation_id: int) -> list[dict[str, Any]]:
        return await self._request("GET", f"/api/conversations/{conversation_id}/timeline")

    async def clear_conversation(self, conversation_id: int) -> dict[str, Any]:
        return await self._request("POST", f"/api/conversations/{conversation_id}/clear")

    # Mensagens

    def outbox(self, conversation_id: int | None = None) -> list[OutgoingMessage]:
        return [
            message
            for message in self._outbox.values()
            if conversation_id is None or message.conversation_id == conversation_id
        ]

    def failed_messages(self, conversation_id: int | None = None) -> list[OutgoingMessage]:
        return [message for message in self.outbox(conversation_id) if message.status == FAILED]

    async def send_message(
        self,
        conversation_id: int,
        content: str,
        reply_to_id: int | None = None,
    ) -> OutgoingMessage:
        message = OutgoingMessage(
            client_message_id=uuid.uuid4().hex,
            conversation_id=conversation_id,
            content=content,
            reply_to_id=reply_to_id,
        )
        self._outbox[message.client_message_id] = message
        await self._deliver(message)
        return message

    async def retry(self, client_message_id: str) -> OutgoingMessage:
        message = self._outbox[client_message_id]
        if message.status == SENT:
            return message
        message.status = PENDING
        message.error = None
        await self._deliver(message)
        return message

    async def retry_failed(self, conversation_id: int | None = None) -> list[OutgoingMessage]:
        return [await self.retry(message.client_message_id) for message in self.failed_messages(conversation_id)]

    def discard(self, client_message_id: str) -> None:
        self._outbox.pop(client_message_id, None)

    async def _deliver(self, message: OutgoingMessage) -> None:
        message.attempts += 1
        payload = {
            "content": message.content,
            "message_type": "text",
            "reply_to_id": message.reply_to_id,
            "client_message_id": message.client_message_id,
        }
        try:
            message.server_message = await self._request(
                "POST",
                f"/api/conversations/{message.conversation_id}/messages",
                json=payload,
            )
        except (httpx.HTTPError, ConversationClientError) as exc:
            message.status = FAILED
            message.error = str(exc)
            logger.warning("message delivery failed attempts=%s error=%s", message.attempts, exc)
            return
        message.status = SENT
        # ao digitar de novo depois de enviar, o indicador volta a ser publicado
        self._typing_sent.pop(message.conversation_id, None)

    async def delete_message(self, message_id: int) -> dict[str, Any]:
        return await self._request("DELETE", f"/api/messages/{message_id}")

    async def mark_read(self, conversation_id: int) -> dict[str, Any]:
        return await self._request("POST", f"/api/conversations/{conversation_id}/read")

    async def unread_count(self) -> dict[str, Any]:
        return await self._request("GET", "/api/messages/unread-count")

    # Digitando

    async def set_typing(self, conversation_id: int, is_typing: bool, display_name: str | None = None) -> bool:
        """Publica o estado respeitando o throttle; devolve True quando houve requisição."""
        now = self._clock()
        last = self._typing_sent.get(conversation_id)
        if last is not None:
            last_state, last_at = last
            if last_state == is_typing and now - last_at < self.typing_throttle_seconds:
                return False
        elif not is_typing:
            return False

        self._typing_sent[conversation_id] = (is_typing, now)
        try:
            await self._request(
                "PUT",
                f"/api/conversations/{conversation_id}/typing",
                json={"is_typing": is_typing, "display_name": display_name},
            )
        except (httpx.HTTPError, ConversationClientError) as exc:
            # o indicador de digitação nunca bloqueia a conversa
            logger.debug("typing publish failed: %s", exc)
            self._typing_sent.pop(conversation_id, None)
            return False
        return True

    async def typing_users(self, conversation_id: int) -> list[dict[str, Any]]:
        return await self._request("GET", f"/api/conversations/{conversation_id}/typing")

    # Orçamentos e pagamento

    async def create_quote(self, conversation_id: int, **payload) -> dict[str, Any]:
        if "price" in payload:
            payload["price"] = str(payload["price"])
        return await self._request("POST", f"/api/conversations/{conversation_id}/quotes", json=payload)

    async def respond_to_quote(self, quote_id: int, decision: str, response_text: str | None = None) -> dict[str, Any]:
        payload = {"decision": decision, "response_text": response_text}
        return await self._request("POST", f"/api/quotes/{quote_id}/respond", json=payload)

    async def cancel_quote(self, quote_id: int) -> dict[str, Any]:
        return await self._request("POST", f"/api/quotes/{quote_id}/cancel")

    async def complete_service(self, quote_id: int) -> dict[str, Any]:
        return await self._request("POST", f"/api/quotes/{quote_id}/complete")

    async def confirm_completion(self, quote_id: int) -> dict[str, Any]:
        return await self._request("POST", f"/api/quotes/{quote_id}/confirm")

    async def provide_identity(self, quote_id: int, cpf: str, full_name: str | None = None) -> dict[str, Any]:
        return await self._request("POST", f"/api/quotes/{quote_id}/identity", json={"cpf": cpf, "full_name": full_name})

    async def payment_status(self, quote_id: int) -> dict[str, Any]:
        return await self._request("GET", f"/api/quotes/{quote_id}/payment")

    async def close_payment_view(self, quote_id: int) -> None:
        await self._request("DELETE", f"/api/quotes/{quote_id}/payment/watch")
