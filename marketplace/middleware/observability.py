from __future__ import annotations

import logging
import time
import uuid

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from marketplace.core.request_context import clear_request_context, set_request_context

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
USER_HEADER = "X-User-ID"


class ObservabilityMiddleware(BaseHTTPMiddleware):
    """Uma linha de log por requisição, com request id, usuário e conversa."""

    async def dispatch(self, request: Request, call_next):
        started = time.perf_counter()
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        user_id = (request.headers.get(USER_HEADER) or "").strip() or None
        request.state.request_id = request_id
        set_request_context(request_id=request_id, user_id=user_id)

        response = None
        try:
            response = await call_next(request)
            response.headers[REQUEST_ID_HEADER] = request_id
            return response
        finally:
            # path_params só existem depois do roteamento
            conversation_id = request.path_params.get("conversation_id")
            if conversation_id is not None:
                set_request_context(conversation_id=str(conversation_id))
            _log_request(request, response, started)
            clear_request_context()


def _log_request(request: Request, response, started: float) -> None:
    status_code = response.status_code if response is not None else 500
    level = logging.WARNING if status_code >= 500 else logging.INFO
    logger.log(
        level,
        "request completed",
        extra={
            "endpoint": request.url.path,
            "method": request.method,
            "status_code": status_code,
            "duration_ms": round((time.perf_counter() - started) * 1000, 2),
        },
    )
