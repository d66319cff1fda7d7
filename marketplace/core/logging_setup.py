from __future__ import annotations

import json
import logging
import os
import re
from datetime import datetime, timezone

from marketplace.core.request_context import get_conversation_id, get_request_id, get_user_id

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Chave de API, bearer token e CPF nunca vão para o log em claro
_MASKS = (
    re.compile(r"(bearer\s+)([A-Za-z0-9_\-.]+)", re.IGNORECASE),
    re.compile(r"((?:api[_-]?key|secret|token)\s*[:=]\s*)([^\s\",}]+)", re.IGNORECASE),
    re.compile(r"((?:cpf|taxId)[\"']?\s*[:=]\s*[\"']?)([\d.\-]{11,14})", re.IGNORECASE),
)

# Campos opcionais repassados via ``extra=``
_CONTEXT_FIELDS = ("endpoint", "method", "status_code", "quote_id", "pix_id", "message_id")

# Bibliotecas muito verbosas em INFO
_QUIET_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine", "botocore", "aiosqlite")


def mask_sensitive(text: str) -> str:
    for pattern in _MASKS:
        text = pattern.sub(r"\1***", text)
    return text


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        # formatMessage lê record.message, preenchido apenas por Formatter.format
        record.message = record.getMessage()
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "module": record.name,
            "message": mask_sensitive(self.formatMessage(record)),
            "request_id": getattr(record, "request_id", None) or get_request_id(),
            "user_id": getattr(record, "user_id", None) or get_user_id(),
            "conversation_id": getattr(record, "conversation_id", None) or get_conversation_id(),
            "duration_ms": getattr(record, "duration_ms", None),
        }
        entry.update(
            {name: getattr(record, name) for name in _CONTEXT_FIELDS if getattr(record, name, None) is not None}
        )
        if record.exc_info:
            entry["exception"] = mask_sensitive(self.formatException(record.exc_info))
        return json.dumps(entry, ensure_ascii=False, default=str)


def configure_logging(level: str | None = None) -> None:
    level = (level or LOG_LEVEL).upper()

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter("%(message)s"))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        logging.getLogger(name).setLevel(level)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
