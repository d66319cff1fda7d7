from __future__ import annotations

import io
import json
import logging
from uuid import UUID

import pytest
from fastapi.testclient import TestClient

from marketplace.core import startup_checks
from marketplace.core.logging_setup import JsonFormatter
from marketplace.core.request_context import clear_request_context, set_request_context


@pytest.fixture
def app_client(monkeypatch):
    from marketplace import main

    async def _no_startup():
        return None

    monkeypatch.setattr(main, "_startup_tasks", _no_startup)
    with TestClient(main.app) as client:
        yield client
    for attr in ("event_bus", "presence", "chat_storage", "payment_coordinator"):
        setattr(main.app.state, attr, None)


def _record(message: str, **extra) -> logging.LogRecord:
    record = logging.LogRecord("marketplace.test", logging.INFO, __file__, 1, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_request_id_is_returned_in_response_header(app_client):
    response = app_client.get("/health")

    assert response.status_code == 200
    UUID(response.headers["X-Request-ID"])


def test_incoming_request_id_is_preserved(app_client):
    response = app_client.get("/health", headers={"X-Request-ID": "req-123"})

    assert response.headers["X-Request-ID"] == "req-123"


def test_cors_allows_known_origin_and_blocks_unknown_origin(app_client):
    from marketplace.core.config import CORS_ORIGINS

    allowed_origin = CORS_ORIGINS[0]
    preflight = {"access-control-request-method": "GET"}

    allowed = app_client.options("/health", headers={"origin": allowed_origin, **preflight})
    blocked = app_client.options("/health", headers={"origin": "https://blocked-origin.example", **preflight})

    assert allowed.headers.get("access-control-allow-origin") == allowed_origin
    assert blocked.headers.get("access-control-allow-origin") is None


def test_missing_user_header_is_unauthorized(app_client):
    response = app_client.get("/api/messages/unread-count")

    assert response.status_code == 401
    assert response.json() == {"detail": "Usuário não autenticado"}


def test_sqlite_is_refused_in_production():
    with pytest.raises(RuntimeError):
        startup_checks.validate_database_environment("sqlite+aiosqlite:///./prod.db", "production")

    startup_checks.validate_database_environment("postgresql+asyncpg://db/marketplace", "production")
    startup_checks.validate_database_environment("sqlite+aiosqlite:///./dev.db", "dev")


def test_json_formatter_masks_cpf_and_secrets():
    formatter = JsonFormatter("%(message)s")

    payload = json.loads(
        formatter.format(_record('customer taxId="52998224725" Authorization: Bearer abc_live_secret'))
    )

    assert "52998224725" not in payload["message"]
    assert "abc_live_secret" not in payload["message"]


def test_json_formatter_includes_request_context():
    formatter = JsonFormatter("%(message)s")
    set_request_context(request_id="req-1", user_id="cliente-ana", conversation_id="7")
    try:
        payload = json.loads(formatter.format(_record("payment confirmed", quote_id=3)))
    finally:
        clear_request_context()

    assert payload["request_id"] == "req-1"
    assert payload["user_id"] == "cliente-ana"
    assert payload["conversation_id"] == "7"
    assert payload["quote_id"] == 3


def test_json_formatter_renders_message_arguments_on_fresh_record():
    formatter = JsonFormatter("%(message)s")
    record = logging.LogRecord("marketplace.test", logging.INFO, __file__, 1, "expired %s overdue quotes", (3,), None)

    payload = json.loads(formatter.format(record))

    assert payload["message"] == "expired 3 overdue quotes"


def test_json_formatter_works_as_the_only_handler_formatter():
    stream = io.StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(JsonFormatter("%(message)s"))
    log = logging.getLogger("marketplace.test.handler")
    log.addHandler(handler)
    log.propagate = False
    try:
        log.warning("reconciliation check failed: %s", "timeout", extra={"quote_id": 9})
    finally:
        log.removeHandler(handler)
        log.propagate = True

    payload = json.loads(stream.getvalue())
    assert payload["message"] == "reconciliation check failed: timeout"
    assert payload["level"] == "WARNING"
    assert payload["quote_id"] == 9
