from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.pool import NullPool

from marketplace import main
from marketplace.core.database import Base, build_engine, build_session_factory, get_db
from marketplace.integrations.pix_gateway import MockPixGateway
from marketplace.services.chat_storage import LocalChatStorage
from marketplace.services.event_bus import EventBus
from marketplace.services.payments import PaymentCoordinator
from marketplace.services.presence import PresenceService
from tests.fixtures_data import (
    CLIENT_ID,
    OTHER_USER_ID,
    PAINTING_QUOTE,
    PROFESSIONAL_ID,
    SERVICE_ID,
    VALID_CPF,
)

STATE_ATTRS = ("event_bus", "presence", "chat_storage", "payment_coordinator")


def as_user(user_id: str) -> dict:
    return {"X-User-ID": user_id}


@pytest.fixture
def gateway():
    return MockPixGateway()


@pytest.fixture
def api(tmp_path, monkeypatch, gateway):
    db_path = tmp_path / "api.db"
    sync_engine = create_engine(f"sqlite:///{db_path}")
    Base.metadata.create_all(sync_engine)
    sync_engine.dispose()

    session_factory = build_session_factory(build_engine(f"sqlite+aiosqlite:///{db_path}", poolclass=NullPool))

    async def _get_test_db():
        async with session_factory() as db:
            yield db

    async def _no_startup():
        return None

    monkeypatch.setattr(main, "_startup_tasks", _no_startup)
    bus = EventBus()
    main.app.state.event_bus = bus
    main.app.state.presence = PresenceService(bus=bus)
    main.app.state.chat_storage = LocalChatStorage(root=tmp_path / "files", public_base_url="/uploads/chat-files")
    main.app.state.payment_coordinator = PaymentCoordinator(session_factory, gateway, bus=bus, poll_interval=0.01)
    main.app.dependency_overrides[get_db] = _get_test_db

    with TestClient(main.app) as client:
        yield client

    main.app.dependency_overrides.clear()
    for attr in STATE_ATTRS:
        setattr(main.app.state, attr, None)


def _open_conversation(api) -> int:
    response = api.post(
        "/api/conversations",
        json={"professional_id": PROFESSIONAL_ID, "service_id": SERVICE_ID},
        headers=as_user(CLIENT_ID),
    )
    assert response.status_code == 200
    return response.json()["conversation"]["id"]


def _completed_quote(api, conversation_id: int) -> int:
    created = api.post(
        f"/api/conversations/{conversation_id}/quotes",
        json=PAINTING_QUOTE,
        headers=as_user(PROFESSIONAL_ID),
    )
    assert created.status_code == 200
    quote_id = created.json()["id"]

    accepted = api.post(f"/api/quotes/{quote_id}/respond", json={"decision": "accepted"}, headers=as_user(CLIENT_ID))
    assert accepted.json()["stage"] == "accepted"
    completed = api.post(f"/api/quotes/{quote_id}/complete", headers=as_user(PROFESSIONAL_ID))
    assert completed.json()["stage"] == "awaiting_confirmation"
    return quote_id


def test_conversation_messages_and_timeline(api):
    conversation_id = _open_conversation(api)

    sent = api.post(
        f"/api/conversations/{conversation_id}/messages",
        json={"content": "Olá, faz pintura amanhã?", "client_message_id": "local-1"},
        headers=as_user(CLIENT_ID),
    )
    resent = api.post(
        f"/api/conversations/{conversation_id}/messages",
        json={"content": "Olá, faz pintura amanhã?", "client_message_id": "local-1"},
        headers=as_user(CLIENT_ID),
    )
    assert sent.status_code == 200
    assert resent.json()["id"] == sent.json()["id"]

    unread = api.get("/api/messages/unread-count", headers=as_user(PROFESSIONAL_ID)).json()
    assert unread["total"] == 1

    api.post(f"/api/conversations/{conversation_id}/quotes", json=PAINTING_QUOTE, headers=as_user(PROFESSIONAL_ID))
    timeline = api.get(f"/api/conversations/{conversation_id}/timeline", headers=as_user(CLIENT_ID)).json()

    assert [entry["type"] for entry in timeline] == ["message", "quote"]
    assert timeline[0]["show_date_divider"] is True
    assert timeline[1]["data"]["price"] == "250.00"

    read = api.post(f"/api/conversations/{conversation_id}/read", headers=as_user(PROFESSIONAL_ID))
    assert read.status_code == 200
    assert api.get("/api/messages/unread-count", headers=as_user(PROFESSIONAL_ID)).json()["total"] == 0


def test_quote_to_paid_flow(api, gateway):
    conversation_id = _open_conversation(api)
    quote_id = _completed_quote(api, conversation_id)

    confirm = api.post(f"/api/quotes/{quote_id}/confirm", headers=as_user(CLIENT_ID))
    assert confirm.status_code == 200
    assert confirm.json()["status"] == "identity_required"

    identity = api.post(
        f"/api/quotes/{quote_id}/identity",
        json={"cpf": VALID_CPF, "full_name": "Ana Souza"},
        headers=as_user(CLIENT_ID),
    )
    assert identity.status_code == 200
    body = identity.json()
    assert body["status"] == "pending"
    pix_id = body["session"]["pix_id"]
    assert body["session"]["amount"] == "250.00"

    pending = api.get(f"/api/quotes/{quote_id}/payment", headers=as_user(CLIENT_ID)).json()
    assert pending["status"] == "PENDING"
    assert pending["paid"] is False

    gateway.mark_paid(pix_id)
    paid = api.get(f"/api/quotes/{quote_id}/payment", headers=as_user(CLIENT_ID)).json()
    assert paid["status"] == "PAID"
    assert paid["quote_stage"] == "confirmed"

    quote = api.get(f"/api/quotes/{quote_id}", headers=as_user(PROFESSIONAL_ID)).json()
    assert quote["client_confirmed"] is True

    wallet = api.get("/api/wallet", headers=as_user(PROFESSIONAL_ID)).json()
    assert Decimal(wallet["balance"]) == Decimal("225.00")
    assert [transaction["quote_id"] for transaction in wallet["transactions"]] == [quote_id]


def test_closing_payment_view_stops_the_watcher(api):
    conversation_id = _open_conversation(api)
    quote_id = _completed_quote(api, conversation_id)
    api.post(f"/api/quotes/{quote_id}/identity", json={"cpf": VALID_CPF}, headers=as_user(CLIENT_ID))

    api.get(f"/api/quotes/{quote_id}/payment", headers=as_user(CLIENT_ID))
    closed = api.delete(f"/api/quotes/{quote_id}/payment/watch", headers=as_user(CLIENT_ID))

    assert closed.status_code == 204
    assert main.app.state.payment_coordinator.is_watching(quote_id) is False


def test_errors_are_mapped_to_status_codes(api):
    conversation_id = _open_conversation(api)
    quote = api.post(
        f"/api/conversations/{conversation_id}/quotes", json=PAINTING_QUOTE, headers=as_user(PROFESSIONAL_ID)
    ).json()

    assert api.get("/api/conversations").status_code == 401
    assert api.get(f"/api/conversations/{conversation_id}/timeline", headers=as_user(OTHER_USER_ID)).status_code == 403
    assert api.get("/api/quotes/9999", headers=as_user(CLIENT_ID)).status_code == 404

    client_quote = api.post(
        f"/api/conversations/{conversation_id}/quotes", json=PAINTING_QUOTE, headers=as_user(CLIENT_ID)
    )
    assert client_quote.status_code == 403
    assert client_quote.json() == {"detail": "Somente o profissional pode criar orçamentos"}

    api.post(f"/api/quotes/{quote['id']}/respond", json={"decision": "rejected"}, headers=as_user(CLIENT_ID))
    again = api.post(f"/api/quotes/{quote['id']}/respond", json={"decision": "accepted"}, headers=as_user(CLIENT_ID))
    assert again.status_code == 409


def test_typing_indicator_is_visible_to_the_other_participant(api):
    conversation_id = _open_conversation(api)

    published = api.put(
        f"/api/conversations/{conversation_id}/typing",
        json={"is_typing": True, "display_name": "Ana"},
        headers=as_user(CLIENT_ID),
    )
    assert published.status_code == 200

    seen_by_professional = api.get(f"/api/conversations/{conversation_id}/typing", headers=as_user(PROFESSIONAL_ID))
    seen_by_client = api.get(f"/api/conversations/{conversation_id}/typing", headers=as_user(CLIENT_ID))

    assert [item["user_id"] for item in seen_by_professional.json()] == [CLIENT_ID]
    assert seen_by_client.json() == []
