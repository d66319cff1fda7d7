import pytest
import pytest_asyncio
from sqlalchemy.pool import NullPool

import marketplace.models  # noqa: F401
from marketplace.core.database import Base, build_engine, build_session_factory
from marketplace.integrations.pix_gateway import MockPixGateway
from marketplace.models.profile import UserProfile
from marketplace.services.conversations import get_or_create_conversation
from marketplace.services.event_bus import EventBus, conversation_topic
from marketplace.services.payments import PaymentCoordinator
from marketplace.services.quotes import complete_service, create_quote, respond_to_quote
from tests.fixtures_data import (
    CLIENT_ID,
    CLIENT_PROFILE,
    PAINTING_QUOTE,
    PROFESSIONAL_ID,
    SERVICE_ID,
    VALID_CPF_DIGITS,
)


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'conversations.db'}", poolclass=NullPool)
    async with engine.begin() as connection:
        await connection.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def bus():
    return EventBus()


class EventRecorder:
    def __init__(self, bus: EventBus):
        self._bus = bus
        self.events = []

    def watch(self, conversation_id: int) -> None:
        self._bus.subscribe(conversation_topic(conversation_id), self.events.append)

    def names(self) -> list[str]:
        return [event["event"] for event in self.events]


@pytest.fixture
def recorder(bus):
    return EventRecorder(bus)


@pytest.fixture
def gateway():
    return MockPixGateway()


@pytest_asyncio.fixture
async def coordinator(session_factory, gateway, bus):
    coordinator = PaymentCoordinator(session_factory, gateway, bus=bus, poll_interval=0.01)
    yield coordinator
    await coordinator.shutdown()


@pytest_asyncio.fixture
async def conversation(db):
    conversation, _ = await get_or_create_conversation(db, CLIENT_ID, PROFESSIONAL_ID, SERVICE_ID)
    return conversation


@pytest.fixture
def make_quote(db, bus):
    async def _make(conversation, *, stage: str = "pending", **overrides):
        data = {**PAINTING_QUOTE, **overrides}
        quote = await create_quote(
            db,
            conversation.id,
            professional_id=conversation.professional_id,
            client_id=conversation.client_id,
            bus=bus,
            **data,
        )
        if stage in {"accepted", "completed"}:
            quote = await respond_to_quote(db, quote.id, conversation.client_id, "accepted", bus=bus)
        if stage == "completed":
            quote = await complete_service(db, quote.id, conversation.professional_id, bus=bus)
        return quote

    return _make


@pytest_asyncio.fixture
async def client_profile(db):
    profile = UserProfile(user_id=CLIENT_ID, cpf=VALID_CPF_DIGITS, **CLIENT_PROFILE)
    db.add(profile)
    await db.commit()
    return profile
