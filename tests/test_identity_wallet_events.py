from decimal import Decimal

import pytest

from marketplace.core.errors import ValidationError
from marketplace.services.event_bus import EventBus, conversation_topic
from marketplace.services.identity import (
    collect_identity,
    format_cpf,
    has_on_file_identity,
    is_valid_cpf,
    normalize_cpf,
)
from marketplace.services.wallet import credit_for_quote, get_balance, list_transactions, split_platform_fee
from tests.fixtures_data import CLIENT_ID, INVALID_CPF, PROFESSIONAL_ID, VALID_CPF, VALID_CPF_DIGITS


def test_cpf_check_digits():
    assert normalize_cpf(VALID_CPF) == VALID_CPF_DIGITS
    assert is_valid_cpf(VALID_CPF)
    assert not is_valid_cpf(INVALID_CPF)
    assert not is_valid_cpf("111.111.111-11")
    assert not is_valid_cpf("1234")
    assert format_cpf(VALID_CPF_DIGITS) == VALID_CPF


async def test_collect_identity_stores_digits_only(db):
    assert await has_on_file_identity(db, CLIENT_ID) is False

    profile = await collect_identity(db, CLIENT_ID, VALID_CPF, full_name=" Ana Souza ")

    assert profile.cpf == VALID_CPF_DIGITS
    assert profile.full_name == "Ana Souza"
    assert await has_on_file_identity(db, CLIENT_ID) is True


@pytest.mark.parametrize("document", [INVALID_CPF, "123", ""])
async def test_collect_identity_rejects_bad_documents(db, document):
    with pytest.raises(ValidationError):
        await collect_identity(db, CLIENT_ID, document)
    assert await has_on_file_identity(db, CLIENT_ID) is False


def test_platform_fee_split():
    assert split_platform_fee(Decimal("250.00")) == (Decimal("25.00"), Decimal("225.00"))
    assert split_platform_fee(Decimal("99.99"), Decimal("0.10")) == (Decimal("10.00"), Decimal("89.99"))


async def test_credit_for_quote_is_written_once(db, conversation, make_quote):
    quote = await make_quote(conversation, stage="completed")

    await credit_for_quote(db, quote, customer_name="Ana Souza")
    await db.commit()
    await credit_for_quote(db, quote, customer_name="Ana Souza")
    await db.commit()

    [transaction] = await list_transactions(db, PROFESSIONAL_ID)
    assert transaction.net_amount == Decimal("225.00")
    assert Decimal(await get_balance(db, PROFESSIONAL_ID)) == Decimal("225.00")
    assert Decimal(await get_balance(db, CLIENT_ID)) == Decimal("0")


def test_event_bus_delivers_per_topic_and_unsubscribes():
    bus = EventBus()
    received = []
    unsubscribe = bus.subscribe(conversation_topic(1), received.append)

    bus.emit(conversation_topic(1), {"event": "message.created"})
    bus.emit(conversation_topic(2), {"event": "message.created"})
    unsubscribe()
    bus.emit(conversation_topic(1), {"event": "message.deleted"})

    assert received == [{"event": "message.created"}]
    assert bus.subscriber_count(conversation_topic(1)) == 0


def test_failing_handler_does_not_stop_delivery():
    bus = EventBus()
    received = []

    def _broken(_payload):
        raise RuntimeError("socket closed")

    bus.subscribe("conversation:1", _broken)
    bus.subscribe("conversation:1", received.append)
    bus.emit("conversation:1", {"event": "typing"})

    assert received == [{"event": "typing"}]
