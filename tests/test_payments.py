import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from marketplace.core.database import utcnow
from marketplace.core.errors import ExternalServiceError, InvalidStateError, PermissionDeniedError, ValidationError
from marketplace.models.payment_session import PaymentSession
from marketplace.models.quote import Quote
from marketplace.models.wallet import WalletTransaction
from marketplace.services.payments import PaymentCoordinator
from marketplace.services.quotes import confirm_completion, respond_to_quote
from marketplace.services.wallet import get_balance
from tests.fixtures_data import CLIENT_ID, INVALID_CPF, OTHER_USER_ID, PROFESSIONAL_ID, VALID_CPF


async def _load(session_factory, model, **filters):
    async with session_factory() as session:
        stmt = select(model).filter_by(**filters)
        return list((await session.execute(stmt)).scalars())


async def _quote(session_factory, quote_id) -> Quote:
    async with session_factory() as session:
        return await session.get(Quote, quote_id)


async def test_painting_scenario_from_proposal_to_paid(
    db, session_factory, conversation, make_quote, coordinator, gateway, bus, recorder
):
    recorder.watch(conversation.id)
    quote = await make_quote(conversation, stage="completed")
    assert quote.status == "accepted"
    assert quote.completed_at is not None

    first = await confirm_completion(db, coordinator, quote.id, CLIENT_ID)
    assert first.status == "identity_required"
    assert coordinator.is_awaiting_identity(quote.id)

    initiation = await coordinator.provide_identity(quote.id, CLIENT_ID, VALID_CPF, full_name="Ana Souza")
    assert initiation.status == "pending"
    assert initiation.session.amount == Decimal("250.00")
    assert gateway.charges[initiation.session.pix_id]["amount"] == 25000
    assert not coordinator.is_awaiting_identity(quote.id)

    check = await coordinator.check_status(quote.id)
    assert check.status == "PENDING"
    assert (await _quote(session_factory, quote.id)).client_confirmed is False

    gateway.mark_paid(initiation.session.pix_id)
    check = await coordinator.check_status(quote.id)

    stored = await _quote(session_factory, quote.id)
    assert check.status == "PAID"
    assert stored.client_confirmed is True
    assert stored.client_confirmed_at is not None
    assert stored.stage == "confirmed"
    assert "quote.confirmed" in recorder.names()

    [session] = await _load(session_factory, PaymentSession, quote_id=quote.id)
    assert session.status == "PAID"
    assert session.paid_at is not None

    [credit] = await _load(session_factory, WalletTransaction, quote_id=quote.id)
    assert credit.user_id == PROFESSIONAL_ID
    assert credit.amount == Decimal("250.00")
    assert credit.fee == Decimal("25.00")
    assert credit.net_amount == Decimal("225.00")
    assert credit.customer_name == "Ana Souza"
    async with session_factory() as fresh:
        assert await get_balance(fresh, PROFESSIONAL_ID) == Decimal("225.00")


async def test_repeated_initiation_reuses_the_same_charge(conversation, make_quote, coordinator, gateway, client_profile):
    quote = await make_quote(conversation, stage="completed")

    first = await coordinator.initiate_payment(quote.id, CLIENT_ID)
    second = await coordinator.initiate_payment(quote.id, CLIENT_ID)

    assert first.session.pix_id == second.session.pix_id
    assert second.reused is True
    assert gateway.create_calls == 1


async def test_concurrent_initiation_creates_one_charge(
    session_factory, conversation, make_quote, coordinator, gateway, client_profile
):
    quote = await make_quote(conversation, stage="completed")

    results = await asyncio.gather(
        coordinator.initiate_payment(quote.id, CLIENT_ID),
        coordinator.initiate_payment(quote.id, CLIENT_ID),
    )

    assert results[0].session.pix_id == results[1].session.pix_id
    assert gateway.create_calls == 1
    assert len(await _load(session_factory, PaymentSession, quote_id=quote.id)) == 1


async def test_expired_session_is_replaced_by_a_new_charge(
    session_factory, conversation, make_quote, gateway, bus, client_profile
):
    quote = await make_quote(conversation, stage="completed")
    now = utcnow()
    clock = {"now": now}
    coordinator = PaymentCoordinator(session_factory, gateway, bus=bus, clock=lambda: clock["now"])

    first = await coordinator.initiate_payment(quote.id, CLIENT_ID)
    clock["now"] = first.session.expires_at + timedelta(seconds=1)
    second = await coordinator.initiate_payment(quote.id, CLIENT_ID)

    assert second.session.pix_id != first.session.pix_id
    sessions = {session.pix_id: session.status for session in await _load(session_factory, PaymentSession)}
    assert sessions == {first.session.pix_id: "EXPIRED", second.session.pix_id: "PENDING"}
    assert (await _quote(session_factory, quote.id)).pix_id == second.session.pix_id


async def test_local_countdown_declares_expiry_without_polling(
    session_factory, conversation, make_quote, gateway, bus, client_profile
):
    quote = await make_quote(conversation, stage="completed")
    clock = {"now": utcnow()}
    coordinator = PaymentCoordinator(session_factory, gateway, bus=bus, clock=lambda: clock["now"])
    initiation = await coordinator.initiate_payment(quote.id, CLIENT_ID)

    clock["now"] = initiation.session.expires_at
    check = await coordinator.check_status(quote.id)

    assert check.status == "EXPIRED"
    assert gateway.status_calls == 0
    stored = await _quote(session_factory, quote.id)
    assert stored.client_confirmed is False
    assert stored.stage == "awaiting_confirmation"


async def test_gateway_expiry_leaves_quote_untouched(session_factory, conversation, make_quote, coordinator, gateway, client_profile):
    quote = await make_quote(conversation, stage="completed")
    initiation = await coordinator.initiate_payment(quote.id, CLIENT_ID)

    gateway.mark_expired(initiation.session.pix_id)
    check = await coordinator.check_status(quote.id)

    assert check.status == "EXPIRED"
    [session] = await _load(session_factory, PaymentSession, quote_id=quote.id)
    assert session.status == "EXPIRED"
    assert (await _quote(session_factory, quote.id)).client_confirmed is False


async def test_gateway_failure_at_initiation_persists_nothing(
    session_factory, conversation, make_quote, coordinator, gateway, client_profile
):
    quote = await make_quote(conversation, stage="completed")
    gateway.fail_next()

    with pytest.raises(ExternalServiceError):
        await coordinator.initiate_payment(quote.id, CLIENT_ID)

    assert await _load(session_factory, PaymentSession) == []
    assert (await _quote(session_factory, quote.id)).pix_id is None

    retried = await coordinator.initiate_payment(quote.id, CLIENT_ID)
    assert retried.status == "pending"


async def test_watcher_confirms_after_transient_errors(
    session_factory, conversation, make_quote, coordinator, gateway, client_profile
):
    quote = await make_quote(conversation, stage="completed")
    initiation = await coordinator.initiate_payment(quote.id, CLIENT_ID)

    gateway.fail_next(2)
    task = coordinator.open_payment_view(quote.id)
    assert coordinator.is_watching(quote.id)
    await asyncio.sleep(0.05)
    gateway.mark_paid(initiation.session.pix_id)

    await asyncio.wait_for(task, timeout=2)

    assert not coordinator.is_watching(quote.id)
    assert (await _quote(session_factory, quote.id)).client_confirmed is True


async def test_opening_the_view_twice_keeps_one_watcher(conversation, make_quote, coordinator, client_profile):
    quote = await make_quote(conversation, stage="completed")
    await coordinator.initiate_payment(quote.id, CLIENT_ID)

    first = coordinator.open_payment_view(quote.id)
    second = coordinator.open_payment_view(quote.id)

    assert first is second
    await coordinator.close_payment_view(quote.id)
    assert first.cancelled()
    assert not coordinator.is_watching(quote.id)


async def test_payment_view_is_restricted_to_participants(conversation, make_quote, coordinator, client_profile):
    quote = await make_quote(conversation, stage="completed")
    await coordinator.initiate_payment(quote.id, CLIENT_ID)

    with pytest.raises(PermissionDeniedError):
        await coordinator.payment_view(quote.id, OTHER_USER_ID)

    check = await coordinator.payment_view(quote.id, PROFESSIONAL_ID)
    assert check.status == "PENDING"
    assert coordinator.is_watching(quote.id)


async def test_reconciliation_confirms_missed_payments(
    session_factory, conversation, make_quote, coordinator, gateway, client_profile
):
    paid = await make_quote(conversation, stage="completed")
    pending = await make_quote(conversation, stage="completed", title="Troca de tomada")
    paid_session = (await coordinator.initiate_payment(paid.id, CLIENT_ID)).session
    await coordinator.initiate_payment(pending.id, CLIENT_ID)

    gateway.mark_paid(paid_session.pix_id)
    confirmed = await coordinator.reconcile_pending_payments()

    assert confirmed == 1
    assert (await _quote(session_factory, paid.id)).client_confirmed is True
    assert (await _quote(session_factory, pending.id)).client_confirmed is False
    assert await coordinator.reconcile_pending_payments() == 0


async def test_reconciliation_finds_payment_made_after_local_expiry(
    session_factory, conversation, make_quote, gateway, bus, client_profile
):
    quote = await make_quote(conversation, stage="completed")
    clock = {"now": utcnow()}
    coordinator = PaymentCoordinator(session_factory, gateway, bus=bus, clock=lambda: clock["now"])
    initiation = await coordinator.initiate_payment(quote.id, CLIENT_ID)

    clock["now"] = initiation.session.expires_at + timedelta(seconds=1)
    assert (await coordinator.check_status(quote.id)).status == "EXPIRED"
    gateway.mark_paid(initiation.session.pix_id)

    clock["now"] = initiation.session.expires_at + timedelta(hours=2)
    confirmed = await coordinator.reconcile_pending_payments()

    assert confirmed == 1
    assert gateway.status_calls == 1
    assert (await _quote(session_factory, quote.id)).client_confirmed is True
    [session] = await _load(session_factory, PaymentSession, quote_id=quote.id)
    assert session.status == "PAID"
    assert len(await _load(session_factory, WalletTransaction, quote_id=quote.id)) == 1


async def test_reconciliation_expires_unpaid_charge_after_asking_the_gateway(
    session_factory, conversation, make_quote, gateway, bus, client_profile
):
    quote = await make_quote(conversation, stage="completed")
    clock = {"now": utcnow()}
    coordinator = PaymentCoordinator(session_factory, gateway, bus=bus, clock=lambda: clock["now"])
    initiation = await coordinator.initiate_payment(quote.id, CLIENT_ID)

    clock["now"] = initiation.session.expires_at + timedelta(hours=2)

    assert await coordinator.reconcile_pending_payments() == 0
    assert gateway.status_calls == 1
    [session] = await _load(session_factory, PaymentSession, quote_id=quote.id)
    assert session.status == "EXPIRED"


async def test_simultaneous_checks_confirm_once_and_both_report_paid(
    session_factory, conversation, make_quote, coordinator, gateway, client_profile
):
    quote = await make_quote(conversation, stage="completed")
    initiation = await coordinator.initiate_payment(quote.id, CLIENT_ID)
    gateway.mark_paid(initiation.session.pix_id)

    checks = await asyncio.gather(coordinator.check_status(quote.id), coordinator.check_status(quote.id))

    assert [check.status for check in checks] == ["PAID", "PAID"]
    assert [check.to_dict()["session"]["pix_id"] for check in checks] == [initiation.session.pix_id] * 2
    assert len(await _load(session_factory, WalletTransaction, quote_id=quote.id)) == 1


async def test_late_paid_result_returns_refreshed_rows(
    session_factory, conversation, make_quote, coordinator, gateway, client_profile
):
    quote = await make_quote(conversation, stage="completed")
    initiation = await coordinator.initiate_payment(quote.id, CLIENT_ID)
    gateway.mark_paid(initiation.session.pix_id)

    async with session_factory() as db:
        stale_quote = await db.get(Quote, quote.id)
        [stale_session] = (
            await db.execute(select(PaymentSession).where(PaymentSession.quote_id == quote.id))
        ).scalars().all()
        assert (await coordinator.check_status(quote.id)).status == "PAID"

        result = await coordinator._apply_paid(db, stale_quote, stale_session, utcnow())

        assert result.client_confirmed is True
        assert stale_session.status == "PAID"
    assert len(await _load(session_factory, WalletTransaction, quote_id=quote.id)) == 1


async def test_confirmed_payment_releases_the_quote_lock(
    conversation, make_quote, coordinator, gateway, client_profile
):
    quote = await make_quote(conversation, stage="completed")
    initiation = await coordinator.initiate_payment(quote.id, CLIENT_ID)
    assert coordinator.has_lock(quote.id)

    gateway.mark_paid(initiation.session.pix_id)
    assert (await coordinator.check_status(quote.id)).status == "PAID"
    assert not coordinator.has_lock(quote.id)

    with pytest.raises(InvalidStateError):
        await coordinator.initiate_payment(quote.id, CLIENT_ID)
    assert not coordinator.has_lock(quote.id)


async def test_confirmed_quote_cannot_start_a_new_payment(
    session_factory, conversation, make_quote, coordinator, gateway, client_profile
):
    quote = await make_quote(conversation, stage="completed")
    initiation = await coordinator.initiate_payment(quote.id, CLIENT_ID)
    gateway.mark_paid(initiation.session.pix_id)
    await coordinator.check_status(quote.id)

    with pytest.raises(InvalidStateError):
        await coordinator.initiate_payment(quote.id, CLIENT_ID)
    assert len(await _load(session_factory, WalletTransaction)) == 1


async def test_only_the_client_pays(db, conversation, make_quote, coordinator, client_profile):
    quote = await make_quote(conversation, stage="completed")
    with pytest.raises(PermissionDeniedError):
        await coordinator.initiate_payment(quote.id, PROFESSIONAL_ID)
    with pytest.raises(PermissionDeniedError):
        await coordinator.provide_identity(quote.id, PROFESSIONAL_ID, VALID_CPF)


async def test_invalid_cpf_keeps_payment_waiting_for_identity(conversation, make_quote, coordinator, gateway):
    quote = await make_quote(conversation, stage="completed")
    await coordinator.initiate_payment(quote.id, CLIENT_ID)

    with pytest.raises(ValidationError):
        await coordinator.provide_identity(quote.id, CLIENT_ID, INVALID_CPF)

    assert coordinator.is_awaiting_identity(quote.id)
    assert gateway.create_calls == 0


async def test_accepted_quote_without_completion_has_no_payment(db, session_factory, conversation, make_quote, coordinator):
    quote = await make_quote(conversation)
    await respond_to_quote(db, quote.id, CLIENT_ID, "accepted")

    with pytest.raises(InvalidStateError):
        await coordinator.initiate_payment(quote.id, CLIENT_ID)
    check = await coordinator.check_status(quote.id)

    assert check.status == "NO_PIX"
    assert (await _quote(session_factory, quote.id)).client_confirmed is False
