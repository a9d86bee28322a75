import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from application.dtos.payments import CallbackResult, CallbackStatus
from application.services.reconciliation_service import ReconciliationService
from core.settings import ReconciliationSettings
from domain.payment.entity import (
    PaymentProviderConfig,
    PendingPaymentStatus,
    ReconciliationOutcome,
    TransactionStatus,
)
from domain.store.entity import Store


@pytest.fixture
def build_service(uow_factory, gateways, publisher, runner, now):
    """Service whose clock sits `minutes` after the pending payments were opened."""

    def build(*, production=True, minutes=5, **settings):
        moment = now + timedelta(minutes=minutes)
        return ReconciliationService(
            uow_factory,
            gateways,
            publisher=publisher,
            runner=runner,
            settings=ReconciliationSettings(**settings),
            is_production=production,
            clock=lambda: moment,
        )

    return build


async def _webhook(service, provider="payplus", store="acme"):
    return await service.handle_webhook(provider, store, b'{"transaction": {}}', {"user-agent": "PayPlus"})


@pytest.mark.asyncio
async def test_success_confirms_pending_payment(
    db, gateway, build_service, publisher, runner, provider_config, make_pending, make_callback
):
    pending = make_pending()
    gateway.callback = make_callback()
    service = build_service()

    result = await _webhook(service)
    await runner.drain()

    assert result.outcome == ReconciliationOutcome.CONFIRMED
    assert result.pending_payment_id == pending.id
    stored = db.pending[pending.id]
    assert stored.status == PendingPaymentStatus.CONFIRMED
    assert stored.payment_details["transaction_id"] == "tx-1001"
    assert stored.payment_details["approval_number"] == "0123456"
    assert stored.payment_details["card_last_four"] == "4242"

    txns = list(db.transactions.values())
    assert len(txns) == 1
    assert txns[0].status == TransactionStatus.SUCCESS
    assert txns[0].amount == Decimal("150.00")
    assert txns[0].provider_config_id == provider_config.id

    config = db.configs[provider_config.id]
    assert config.total_transactions == 1
    assert config.total_volume == Decimal("150.00")
    assert publisher.names() == ["PaymentConfirmed"]
    assert gateway.closed == 1


@pytest.mark.asyncio
async def test_repeated_delivery_is_idempotent(
    db, gateway, build_service, publisher, runner, provider_config, make_pending, make_callback
):
    pending = make_pending()
    gateway.callback = make_callback()
    service = build_service()

    outcomes = [(await _webhook(service)).outcome for _ in range(4)]
    await runner.drain()

    assert outcomes[0] == ReconciliationOutcome.CONFIRMED
    assert outcomes[1:] == [ReconciliationOutcome.ALREADY_PROCESSED] * 3
    assert len(db.transactions) == 1
    assert db.configs[provider_config.id].total_transactions == 1
    assert publisher.names() == ["PaymentConfirmed"]
    assert db.pending[pending.id].status == PendingPaymentStatus.CONFIRMED


@pytest.mark.asyncio
async def test_concurrent_deliveries_confirm_once(
    db, gateway, build_service, publisher, runner, provider_config, make_pending, make_callback
):
    make_pending()
    gateway.callback = make_callback()
    service = build_service()

    results = await asyncio.gather(*(_webhook(service) for _ in range(3)))
    await runner.drain()

    outcomes = sorted(r.outcome.value for r in results)
    assert outcomes.count(ReconciliationOutcome.CONFIRMED.value) == 1
    assert outcomes.count(ReconciliationOutcome.ALREADY_PROCESSED.value) == 2
    assert len(db.transactions) == 1
    assert db.configs[provider_config.id].total_transactions == 1
    assert db.configs[provider_config.id].total_volume == Decimal("150.00")
    assert publisher.names() == ["PaymentConfirmed"]


@pytest.mark.asyncio
async def test_duplicate_delivery_fills_in_approval_number(
    db, gateway, build_service, publisher, runner, provider_config, make_pending, make_callback
):
    pending = make_pending()
    gateway.callback = make_callback(approval_number=None)
    service = build_service()
    assert (await _webhook(service)).outcome == ReconciliationOutcome.CONFIRMED

    gateway.callback = make_callback(approval_number="7788990")
    result = await _webhook(service)
    await runner.drain()

    assert result.outcome == ReconciliationOutcome.ALREADY_PROCESSED
    assert result.pending_status == "confirmed"
    txn = next(iter(db.transactions.values()))
    assert txn.provider_approval_num == "7788990"
    assert db.pending[pending.id].payment_details["approval_number"] == "7788990"
    assert db.configs[provider_config.id].total_transactions == 1


@pytest.mark.asyncio
async def test_tampered_amount_is_rejected_in_production(
    db, gateway, build_service, publisher, runner, provider_config, make_pending, make_callback
):
    pending = make_pending()
    gateway.callback = make_callback(amount=Decimal("120.00"))
    service = build_service()

    result = await _webhook(service)
    await runner.drain()

    assert result.outcome == ReconciliationOutcome.AMOUNT_MISMATCH
    assert result.pending_payment_id == pending.id
    assert db.pending[pending.id].status == PendingPaymentStatus.PENDING
    txn = next(iter(db.transactions.values()))
    assert txn.status == TransactionStatus.PENDING
    assert txn.error_code == "AMOUNT_MISMATCH"
    assert db.configs[provider_config.id].total_transactions == 0
    assert publisher.events == []


@pytest.mark.asyncio
async def test_transaction_id_recorded_for_another_checkout_is_rejected(
    db, gateway, build_service, publisher, runner, provider_config, make_pending, make_callback
):
    first = make_pending()
    second = make_pending(correlation_id="page-req-2")
    service = build_service()
    gateway.callback = make_callback(amount=Decimal("1.00"))
    assert (await _webhook(service)).outcome == ReconciliationOutcome.AMOUNT_MISMATCH

    gateway.callback = make_callback(correlation_id="page-req-2")
    result = await _webhook(service)
    await runner.drain()

    assert result.outcome == ReconciliationOutcome.INVALID_PAYLOAD
    assert result.pending_payment_id == second.id
    assert db.pending[first.id].status == PendingPaymentStatus.PENDING
    assert db.pending[second.id].status == PendingPaymentStatus.PENDING
    assert db.pending[second.id].payment_details == {}
    txn = next(iter(db.transactions.values()))
    assert len(db.transactions) == 1
    assert txn.pending_payment_id == first.id
    assert txn.status == TransactionStatus.PENDING
    assert txn.amount == Decimal("1.00")
    assert db.configs[provider_config.id].total_transactions == 0
    assert publisher.events == []


@pytest.mark.asyncio
async def test_transaction_id_recorded_for_another_store_is_rejected(
    db, gateway, build_service, publisher, runner, provider_config, make_pending, make_callback
):
    acme_pending = make_pending()
    service = build_service()
    gateway.callback = make_callback(amount=Decimal("1.00"), approval_number=None, card_brand=None)
    assert (await _webhook(service)).outcome == ReconciliationOutcome.AMOUNT_MISMATCH

    bazaar = Store(id=db.next_id(), slug="bazaar", name="Bazaar", currency="ILS")
    db.stores[bazaar.id] = bazaar
    bazaar_config = PaymentProviderConfig(
        id=db.next_id(), store_id=bazaar.id, provider="payplus", credentials={"api_key": "k2"}, is_default=True
    )
    db.configs[bazaar_config.id] = bazaar_config
    bazaar_pending = make_pending(store_id=bazaar.id, correlation_id="page-req-9")

    gateway.callback = make_callback(correlation_id="page-req-9")
    result = await _webhook(service, store="bazaar")
    await runner.drain()

    assert result.outcome == ReconciliationOutcome.INVALID_PAYLOAD
    assert db.pending[bazaar_pending.id].status == PendingPaymentStatus.PENDING
    assert db.pending[acme_pending.id].status == PendingPaymentStatus.PENDING
    txn = next(iter(db.transactions.values()))
    assert txn.store_id != bazaar.id
    assert txn.provider_approval_num is None
    assert txn.card_brand is None
    assert txn.status == TransactionStatus.PENDING
    assert db.configs[bazaar_config.id].total_transactions == 0
    assert publisher.events == []


@pytest.mark.asyncio
async def test_amount_mismatch_only_logged_outside_production(
    db, gateway, build_service, publisher, runner, provider_config, make_pending, make_callback
):
    pending = make_pending()
    gateway.callback = make_callback(amount=Decimal("120.00"))
    service = build_service(production=False)

    result = await _webhook(service)
    await runner.drain()

    assert result.outcome == ReconciliationOutcome.CONFIRMED
    assert db.pending[pending.id].status == PendingPaymentStatus.CONFIRMED


@pytest.mark.asyncio
async def test_amount_within_tolerance_is_accepted(
    db, gateway, build_service, publisher, runner, provider_config, make_pending, make_callback
):
    make_pending()
    gateway.callback = make_callback(amount=Decimal("149.99"))
    service = build_service()

    result = await _webhook(service)

    assert result.outcome == ReconciliationOutcome.CONFIRMED


@pytest.mark.asyncio
async def test_currency_mismatch_is_rejected(
    db, gateway, build_service, publisher, runner, provider_config, make_pending, make_callback
):
    pending = make_pending()
    gateway.callback = make_callback(currency="USD")
    service = build_service()

    result = await _webhook(service)

    assert result.outcome == ReconciliationOutcome.AMOUNT_MISMATCH
    assert db.pending[pending.id].status == PendingPaymentStatus.PENDING


@pytest.mark.asyncio
async def test_unmatched_callback_writes_nothing(
    db, gateway, build_service, publisher, runner, provider_config, make_pending, make_callback
):
    make_pending()
    gateway.callback = make_callback(correlation_id="unknown-page", order_reference="NOPE")
    service = build_service()

    result = await _webhook(service)

    assert result.outcome == ReconciliationOutcome.NOT_MATCHED
    assert db.transactions == {}


@pytest.mark.asyncio
async def test_match_falls_back_to_order_reference(
    db, gateway, build_service, publisher, runner, provider_config, make_pending, make_callback
):
    pending = make_pending(correlation_id=None, order_reference="ORD-7731")
    gateway.callback = make_callback(correlation_id=None, order_reference=" ord-7731 ")
    service = build_service()

    result = await _webhook(service)

    assert result.outcome == ReconciliationOutcome.CONFIRMED
    assert result.pending_payment_id == pending.id


@pytest.mark.asyncio
async def test_callback_without_transaction_id_is_invalid(
    db, gateway, build_service, publisher, runner, provider_config, make_pending, make_callback
):
    make_pending()
    gateway.callback = make_callback(provider_transaction_id=None)
    service = build_service()

    result = await _webhook(service)

    assert result.outcome == ReconciliationOutcome.INVALID_PAYLOAD
    assert db.transactions == {}


@pytest.mark.asyncio
async def test_failed_callback_marks_pending_failed(
    db, gateway, build_service, publisher, runner, provider_config, make_pending, make_callback
):
    pending = make_pending()
    gateway.callback = make_callback(
        status=CallbackStatus.FAILED,
        success=False,
        error_code="006",
        error_message="Card declined",
    )
    service = build_service()

    result = await _webhook(service)
    await runner.drain()

    assert result.outcome == ReconciliationOutcome.FAILED
    stored = db.pending[pending.id]
    assert stored.status == PendingPaymentStatus.FAILED
    assert stored.failure_reason == "Card declined"
    txn = next(iter(db.transactions.values()))
    assert txn.status == TransactionStatus.FAILED
    assert txn.error_code == "006"
    assert publisher.names() == ["PaymentFailed"]
    assert db.configs[provider_config.id].total_transactions == 0


@pytest.mark.asyncio
async def test_processing_callback_leaves_pending_open(
    db, gateway, build_service, publisher, runner, provider_config, make_pending, make_callback
):
    pending = make_pending()
    gateway.callback = make_callback(status=CallbackStatus.PROCESSING, success=False)
    service = build_service()

    result = await _webhook(service)

    assert result.outcome == ReconciliationOutcome.IN_PROGRESS
    assert db.pending[pending.id].status == PendingPaymentStatus.PENDING
    assert next(iter(db.transactions.values())).status == TransactionStatus.PENDING

    # the final notification for the same gateway transaction still confirms
    gateway.callback = make_callback()
    assert (await _webhook(service)).outcome == ReconciliationOutcome.CONFIRMED


@pytest.mark.asyncio
async def test_late_success_is_recorded_but_not_confirmed(
    db, gateway, build_service, publisher, runner, provider_config, make_pending, make_callback
):
    pending = make_pending()
    gateway.callback = make_callback()
    service = build_service(minutes=45)

    result = await _webhook(service)
    await runner.drain()

    assert result.outcome == ReconciliationOutcome.EXPIRED
    assert result.pending_payment_id == pending.id
    assert db.pending[pending.id].status == PendingPaymentStatus.EXPIRED
    assert next(iter(db.transactions.values())).status == TransactionStatus.SUCCESS
    assert db.configs[provider_config.id].total_transactions == 0
    assert publisher.names() == ["LatePaymentReceived"]


@pytest.mark.asyncio
async def test_late_success_confirms_when_late_confirmations_accepted(
    db, gateway, build_service, publisher, runner, provider_config, make_pending, make_callback
):
    pending = make_pending()
    gateway.callback = make_callback()
    service = build_service(minutes=45, accept_late_confirmations=True)

    result = await _webhook(service)

    assert result.outcome == ReconciliationOutcome.CONFIRMED
    assert db.pending[pending.id].status == PendingPaymentStatus.CONFIRMED


@pytest.mark.asyncio
async def test_second_capture_for_confirmed_checkout_is_flagged(
    db, gateway, build_service, publisher, runner, provider_config, make_pending, make_callback
):
    pending = make_pending()
    service = build_service()
    gateway.callback = make_callback()
    assert (await _webhook(service)).outcome == ReconciliationOutcome.CONFIRMED

    gateway.callback = make_callback(provider_transaction_id="tx-2002")
    result = await _webhook(service)
    await runner.drain()

    assert result.outcome == ReconciliationOutcome.ALREADY_PROCESSED
    assert len(db.transactions) == 2
    assert all(t.status == TransactionStatus.SUCCESS for t in db.transactions.values())
    assert db.pending[pending.id].payment_details["transaction_id"] == "tx-1001"
    assert db.configs[provider_config.id].total_transactions == 1
    assert publisher.names() == ["PaymentConfirmed", "LatePaymentReceived"]


@pytest.mark.asyncio
async def test_capture_after_expiry_for_confirmed_checkout_is_not_late(
    db, gateway, build_service, publisher, runner, provider_config, make_pending, make_callback
):
    pending = make_pending()
    db.pending[pending.id].status = PendingPaymentStatus.CONFIRMED
    gateway.callback = make_callback(provider_transaction_id="tx-2002")
    service = build_service(minutes=45)

    result = await _webhook(service)
    await runner.drain()

    assert result.outcome == ReconciliationOutcome.ALREADY_PROCESSED
    assert result.pending_status == "confirmed"
    assert db.pending[pending.id].status == PendingPaymentStatus.CONFIRMED
    assert next(iter(db.transactions.values())).status == TransactionStatus.SUCCESS
    assert db.configs[provider_config.id].total_transactions == 0
    assert publisher.names() == ["LatePaymentReceived"]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "provider, store_slug",
    [("payplus", None), ("payplus", "ghost-store"), ("bitcoin", "acme"), ("paypal", "acme")],
)
async def test_routing_failures(
    db, gateway, build_service, publisher, runner, provider_config, make_pending, make_callback,
    provider, store_slug,
):
    make_pending()
    gateway.callback = make_callback()
    service = build_service()

    result = await service.handle_webhook(provider, store_slug, b"{}", {})

    assert result.outcome == ReconciliationOutcome.ROUTING_FAILED
    assert db.transactions == {}


@pytest.mark.asyncio
async def test_inactive_provider_config_is_a_routing_failure(
    db, gateway, build_service, publisher, runner, provider_config, make_pending, make_callback
):
    make_pending()
    db.configs[provider_config.id].is_active = False
    gateway.callback = make_callback()
    service = build_service()

    result = await _webhook(service)

    assert result.outcome == ReconciliationOutcome.ROUTING_FAILED


@pytest.mark.asyncio
async def test_invalid_signature_rejected_in_production(
    db, gateway, build_service, publisher, runner, provider_config, make_pending, make_callback
):
    pending = make_pending()
    gateway.valid = False
    gateway.callback = make_callback()
    service = build_service()

    result = await _webhook(service)

    assert result.outcome == ReconciliationOutcome.UNAUTHORIZED
    assert db.transactions == {}
    assert db.pending[pending.id].status == PendingPaymentStatus.PENDING


@pytest.mark.asyncio
async def test_invalid_signature_bypassed_outside_production(
    db, gateway, build_service, publisher, runner, provider_config, make_pending, make_callback
):
    make_pending()
    gateway.valid = False
    gateway.callback = make_callback()
    service = build_service(production=False)

    result = await _webhook(service)

    assert result.outcome == ReconciliationOutcome.CONFIRMED


@pytest.mark.asyncio
async def test_lookup_verified_gateway_without_lookup_is_unauthorized(
    db, gateway, build_service, publisher, runner, provider_config, make_pending, make_callback
):
    make_pending()
    gateway.verify_via_lookup = True
    gateway.callback = make_callback()
    gateway.lookup = None
    service = build_service()

    result = await _webhook(service)

    assert result.outcome == ReconciliationOutcome.UNAUTHORIZED
    assert gateway.lookup_calls
    assert db.transactions == {}


@pytest.mark.asyncio
async def test_lookup_amount_overrides_callback_amount(
    db, gateway, build_service, publisher, runner, provider_config, make_pending, make_callback
):
    make_pending()
    gateway.verify_via_lookup = True
    gateway.callback = make_callback(amount=Decimal("150.00"))
    gateway.lookup = make_callback(amount=Decimal("15.00"))
    service = build_service()

    result = await _webhook(service)

    assert result.outcome == ReconciliationOutcome.AMOUNT_MISMATCH


@pytest.mark.asyncio
async def test_verified_redirect_confirms(
    db, gateway, build_service, publisher, runner, provider_config, make_pending, make_callback
):
    pending = make_pending()
    gateway.redirect = CallbackResult(
        provider="payplus", status=CallbackStatus.SUCCESS, provider_transaction_id="tx-1001",
        correlation_id="page-req-1",
    )
    gateway.lookup = make_callback()
    service = build_service()

    result = await service.handle_redirect("payplus", "acme", {"page_request_uid": "page-req-1"})
    await runner.drain()

    assert result.outcome == ReconciliationOutcome.CONFIRMED
    assert result.is_success
    assert db.pending[pending.id].status == PendingPaymentStatus.CONFIRMED


@pytest.mark.asyncio
@pytest.mark.parametrize("webhook_first", [True, False])
async def test_concurrent_webhook_and_redirect_confirm_once(
    db, gateway, build_service, publisher, runner, provider_config, make_pending, make_callback, webhook_first
):
    pending = make_pending()
    gateway.callback = make_callback()
    gateway.redirect = CallbackResult(
        provider="payplus", status=CallbackStatus.SUCCESS, provider_transaction_id="tx-1001",
        correlation_id="page-req-1",
    )
    gateway.lookup = make_callback()
    service = build_service()

    webhook = _webhook(service)
    redirect = service.handle_redirect("payplus", "acme", {"page_request_uid": "page-req-1"})
    calls = (webhook, redirect) if webhook_first else (redirect, webhook)
    results = await asyncio.gather(*calls)
    await runner.drain()

    outcomes = [r.outcome for r in results]
    assert outcomes.count(ReconciliationOutcome.CONFIRMED) == 1
    assert outcomes.count(ReconciliationOutcome.ALREADY_PROCESSED) == 1
    assert len(db.transactions) == 1
    assert next(iter(db.transactions.values())).status == TransactionStatus.SUCCESS
    assert db.pending[pending.id].status == PendingPaymentStatus.CONFIRMED
    assert db.configs[provider_config.id].total_transactions == 1
    assert publisher.names() == ["PaymentConfirmed"]


@pytest.mark.asyncio
async def test_unverified_redirect_is_rejected(
    db, gateway, build_service, publisher, runner, provider_config, make_pending, make_callback
):
    pending = make_pending()
    gateway.redirect = make_callback()
    gateway.lookup = None
    service = build_service()

    result = await service.handle_redirect("payplus", "acme", {"page_request_uid": "page-req-1"})

    assert result.outcome == ReconciliationOutcome.UNAUTHORIZED
    assert not result.is_success
    assert db.pending[pending.id].status == PendingPaymentStatus.PENDING


@pytest.mark.asyncio
async def test_cancelled_redirect_is_not_overridden_by_pending_lookup(
    db, gateway, build_service, publisher, runner, provider_config, make_pending, make_callback
):
    pending = make_pending()
    gateway.redirect = CallbackResult(
        provider="payplus", status=CallbackStatus.CANCELLED, provider_transaction_id="tx-1001",
        correlation_id="page-req-1", error_code="CANCELLED",
    )
    gateway.lookup = make_callback(status=CallbackStatus.PENDING, success=False)
    service = build_service()

    result = await service.handle_redirect("payplus", "acme", {})

    assert result.outcome == ReconciliationOutcome.FAILED
    assert db.pending[pending.id].status == PendingPaymentStatus.FAILED
