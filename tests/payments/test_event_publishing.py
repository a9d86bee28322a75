from decimal import Decimal

import pytest

from domain.payment.events import LatePaymentReceived, PaymentConfirmed
from infrastructure.events.payment_publisher import (
    CeleryPaymentEventPublisher,
    LoggingPaymentEventPublisher,
    build_event_publisher,
)
from infrastructure.tasks.config.celery import celery_app
from infrastructure.tasks.utils.dispatcher import TaskDispatcher


class RecordingDispatcher:
    def __init__(self):
        self.payloads = []

    def notify_payment_event(self, payload):
        self.payloads.append(payload)


def test_publisher_follows_broker_configuration():
    assert isinstance(build_event_publisher("redis://localhost:6379/0"), CeleryPaymentEventPublisher)
    assert isinstance(build_event_publisher(""), LoggingPaymentEventPublisher)


@pytest.mark.asyncio
async def test_celery_publisher_serializes_event():
    dispatcher = RecordingDispatcher()
    publisher = CeleryPaymentEventPublisher(dispatcher)
    event = PaymentConfirmed(
        store_id=1, provider="payplus", pending_payment_id="pp-1", provider_transaction_id="tx-1",
        amount=str(Decimal("150.00")), currency="ILS",
    )

    await publisher.publish(event)

    (payload,) = dispatcher.payloads
    assert payload["event"] == "PaymentConfirmed"
    assert payload["amount"] == "150.00"
    assert payload["event_id"] == event.event_id
    assert isinstance(payload["occurred_at"], str)


@pytest.mark.asyncio
async def test_logging_publisher_accepts_late_payment():
    await LoggingPaymentEventPublisher().publish(
        LatePaymentReceived(store_id=1, provider="payplus", amount="150.00", currency="ILS")
    )


def test_dispatcher_sends_by_task_name(monkeypatch):
    sent = []
    monkeypatch.setattr(celery_app, "send_task", lambda name, args=(), kwargs=None: sent.append((name, kwargs)))

    TaskDispatcher().notify_payment_event({"event": "PaymentFailed"})

    assert sent == [("payments.notify_event", {"payload": {"event": "PaymentFailed"}})]
    assert celery_app.conf.task_routes["payments.notify_event"] == {"queue": "events"}
