"""
Payment event publishers.

`LoggingPaymentEventPublisher` only records the event; the Celery publisher
hands it to the `payments.notify_event` task so notification e-mails and
order-creation hooks run out of the request path.
"""
from __future__ import annotations

from typing import Optional

from application.ports.event_publisher import PaymentEventPublisher
from core.config import settings
from core.logging_config import get_logger
from domain.payment.events import LatePaymentReceived, PaymentEvent


logger = get_logger(__name__)


class LoggingPaymentEventPublisher:
    async def publish(self, event: PaymentEvent) -> None:
        payload = event.to_payload()
        # structlog reserves the "event" key for the message
        payload["event_name"] = payload.pop("event")
        if isinstance(event, LatePaymentReceived):
            logger.error("payment_event", **payload)
        else:
            logger.info("payment_event", **payload)


class CeleryPaymentEventPublisher:
    def __init__(self, dispatcher=None) -> None:
        if dispatcher is None:
            from infrastructure.tasks.utils.dispatcher import TaskDispatcher

            dispatcher = TaskDispatcher()
        self._dispatcher = dispatcher

    async def publish(self, event: PaymentEvent) -> None:
        payload = event.to_payload()
        self._dispatcher.notify_payment_event(payload)
        logger.info("payment_event_enqueued", event_name=event.name, event_id=event.event_id)


def build_event_publisher(redis_url: Optional[str] = None) -> PaymentEventPublisher:
    """有 broker 时走 Celery，否则仅记录日志"""
    if redis_url is None:
        redis_url = settings.redis.url
    if redis_url:
        return CeleryPaymentEventPublisher()
    return LoggingPaymentEventPublisher()
