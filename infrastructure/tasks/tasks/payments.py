"""Payment related Celery tasks"""
from __future__ import annotations

import asyncio
from typing import Any, Dict

from celery import shared_task

from ..utils.base_task import BaseTask
from core.logging_config import get_logger

logger = get_logger(__name__)


async def _expire_pending() -> int:
    from application.services.pending_payment_service import PendingPaymentService
    from core.settings import payment_settings
    from infrastructure.external.payments import DefaultPaymentGatewayFactory
    from infrastructure.unit_of_work import SQLAlchemyUnitOfWork

    service = PendingPaymentService(
        SQLAlchemyUnitOfWork,
        DefaultPaymentGatewayFactory(),
        settings=payment_settings.reconciliation,
    )
    return await service.expire_stale()


@shared_task(name="payments.expire_pending", bind=True, base=BaseTask, max_retries=3, default_retry_delay=30)
def expire_pending_payments(self) -> Dict[str, int]:
    """Move overdue pending payments to expired (runs from beat)."""
    try:
        expired = asyncio.run(_expire_pending())
    except Exception as exc:  # pragma: no cover
        logger.error("pending_payment_sweep_failed", error=str(exc))
        raise self.retry(exc=exc)
    return {"expired": expired}


@shared_task(
    name="payments.notify_event",
    bind=True,
    base=BaseTask,
    autoretry_for=(Exception,),
    retry_backoff=True,
    retry_backoff_max=600,
    retry_jitter=True,
    retry_kwargs={"max_retries": 5},
)
def notify_payment_event(self, payload: Dict[str, Any]) -> None:
    """Fan a payment event out to notification consumers.

    Late payments need a manual refund, so they are logged at error level for
    alerting; the rest are informational.
    """
    data = dict(payload or {})
    name = data.pop("event", "PaymentEvent")
    if name == "LatePaymentReceived":
        logger.error("payment_event_notified", event_name=name, **data)
    else:
        logger.info("payment_event_notified", event_name=name, **data)
