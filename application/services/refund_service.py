"""
Operator-initiated refunds.

Preconditions are checked before any gateway call; the ledger and the order
are only written after the gateway confirmed the refund, in one Unit of Work.
"""
from __future__ import annotations

import hashlib
from decimal import Decimal
from typing import Callable, Optional

from application.dtos.checkout import RefundResponseDTO
from application.dtos.payments import RefundRequest
from application.ports.event_publisher import PaymentEventPublisher
from application.ports.payment_gateway import PaymentGatewayFactory
from application.services.background import DetachedTaskRunner
from core.logging_config import get_logger
from domain.common.exceptions import (
    OrderNotFoundException,
    ProviderConfigNotFoundException,
    StoreNotFoundException,
)
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.order.entity import OrderFinancialStatus
from domain.payment.entity import (
    PaymentTransaction,
    TransactionStatus,
    TransactionType,
    _utcnow,
    quantize_money,
)
from domain.payment.events import PaymentRefunded
from domain.payment.service import (
    PaymentGatewayError,
    PaymentReconciliationPolicy,
    RefundAmountInvalidError,
    RefundNotAllowedError,
)


logger = get_logger(__name__)


def _ensure_idempotency_key(req: RefundRequest, *, provider: str, prior_refunds: int) -> None:
    if req.idempotency_key:
        return
    # 由业务标识稳定推导（不含时间戳），同一笔退款重试得到相同的 key
    base = (
        f"refund|{req.order_id}|{req.provider_transaction_id}|{req.amount}"
        f"|{req.currency}|{provider.lower()}|{prior_refunds}"
    )
    req.idempotency_key = hashlib.sha256(base.encode("utf-8")).hexdigest()


class RefundService:
    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        gateways: PaymentGatewayFactory,
        *,
        publisher: Optional[PaymentEventPublisher] = None,
        runner: Optional[DetachedTaskRunner] = None,
        clock=_utcnow,
    ) -> None:
        self._uow_factory = uow_factory
        self._gateways = gateways
        self._publisher = publisher
        self._runner = runner or DetachedTaskRunner()
        self._policy = PaymentReconciliationPolicy()
        self._clock = clock

    async def refund_order(
        self,
        store_slug: str,
        order_id: int,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
    ) -> RefundResponseDTO:
        async with self._uow_factory(readonly=True) as uow:
            store = await uow.store_repository.get_by_slug(store_slug)
            if store is None:
                raise StoreNotFoundException(store_slug)
            order = await uow.order_repository.get_by_id(store.id, order_id)
            if order is None:
                raise OrderNotFoundException(order_id)
            if not order.is_refundable:
                raise RefundNotAllowedError(
                    f"Order in state {order.financial_status.value} cannot be refunded",
                    order_id=order.id,
                    state=order.financial_status.value,
                )
            charge = None
            if order.pending_payment_id:
                charge = await uow.transaction_repository.get_successful_charge(order.pending_payment_id)
            if charge is None or not charge.provider_transaction_id:
                raise RefundNotAllowedError(
                    "Order has no successful charge to refund",
                    order_id=order.id,
                    state=order.financial_status.value,
                )
            refunds = await uow.transaction_repository.list_refunds(charge.id)
            config = await uow.provider_config_repository.get_active(store.id, charge.provider)
            if config is None:
                raise ProviderConfigNotFoundException(charge.provider)

        remaining = self._policy.refundable_amount(charge, refunds)
        refund_amount = remaining if amount is None else quantize_money(amount)
        if refund_amount <= 0 or refund_amount > remaining:
            raise RefundAmountInvalidError(refund_amount, remaining)

        prior = sum(1 for r in refunds if r.status == TransactionStatus.SUCCESS)
        request = RefundRequest(
            provider_transaction_id=charge.provider_transaction_id,
            amount=refund_amount,
            currency=charge.currency,
            reason=reason,
            order_id=order.id,
        )
        _ensure_idempotency_key(request, provider=charge.provider, prior_refunds=prior)
        logger.info(
            "payment_refund_request",
            order_id=order.id,
            provider=charge.provider,
            amount=str(refund_amount),
            idempotency_key=request.idempotency_key,
        )

        gateway = self._gateways.create(charge.provider, config)
        try:
            result = await gateway.refund(request)
        finally:
            await gateway.aclose()
        if not result.success:
            logger.warning(
                "payment_refund_rejected",
                order_id=order.id,
                provider=charge.provider,
                error_code=result.error_code,
                error_message=result.error_message,
            )
            raise PaymentGatewayError(
                result.error_message or "Refund rejected by gateway",
                provider=charge.provider,
                provider_code=result.error_code,
            )

        left = remaining - refund_amount
        new_status = OrderFinancialStatus.REFUNDED if left <= 0 else OrderFinancialStatus.PARTIALLY_REFUNDED
        now = self._clock()
        async with self._uow_factory() as uow:
            refund_txn = await uow.transaction_repository.create(
                PaymentTransaction(
                    id=None,
                    store_id=store.id,
                    provider=charge.provider,
                    type=TransactionType.REFUND,
                    status=TransactionStatus.SUCCESS,
                    amount=refund_amount,
                    currency=charge.currency,
                    provider_transaction_id=result.refund_id,
                    pending_payment_id=charge.pending_payment_id,
                    order_id=order.id,
                    provider_config_id=config.id,
                    parent_transaction_id=charge.id,
                    provider_response=result.raw,
                    processed_at=now,
                )
            )
            moved = await uow.order_repository.transition_financial_status(
                order.id, expected=[order.financial_status], new_status=new_status
            )
        if moved:
            order.financial_status = new_status
        else:
            # 网关已退款，流水照常记录；订单状态被并发修改，需人工核对
            logger.error(
                "order_refund_state_conflict",
                order_id=order.id,
                expected=order.financial_status.value,
                wanted=new_status.value,
            )
        logger.info(
            "payment_refund_recorded",
            order_id=order.id,
            refund_transaction_id=refund_txn.id,
            refund_id=result.refund_id,
            remaining=str(left),
        )

        if self._publisher is not None:
            event = PaymentRefunded(
                store_id=store.id,
                provider=charge.provider,
                pending_payment_id=charge.pending_payment_id,
                provider_transaction_id=charge.provider_transaction_id,
                order_id=order.id,
                refund_id=result.refund_id,
                amount=str(refund_amount),
                currency=charge.currency,
            )
            publisher = self._publisher
            self._runner.spawn("publish:PaymentRefunded", lambda: publisher.publish(event))

        return RefundResponseDTO.build(
            order,
            refund_transaction_id=refund_txn.id,
            refund_id=result.refund_id,
            amount=refund_amount,
            remaining=left,
        )
