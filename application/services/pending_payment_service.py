"""
待支付记录应用服务 - 结账发起、绑定渠道请求ID、查询、领取已确认记录、过期清理
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Optional

from application.dtos.checkout import (
    PendingPaymentCreateDTO,
    PendingPaymentResponseDTO,
)
from application.ports.payment_gateway import PaymentGatewayFactory
from core.logging_config import get_logger
from core.settings import ReconciliationSettings
from domain.common.exceptions import (
    DomainValidationException,
    PendingPaymentAlreadyClaimedException,
    PendingPaymentNotFoundException,
    ProviderConfigNotFoundException,
    StoreNotFoundException,
)
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.entity import PendingPayment, PendingPaymentStatus, _utcnow
from domain.store.entity import Store


logger = get_logger(__name__)


class PendingPaymentService:
    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        gateways: PaymentGatewayFactory,
        *,
        settings: Optional[ReconciliationSettings] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._uow_factory = uow_factory
        self._gateways = gateways
        self._settings = settings or ReconciliationSettings()
        self._clock = clock

    @staticmethod
    async def _store(uow: AbstractUnitOfWork, store_slug: str) -> Store:
        store = await uow.store_repository.get_by_slug(store_slug)
        if store is None or not store.is_active:
            raise StoreNotFoundException(store_slug)
        return store

    @staticmethod
    async def _payment(uow: AbstractUnitOfWork, store: Store, pending_payment_id: str) -> PendingPayment:
        payment = await uow.pending_payment_repository.get_by_id(pending_payment_id)
        # 跨店铺访问一律视为不存在
        if payment is None or payment.store_id != store.id:
            raise PendingPaymentNotFoundException(pending_payment_id)
        return payment

    async def create(self, store_slug: str, dto: PendingPaymentCreateDTO) -> PendingPaymentResponseDTO:
        """
        创建待支付记录

        金额只依据行项目、运费、折扣与余额抵扣在服务端计算，调用方给出的合计不被信任。
        """
        provider = self._gateways.canonical(dto.provider)
        ttl = timedelta(minutes=dto.ttl_minutes or self._settings.pending_ttl_minutes)
        async with self._uow_factory() as uow:
            store = await self._store(uow, store_slug)
            config = await uow.provider_config_repository.get_active(store.id, provider)
            if config is None:
                raise ProviderConfigNotFoundException(provider)
            payment = PendingPayment.open(
                store_id=store.id,
                provider=provider,
                currency=dto.currency or store.currency,
                items=[item.to_entity() for item in dto.items],
                customer=dto.customer.to_entity(),
                ttl=ttl,
                discount_amount=dto.discount_amount,
                shipping_cost=dto.shipping_cost,
                credit_used=dto.credit_used,
                order_reference=dto.order_reference,
                correlation_id=dto.correlation_id,
                now=self._clock(),
            )
            payment = await uow.pending_payment_repository.create(payment)
        logger.info(
            "checkout_started",
            store=store_slug,
            pending_payment_id=payment.id,
            provider=provider,
            expected_total=str(payment.expected_total),
            currency=payment.currency,
        )
        return PendingPaymentResponseDTO.from_entity(payment)

    async def attach_correlation(
        self, store_slug: str, pending_payment_id: str, correlation_id: str
    ) -> PendingPaymentResponseDTO:
        """网关创建支付页后回填其请求ID，仅 pending 状态可绑定"""
        async with self._uow_factory() as uow:
            store = await self._store(uow, store_slug)
            await self._payment(uow, store, pending_payment_id)
            attached = await uow.pending_payment_repository.set_correlation_id(pending_payment_id, correlation_id)
            if not attached:
                raise DomainValidationException("只有待支付状态的记录可以绑定渠道请求ID", field="status")
            payment = await uow.pending_payment_repository.get_by_id(pending_payment_id)
        return PendingPaymentResponseDTO.from_entity(payment)

    async def get(self, store_slug: str, pending_payment_id: str) -> PendingPaymentResponseDTO:
        async with self._uow_factory(readonly=True) as uow:
            store = await self._store(uow, store_slug)
            payment = await self._payment(uow, store, pending_payment_id)
        return PendingPaymentResponseDTO.from_entity(payment)

    async def list_confirmed(self, store_slug: str, limit: int = 100) -> list[PendingPaymentResponseDTO]:
        """已确认但尚未被下单服务领取的记录"""
        async with self._uow_factory(readonly=True) as uow:
            store = await self._store(uow, store_slug)
            payments = await uow.pending_payment_repository.list_confirmed_unclaimed(store.id, limit=limit)
        return [PendingPaymentResponseDTO.from_entity(p) for p in payments]

    async def claim(self, store_slug: str, pending_payment_id: str) -> PendingPaymentResponseDTO:
        """下单服务领取已确认记录，同一记录只能被领取一次"""
        async with self._uow_factory() as uow:
            store = await self._store(uow, store_slug)
            current = await self._payment(uow, store, pending_payment_id)
            if current.status != PendingPaymentStatus.CONFIRMED:
                raise DomainValidationException("只有已确认的记录可以被领取", field="status")
            claimed = await uow.pending_payment_repository.claim(pending_payment_id, self._clock())
            if not claimed:
                raise PendingPaymentAlreadyClaimedException(pending_payment_id)
            payment = await uow.pending_payment_repository.get_by_id(pending_payment_id)
        logger.info("pending_payment_claimed", store=store_slug, pending_payment_id=pending_payment_id)
        return PendingPaymentResponseDTO.from_entity(payment)

    async def expire_stale(self, now: Optional[datetime] = None) -> int:
        """分批将超时的 pending 记录置为 expired，返回总条数"""
        now = now or self._clock()
        batch = self._settings.expiry_sweep_batch
        total = 0
        while True:
            async with self._uow_factory() as uow:
                count = await uow.pending_payment_repository.expire_overdue(now, limit=batch)
            total += count
            if count < batch:
                break
        if total:
            logger.info("pending_payments_expired", count=total)
        return total
