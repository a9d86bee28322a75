"""
支付仓储实现 - 使用SQLAlchemy实现数据访问

状态迁移统一使用条件 UPDATE（WHERE status = 'pending'），以 rowcount 判断是否抢到迁移。
"""
from typing import Optional, List
from datetime import datetime
from decimal import Decimal
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update, delete, func
from sqlalchemy.exc import IntegrityError

from domain.payment.entity import (
    CartLineItem,
    CustomerContact,
    PaymentProviderConfig,
    PaymentTransaction,
    PendingPayment,
    PendingPaymentStatus,
    TransactionStatus,
    TransactionType,
)
from domain.payment.repository import (
    PaymentProviderConfigRepository,
    PaymentTransactionRepository,
    PendingPaymentRepository,
)
from domain.payment.service import TransactionAlreadyRecordedError
from infrastructure.models.payment import (
    PaymentProviderConfigModel,
    PaymentTransactionModel,
    PendingPaymentModel,
)
from core.logging_config import get_logger


logger = get_logger(__name__)

_PENDING = PendingPaymentStatus.PENDING.value


def _decimal(value) -> Decimal:
    return Decimal(str(value)) if value is not None else Decimal("0")


class SQLAlchemyPendingPaymentRepository(PendingPaymentRepository):
    """待支付记录仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: PendingPaymentModel) -> PendingPayment:
        """将数据库模型转换为领域实体"""
        return PendingPayment(
            id=model.id,
            store_id=model.store_id,
            provider=model.provider,
            currency=model.currency,
            items=[CartLineItem.from_dict(i) for i in (model.items or [])],
            customer=CustomerContact.from_dict(model.customer),
            status=PendingPaymentStatus(model.status),
            correlation_id=model.correlation_id,
            order_reference=model.order_reference,
            subtotal=_decimal(model.subtotal),
            discount_amount=_decimal(model.discount_amount),
            shipping_cost=_decimal(model.shipping_cost),
            credit_used=_decimal(model.credit_used),
            expected_total=_decimal(model.expected_total),
            payment_details=dict(model.payment_details or {}),
            failure_reason=model.failure_reason,
            expires_at=model.expires_at,
            confirmed_at=model.confirmed_at,
            consumed_at=model.consumed_at,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    def _to_model(self, entity: PendingPayment) -> PendingPaymentModel:
        """将领域实体转换为数据库模型"""
        return PendingPaymentModel(
            id=entity.id,
            store_id=entity.store_id,
            provider=entity.provider,
            currency=entity.currency,
            items=[i.to_dict() for i in entity.items],
            customer=entity.customer.to_dict(),
            status=entity.status.value,
            correlation_id=entity.correlation_id,
            order_reference=entity.order_reference,
            subtotal=entity.subtotal,
            discount_amount=entity.discount_amount,
            shipping_cost=entity.shipping_cost,
            credit_used=entity.credit_used,
            expected_total=entity.expected_total,
            payment_details=entity.payment_details,
            failure_reason=entity.failure_reason,
            expires_at=entity.expires_at,
            confirmed_at=entity.confirmed_at,
            consumed_at=entity.consumed_at,
            created_at=entity.created_at,
            updated_at=entity.updated_at,
        )

    async def create(self, payment: PendingPayment) -> PendingPayment:
        db_payment = self._to_model(payment)
        self.session.add(db_payment)
        await self.session.flush()
        await self.session.refresh(db_payment)
        logger.info(
            "pending_payment_created",
            pending_payment_id=db_payment.id,
            store_id=db_payment.store_id,
            provider=db_payment.provider,
            expected_total=str(db_payment.expected_total),
        )
        return self._to_entity(db_payment)

    async def get_by_id(self, payment_id: str) -> Optional[PendingPayment]:
        result = await self.session.execute(
            select(PendingPaymentModel)
            .where(PendingPaymentModel.id == payment_id)
            .execution_options(populate_existing=True)
        )
        db_payment = result.scalar_one_or_none()
        return self._to_entity(db_payment) if db_payment else None

    async def get_by_correlation_id(self, store_id: int, correlation_id: str) -> Optional[PendingPayment]:
        result = await self.session.execute(
            select(PendingPaymentModel).execution_options(populate_existing=True).where(
                PendingPaymentModel.store_id == store_id,
                PendingPaymentModel.correlation_id == correlation_id,
            )
        )
        db_payment = result.scalar_one_or_none()
        return self._to_entity(db_payment) if db_payment else None

    async def list_recent(self, store_id: int, limit: int = 100) -> List[PendingPayment]:
        result = await self.session.execute(
            select(PendingPaymentModel).execution_options(populate_existing=True)
            .where(PendingPaymentModel.store_id == store_id)
            .order_by(PendingPaymentModel.created_at.desc())
            .limit(limit)
        )
        return [self._to_entity(p) for p in result.scalars().all()]

    async def list_confirmed_unclaimed(self, store_id: int, limit: int = 100) -> List[PendingPayment]:
        result = await self.session.execute(
            select(PendingPaymentModel).execution_options(populate_existing=True)
            .where(
                PendingPaymentModel.store_id == store_id,
                PendingPaymentModel.status == PendingPaymentStatus.CONFIRMED.value,
                PendingPaymentModel.consumed_at.is_(None),
            )
            .order_by(PendingPaymentModel.confirmed_at.asc())
            .limit(limit)
        )
        return [self._to_entity(p) for p in result.scalars().all()]

    async def _transition(self, payment_id: str, *conditions, **values) -> bool:
        result = await self.session.execute(
            update(PendingPaymentModel)
            .where(PendingPaymentModel.id == payment_id, *conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def set_correlation_id(self, payment_id: str, correlation_id: str) -> bool:
        return await self._transition(
            payment_id,
            PendingPaymentModel.status == _PENDING,
            correlation_id=correlation_id,
        )

    async def confirm(
        self,
        payment_id: str,
        payment_details: dict,
        confirmed_at: datetime,
        *,
        not_expired_at: Optional[datetime] = None,
    ) -> bool:
        conditions = [PendingPaymentModel.status == _PENDING]
        if not_expired_at is not None:
            conditions.append(
                (PendingPaymentModel.expires_at.is_(None)) | (PendingPaymentModel.expires_at > not_expired_at)
            )
        won = await self._transition(
            payment_id,
            *conditions,
            status=PendingPaymentStatus.CONFIRMED.value,
            payment_details=payment_details,
            confirmed_at=confirmed_at,
            updated_at=confirmed_at,
        )
        if won:
            logger.info("pending_payment_confirmed", pending_payment_id=payment_id)
        return won

    async def mark_failed(self, payment_id: str, reason: Optional[str] = None) -> bool:
        return await self._transition(
            payment_id,
            PendingPaymentModel.status == _PENDING,
            status=PendingPaymentStatus.FAILED.value,
            failure_reason=reason,
        )

    async def mark_expired(self, payment_id: str) -> bool:
        return await self._transition(
            payment_id,
            PendingPaymentModel.status == _PENDING,
            status=PendingPaymentStatus.EXPIRED.value,
        )

    async def merge_payment_details(self, payment_id: str, details: dict) -> None:
        result = await self.session.execute(
            select(PendingPaymentModel)
            .where(PendingPaymentModel.id == payment_id)
            .execution_options(populate_existing=True)
        )
        db_payment = result.scalar_one_or_none()
        if not db_payment:
            return
        merged = dict(db_payment.payment_details or {})
        merged.update({k: v for k, v in details.items() if v not in (None, "")})
        # JSON 列需要整体重新赋值才会被标记为脏
        db_payment.payment_details = merged
        await self.session.flush()

    async def claim(self, payment_id: str, claimed_at: datetime) -> bool:
        return await self._transition(
            payment_id,
            PendingPaymentModel.status == PendingPaymentStatus.CONFIRMED.value,
            PendingPaymentModel.consumed_at.is_(None),
            consumed_at=claimed_at,
        )

    async def expire_overdue(self, now: datetime, limit: int = 500) -> int:
        overdue = (
            select(PendingPaymentModel.id)
            .where(
                PendingPaymentModel.status == _PENDING,
                PendingPaymentModel.expires_at.is_not(None),
                PendingPaymentModel.expires_at <= now,
            )
            .limit(limit)
            .scalar_subquery()
        )
        result = await self.session.execute(
            update(PendingPaymentModel)
            .where(PendingPaymentModel.id.in_(overdue), PendingPaymentModel.status == _PENDING)
            .values(status=PendingPaymentStatus.EXPIRED.value, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0


class SQLAlchemyPaymentTransactionRepository(PaymentTransactionRepository):
    """交易流水仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: PaymentTransactionModel) -> PaymentTransaction:
        return PaymentTransaction(
            id=model.id,
            store_id=model.store_id,
            provider=model.provider,
            type=TransactionType(model.type),
            status=TransactionStatus(model.status),
            amount=_decimal(model.amount),
            currency=model.currency,
            provider_transaction_id=model.provider_transaction_id,
            pending_payment_id=model.pending_payment_id,
            order_id=model.order_id,
            provider_config_id=model.provider_config_id,
            parent_transaction_id=model.parent_transaction_id,
            provider_approval_num=model.provider_approval_num,
            card_brand=model.card_brand,
            card_last_four=model.card_last_four,
            provider_response=dict(model.provider_response or {}),
            error_code=model.error_code,
            error_message=model.error_message,
            processed_at=model.processed_at,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    def _to_model(self, entity: PaymentTransaction) -> PaymentTransactionModel:
        return PaymentTransactionModel(
            id=entity.id,
            store_id=entity.store_id,
            provider=entity.provider,
            type=entity.type.value,
            status=entity.status.value,
            amount=entity.amount,
            currency=entity.currency,
            provider_transaction_id=entity.provider_transaction_id,
            pending_payment_id=entity.pending_payment_id,
            order_id=entity.order_id,
            provider_config_id=entity.provider_config_id,
            parent_transaction_id=entity.parent_transaction_id,
            provider_approval_num=entity.provider_approval_num,
            card_brand=entity.card_brand,
            card_last_four=entity.card_last_four,
            provider_response=entity.provider_response,
            error_code=entity.error_code,
            error_message=entity.error_message,
            processed_at=entity.processed_at,
            created_at=entity.created_at,
            updated_at=entity.updated_at,
        )

    async def create(self, transaction: PaymentTransaction) -> PaymentTransaction:
        try:
            db_txn = self._to_model(transaction)
            self.session.add(db_txn)
            await self.session.flush()
            await self.session.refresh(db_txn)
            logger.info(
                "payment_transaction_created",
                transaction_id=db_txn.id,
                provider=db_txn.provider,
                provider_transaction_id=db_txn.provider_transaction_id,
                type=db_txn.type,
                status=db_txn.status,
            )
            return self._to_entity(db_txn)
        except IntegrityError:
            await self.session.rollback()
            logger.warning(
                "payment_transaction_conflict",
                provider=transaction.provider,
                provider_transaction_id=transaction.provider_transaction_id,
            )
            raise TransactionAlreadyRecordedError(transaction.provider, transaction.provider_transaction_id)

    async def get_by_id(self, transaction_id: int) -> Optional[PaymentTransaction]:
        result = await self.session.execute(
            select(PaymentTransactionModel)
            .where(PaymentTransactionModel.id == transaction_id)
            .execution_options(populate_existing=True)
        )
        db_txn = result.scalar_one_or_none()
        return self._to_entity(db_txn) if db_txn else None

    async def get_by_provider_transaction_id(
        self,
        provider: str,
        provider_transaction_id: str
    ) -> Optional[PaymentTransaction]:
        result = await self.session.execute(
            select(PaymentTransactionModel).execution_options(populate_existing=True).where(
                PaymentTransactionModel.provider == provider,
                PaymentTransactionModel.provider_transaction_id == provider_transaction_id,
            )
        )
        db_txn = result.scalar_one_or_none()
        return self._to_entity(db_txn) if db_txn else None

    async def get_successful_charge(self, pending_payment_id: str) -> Optional[PaymentTransaction]:
        result = await self.session.execute(
            select(PaymentTransactionModel).execution_options(populate_existing=True)
            .where(
                PaymentTransactionModel.pending_payment_id == pending_payment_id,
                PaymentTransactionModel.type == TransactionType.CHARGE.value,
                PaymentTransactionModel.status == TransactionStatus.SUCCESS.value,
            )
            .order_by(PaymentTransactionModel.id.asc())
            .limit(1)
        )
        db_txn = result.scalar_one_or_none()
        return self._to_entity(db_txn) if db_txn else None

    async def list_by_pending_payment(self, pending_payment_id: str) -> List[PaymentTransaction]:
        result = await self.session.execute(
            select(PaymentTransactionModel).execution_options(populate_existing=True)
            .where(PaymentTransactionModel.pending_payment_id == pending_payment_id)
            .order_by(PaymentTransactionModel.created_at.asc())
        )
        return [self._to_entity(t) for t in result.scalars().all()]

    async def list_refunds(self, parent_transaction_id: int) -> List[PaymentTransaction]:
        result = await self.session.execute(
            select(PaymentTransactionModel).execution_options(populate_existing=True)
            .where(
                PaymentTransactionModel.parent_transaction_id == parent_transaction_id,
                PaymentTransactionModel.type == TransactionType.REFUND.value,
            )
            .order_by(PaymentTransactionModel.created_at.asc())
        )
        return [self._to_entity(t) for t in result.scalars().all()]

    async def finalize(
        self,
        transaction_id: int,
        status: TransactionStatus,
        *,
        processed_at: datetime,
        approval_number: Optional[str] = None,
        card_brand: Optional[str] = None,
        card_last_four: Optional[str] = None,
        provider_response: Optional[dict] = None,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> bool:
        values = {
            "status": TransactionStatus(status).value,
            "processed_at": processed_at,
            "updated_at": processed_at,
            "error_code": error_code,
            "error_message": error_message,
        }
        if approval_number:
            values["provider_approval_num"] = approval_number
        if card_brand:
            values["card_brand"] = card_brand
        if card_last_four:
            values["card_last_four"] = card_last_four
        if provider_response is not None:
            values["provider_response"] = provider_response
        result = await self.session.execute(
            update(PaymentTransactionModel)
            .where(
                PaymentTransactionModel.id == transaction_id,
                PaymentTransactionModel.status == TransactionStatus.PENDING.value,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def enrich(
        self,
        transaction_id: int,
        *,
        approval_number: Optional[str] = None,
        card_brand: Optional[str] = None,
        card_last_four: Optional[str] = None,
        provider_response: Optional[dict] = None,
    ) -> bool:
        result = await self.session.execute(
            select(PaymentTransactionModel)
            .where(PaymentTransactionModel.id == transaction_id)
            .execution_options(populate_existing=True)
        )
        db_txn = result.scalar_one_or_none()
        if not db_txn:
            return False
        changed = False
        for attr, value in (
            ("provider_approval_num", approval_number),
            ("card_brand", card_brand),
            ("card_last_four", card_last_four),
        ):
            if value and not getattr(db_txn, attr):
                setattr(db_txn, attr, value)
                changed = True
        if provider_response and not db_txn.provider_response:
            db_txn.provider_response = provider_response
            changed = True
        if changed:
            await self.session.flush()
        return changed

    async def annotate_error(self, transaction_id: int, error_code: str, error_message: str) -> None:
        await self.session.execute(
            update(PaymentTransactionModel)
            .where(
                PaymentTransactionModel.id == transaction_id,
                PaymentTransactionModel.status == TransactionStatus.PENDING.value,
            )
            .values(error_code=error_code, error_message=error_message)
            .execution_options(synchronize_session=False)
        )


class SQLAlchemyPaymentProviderConfigRepository(PaymentProviderConfigRepository):
    """支付渠道配置仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: PaymentProviderConfigModel) -> PaymentProviderConfig:
        return PaymentProviderConfig(
            id=model.id,
            store_id=model.store_id,
            provider=model.provider,
            display_name=model.display_name,
            credentials=dict(model.credentials or {}),
            settings=dict(model.settings or {}),
            is_active=model.is_active,
            is_default=model.is_default,
            test_mode=model.test_mode,
            total_transactions=model.total_transactions or 0,
            total_volume=_decimal(model.total_volume),
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    async def _get_model(self, config_id: int) -> Optional[PaymentProviderConfigModel]:
        result = await self.session.execute(
            select(PaymentProviderConfigModel)
            .where(PaymentProviderConfigModel.id == config_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def create(self, config: PaymentProviderConfig) -> PaymentProviderConfig:
        db_config = PaymentProviderConfigModel(
            store_id=config.store_id,
            provider=config.provider,
            display_name=config.display_name,
            credentials=config.credentials,
            settings=config.settings,
            is_active=config.is_active,
            is_default=config.is_default,
            test_mode=config.test_mode,
        )
        self.session.add(db_config)
        await self.session.flush()
        await self.session.refresh(db_config)
        logger.info(
            "provider_config_created",
            config_id=db_config.id,
            store_id=db_config.store_id,
            provider=db_config.provider,
        )
        return self._to_entity(db_config)

    async def update(self, config: PaymentProviderConfig) -> PaymentProviderConfig:
        db_config = await self._get_model(config.id)
        if not db_config:
            raise ValueError(f"Provider config with id {config.id} not found")

        db_config.display_name = config.display_name
        db_config.credentials = dict(config.credentials)
        db_config.settings = dict(config.settings)
        db_config.is_active = config.is_active
        db_config.is_default = config.is_default
        db_config.test_mode = config.test_mode

        await self.session.flush()
        await self.session.refresh(db_config)
        logger.info("provider_config_updated", config_id=db_config.id, provider=db_config.provider)
        return self._to_entity(db_config)

    async def delete(self, config_id: int) -> bool:
        result = await self.session.execute(
            delete(PaymentProviderConfigModel).where(PaymentProviderConfigModel.id == config_id)
        )
        deleted = result.rowcount == 1
        if deleted:
            logger.info("provider_config_deleted", config_id=config_id)
        return deleted

    async def get_by_store_and_provider(self, store_id: int, provider: str) -> Optional[PaymentProviderConfig]:
        result = await self.session.execute(
            select(PaymentProviderConfigModel).execution_options(populate_existing=True).where(
                PaymentProviderConfigModel.store_id == store_id,
                PaymentProviderConfigModel.provider == provider,
            )
        )
        db_config = result.scalar_one_or_none()
        return self._to_entity(db_config) if db_config else None

    async def get_active(self, store_id: int, provider: str) -> Optional[PaymentProviderConfig]:
        result = await self.session.execute(
            select(PaymentProviderConfigModel).execution_options(populate_existing=True).where(
                PaymentProviderConfigModel.store_id == store_id,
                PaymentProviderConfigModel.provider == provider,
                PaymentProviderConfigModel.is_active.is_(True),
            )
        )
        db_config = result.scalar_one_or_none()
        return self._to_entity(db_config) if db_config else None

    async def list_by_store(self, store_id: int) -> List[PaymentProviderConfig]:
        result = await self.session.execute(
            select(PaymentProviderConfigModel).execution_options(populate_existing=True)
            .where(PaymentProviderConfigModel.store_id == store_id)
            .order_by(PaymentProviderConfigModel.is_default.desc(), PaymentProviderConfigModel.provider.asc())
        )
        return [self._to_entity(c) for c in result.scalars().all()]

    async def count_active(self, store_id: int) -> int:
        result = await self.session.execute(
            select(func.count(PaymentProviderConfigModel.id)).where(
                PaymentProviderConfigModel.store_id == store_id,
                PaymentProviderConfigModel.is_active.is_(True),
            )
        )
        return result.scalar_one()

    async def clear_default(self, store_id: int) -> None:
        await self.session.execute(
            update(PaymentProviderConfigModel)
            .where(
                PaymentProviderConfigModel.store_id == store_id,
                PaymentProviderConfigModel.is_default.is_(True),
            )
            .values(is_default=False)
            .execution_options(synchronize_session=False)
        )

    async def increment_counters(self, config_id: int, amount: Decimal) -> None:
        # 由数据库计算新值，避免并发丢失更新
        await self.session.execute(
            update(PaymentProviderConfigModel)
            .where(PaymentProviderConfigModel.id == config_id)
            .values(
                total_transactions=PaymentProviderConfigModel.total_transactions + 1,
                total_volume=PaymentProviderConfigModel.total_volume + amount,
            )
            .execution_options(synchronize_session=False)
        )
