"""
店铺与订单仓储实现
"""
from typing import Iterable, Optional
from decimal import Decimal
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update

from domain.order.entity import Order, OrderFinancialStatus
from domain.order.repository import OrderRepository
from domain.store.entity import Store
from domain.store.repository import StoreRepository
from infrastructure.models.store import OrderModel, StoreModel
from core.logging_config import get_logger


logger = get_logger(__name__)


class SQLAlchemyStoreRepository(StoreRepository):

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: StoreModel) -> Store:
        return Store(
            id=model.id,
            slug=model.slug,
            name=model.name,
            currency=model.currency,
            is_active=model.is_active,
            created_at=model.created_at,
        )

    async def get_by_slug(self, slug: str) -> Optional[Store]:
        result = await self.session.execute(select(StoreModel).where(StoreModel.slug == slug))
        db_store = result.scalar_one_or_none()
        return self._to_entity(db_store) if db_store else None

    async def get_by_id(self, store_id: int) -> Optional[Store]:
        result = await self.session.execute(select(StoreModel).where(StoreModel.id == store_id))
        db_store = result.scalar_one_or_none()
        return self._to_entity(db_store) if db_store else None

    async def create(self, store: Store) -> Store:
        db_store = StoreModel(
            slug=store.slug,
            name=store.name,
            currency=store.currency,
            is_active=store.is_active,
        )
        self.session.add(db_store)
        await self.session.flush()
        await self.session.refresh(db_store)
        logger.info("store_created", store_id=db_store.id, slug=db_store.slug)
        return self._to_entity(db_store)


class SQLAlchemyOrderRepository(OrderRepository):

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: OrderModel) -> Order:
        return Order(
            id=model.id,
            store_id=model.store_id,
            order_number=model.order_number,
            financial_status=OrderFinancialStatus(model.financial_status),
            total=Decimal(str(model.total)),
            currency=model.currency,
            pending_payment_id=model.pending_payment_id,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    async def get_by_id(self, store_id: int, order_id: int) -> Optional[Order]:
        result = await self.session.execute(
            select(OrderModel)
            .where(OrderModel.id == order_id, OrderModel.store_id == store_id)
            .execution_options(populate_existing=True)
        )
        db_order = result.scalar_one_or_none()
        return self._to_entity(db_order) if db_order else None

    async def create(self, order: Order) -> Order:
        db_order = OrderModel(
            store_id=order.store_id,
            order_number=order.order_number,
            financial_status=order.financial_status.value,
            total=order.total,
            currency=order.currency,
            pending_payment_id=order.pending_payment_id,
        )
        self.session.add(db_order)
        await self.session.flush()
        await self.session.refresh(db_order)
        return self._to_entity(db_order)

    async def transition_financial_status(
        self,
        order_id: int,
        *,
        expected: Iterable[OrderFinancialStatus],
        new_status: OrderFinancialStatus,
    ) -> bool:
        result = await self.session.execute(
            update(OrderModel)
            .where(
                OrderModel.id == order_id,
                OrderModel.financial_status.in_([s.value for s in expected]),
            )
            .values(financial_status=new_status.value)
            .execution_options(synchronize_session=False)
        )
        updated = result.rowcount == 1
        if updated:
            logger.info("order_financial_status_changed", order_id=order_id, financial_status=new_status.value)
        return updated
