"""
API依赖项 - 组装应用服务（组合根）

网关工厂、事件发布器与后台任务执行器在进程内共享；服务实例按请求创建。
"""
from functools import lru_cache

from fastapi import Depends

from application.ports.event_publisher import PaymentEventPublisher
from application.ports.payment_gateway import PaymentGatewayFactory
from application.services.background import DetachedTaskRunner
from application.services.pending_payment_service import PendingPaymentService
from application.services.provider_config_service import ProviderConfigService
from application.services.reconciliation_service import ReconciliationService
from application.services.refund_service import RefundService
from core.config import settings
from core.settings import payment_settings
from infrastructure.events.payment_publisher import build_event_publisher
from infrastructure.external.payments import DefaultPaymentGatewayFactory
from infrastructure.unit_of_work import SQLAlchemyUnitOfWork


_task_runner = DetachedTaskRunner()


def get_task_runner() -> DetachedTaskRunner:
    return _task_runner


@lru_cache
def get_gateway_factory() -> PaymentGatewayFactory:
    return DefaultPaymentGatewayFactory()


@lru_cache
def get_event_publisher() -> PaymentEventPublisher:
    return build_event_publisher()


async def get_reconciliation_service(
    gateways: PaymentGatewayFactory = Depends(get_gateway_factory),
    publisher: PaymentEventPublisher = Depends(get_event_publisher),
    runner: DetachedTaskRunner = Depends(get_task_runner),
) -> ReconciliationService:
    return ReconciliationService(
        SQLAlchemyUnitOfWork,
        gateways,
        publisher=publisher,
        runner=runner,
        settings=payment_settings.reconciliation,
        is_production=settings.is_production,
    )


async def get_refund_service(
    gateways: PaymentGatewayFactory = Depends(get_gateway_factory),
    publisher: PaymentEventPublisher = Depends(get_event_publisher),
    runner: DetachedTaskRunner = Depends(get_task_runner),
) -> RefundService:
    return RefundService(SQLAlchemyUnitOfWork, gateways, publisher=publisher, runner=runner)


async def get_pending_payment_service(
    gateways: PaymentGatewayFactory = Depends(get_gateway_factory),
) -> PendingPaymentService:
    return PendingPaymentService(SQLAlchemyUnitOfWork, gateways, settings=payment_settings.reconciliation)


async def get_provider_config_service(
    gateways: PaymentGatewayFactory = Depends(get_gateway_factory),
) -> ProviderConfigService:
    return ProviderConfigService(SQLAlchemyUnitOfWork, gateways)
