"""领域层业务异常定义，供领域与基础设施使用。

核心（core）层仅负责全局映射与异常处理，尽量避免领域层反向依赖核心层。
"""
from __future__ import annotations

from typing import Optional
from shared.codes import BusinessCode


class BusinessException(Exception):
    """业务异常基类"""

    def __init__(
        self,
        code: int,
        message: str,
        error_type: str = "BusinessError",
        details: Optional[dict] = None,
        field: Optional[str] = None,
    ) -> None:
        self.code = code
        self.message = message
        self.error_type = error_type
        self.details = details
        self.field = field
        super().__init__(self.message)


class DomainValidationException(BusinessException):
    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        details: dict | None = None,
    ):
        super().__init__(
            code=BusinessCode.PARAM_VALIDATION_ERROR,
            message=message,
            error_type="DomainValidationError",
            details=details,
            field=field,
        )


class StoreNotFoundException(BusinessException):
    def __init__(self, slug: Optional[str] = None):
        details = {"slug": slug} if slug else None
        super().__init__(
            code=BusinessCode.STORE_NOT_FOUND,
            message="Store not found",
            error_type="StoreNotFound",
            details=details,
        )


class OrderNotFoundException(BusinessException):
    def __init__(self, order_id: Optional[int] = None):
        details = {"order_id": order_id} if order_id is not None else None
        super().__init__(
            code=BusinessCode.ORDER_NOT_FOUND,
            message="Order not found",
            error_type="OrderNotFound",
            details=details,
        )


class PendingPaymentNotFoundException(BusinessException):
    def __init__(self, pending_payment_id: Optional[str] = None):
        details = {"pending_payment_id": pending_payment_id} if pending_payment_id else None
        super().__init__(
            code=BusinessCode.PENDING_PAYMENT_NOT_FOUND,
            message="Pending payment not found",
            error_type="PendingPaymentNotFound",
            details=details,
        )


class PendingPaymentAlreadyClaimedException(BusinessException):
    def __init__(self, pending_payment_id: str):
        super().__init__(
            code=BusinessCode.PENDING_PAYMENT_ALREADY_CLAIMED,
            message="Pending payment is not confirmed or was already claimed",
            error_type="PendingPaymentAlreadyClaimed",
            details={"pending_payment_id": pending_payment_id},
        )


class ProviderConfigNotFoundException(BusinessException):
    def __init__(self, provider: str):
        super().__init__(
            code=BusinessCode.PROVIDER_CONFIG_NOT_FOUND,
            message=f"Payment provider '{provider}' is not configured",
            error_type="ProviderConfigNotFound",
            details={"provider": provider},
        )


class ProviderConfigAlreadyExistsException(BusinessException):
    def __init__(self, provider: str):
        super().__init__(
            code=BusinessCode.PROVIDER_CONFIG_EXISTS,
            message=f"Payment provider '{provider}' is already configured",
            error_type="ProviderConfigAlreadyExists",
            details={"provider": provider},
            field="provider",
        )
