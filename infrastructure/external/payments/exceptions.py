"""
网关适配器内部异常

只在适配器内部流转：BasePaymentClient 的公开方法会把它们转成
``None``（状态查询）或失败的 RefundResult（退款），不会泄漏给服务层。
"""
from __future__ import annotations

from typing import Optional

from domain.common.exceptions import BusinessException
from shared.codes.payment_codes import PaymentCode


class GatewayCallError(BusinessException):
    """一次网关调用失败；details 中带 provider 与网关原始错误码"""

    default_code: PaymentCode = PaymentCode.PROVIDER_ERROR

    def __init__(self, message: str, *, provider: str, provider_code: Optional[str] = None):
        super().__init__(
            code=self.default_code,
            message=message,
            error_type=type(self).__name__,
            details={"provider": provider, "provider_code": provider_code},
        )

    @property
    def provider_code(self) -> Optional[str]:
        return (self.details or {}).get("provider_code")


class PaymentProviderError(GatewayCallError):
    """网关明确拒绝或返回了无法解析的响应"""


class PaymentRecoverableError(GatewayCallError):
    """超时或连接失败，网关侧结果未知"""

    default_code = PaymentCode.PROVIDER_RECOVERABLE
