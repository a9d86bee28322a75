"""
支付对账领域服务 - 纯业务规则（金额核对、订单号匹配、退款额度）与领域异常

不做任何 IO；持久化与网关调用由应用层编排。
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Optional

from domain.common.exceptions import BusinessException
from domain.payment.entity import (
    PaymentTransaction,
    PendingPayment,
    ReconciliationOutcome,
    TransactionStatus,
    TransactionType,
    quantize_money,
)
from shared.codes.payment_codes import PaymentCode


# ============================================================================
# 领域异常
# ============================================================================


class ReconciliationError(BusinessException):
    """回调处理中的致命失败：记录日志后照常向网关确认收到，不再重试"""

    outcome: ReconciliationOutcome = ReconciliationOutcome.INVALID_PAYLOAD

    def __init__(self, code: int, message: str, error_type: str, details: Optional[dict] = None):
        super().__init__(code=code, message=message, error_type=error_type, details=details)


class CallbackAuthenticationError(ReconciliationError):
    outcome = ReconciliationOutcome.UNAUTHORIZED

    def __init__(self, provider: str, reason: Optional[str] = None):
        super().__init__(
            code=PaymentCode.SIGNATURE_ERROR,
            message=reason or "Callback authenticity could not be verified",
            error_type="AuthenticationFailure",
            details={"provider": provider, "reason": reason},
        )


class CallbackRoutingError(ReconciliationError):
    outcome = ReconciliationOutcome.ROUTING_FAILED

    def __init__(self, message: str, *, store: Optional[str] = None, provider: Optional[str] = None):
        super().__init__(
            code=PaymentCode.ROUTING_FAILED,
            message=message,
            error_type="RoutingFailure",
            details={"store": store, "provider": provider},
        )


class UnsupportedProviderError(ReconciliationError):
    outcome = ReconciliationOutcome.ROUTING_FAILED

    def __init__(self, provider: Optional[str]):
        super().__init__(
            code=PaymentCode.UNSUPPORTED_PROVIDER,
            message=f"Unsupported payment provider: {provider}",
            error_type="UnsupportedProvider",
            details={"provider": provider},
        )
        self.field = "provider"


class CallbackPayloadError(ReconciliationError):
    outcome = ReconciliationOutcome.INVALID_PAYLOAD

    def __init__(self, message: str, *, provider: Optional[str] = None):
        super().__init__(
            code=PaymentCode.INVALID_PAYLOAD,
            message=message,
            error_type="InvalidPayload",
            details={"provider": provider},
        )


class PaymentMatchError(ReconciliationError):
    outcome = ReconciliationOutcome.NOT_MATCHED

    def __init__(self, *, correlation_id: Optional[str], order_reference: Optional[str]):
        super().__init__(
            code=PaymentCode.NOT_MATCHED,
            message="No pending payment matches this callback",
            error_type="MatchFailure",
            details={"correlation_id": correlation_id, "order_reference": order_reference},
        )


class TransactionOwnershipError(ReconciliationError):
    """网关流水号已记在另一笔结账（或另一家店铺）名下"""

    outcome = ReconciliationOutcome.INVALID_PAYLOAD

    def __init__(self, *, provider: str, provider_transaction_id: str, pending_payment_id: str):
        super().__init__(
            code=PaymentCode.INVALID_PAYLOAD,
            message="Provider transaction id is already recorded for another checkout",
            error_type="TransactionOwnershipConflict",
            details={
                "provider": provider,
                "provider_transaction_id": provider_transaction_id,
                "pending_payment_id": pending_payment_id,
            },
        )


class AmountMismatchError(ReconciliationError):
    outcome = ReconciliationOutcome.AMOUNT_MISMATCH

    def __init__(self, *, pending_payment_id: str, expected: Decimal, claimed: Optional[Decimal]):
        super().__init__(
            code=PaymentCode.AMOUNT_MISMATCH,
            message="Claimed amount does not match the expected total",
            error_type="AmountMismatch",
            details={
                "pending_payment_id": pending_payment_id,
                "expected": str(expected),
                "claimed": None if claimed is None else str(claimed),
            },
        )


class PendingPaymentExpiredError(ReconciliationError):
    outcome = ReconciliationOutcome.EXPIRED

    def __init__(self, pending_payment_id: str):
        super().__init__(
            code=PaymentCode.PAYMENT_EXPIRED,
            message="Pending payment expired before the payment cleared",
            error_type="PendingPaymentExpired",
            details={"pending_payment_id": pending_payment_id},
        )


class TransactionAlreadyRecordedError(BusinessException):
    """唯一约束冲突：另一个并发请求已写入同一网关流水号"""

    def __init__(self, provider: str, provider_transaction_id: Optional[str]):
        super().__init__(
            code=PaymentCode.TRANSACTION_ALREADY_RECORDED,
            message="Transaction already recorded",
            error_type="AlreadyProcessed",
            details={"provider": provider, "provider_transaction_id": provider_transaction_id},
        )


class PaymentGatewayError(BusinessException):
    """网关调用失败（退款），原样向操作员展示网关错误信息"""

    def __init__(self, message: str, *, provider: str, provider_code: Optional[str] = None):
        super().__init__(
            code=PaymentCode.PROVIDER_ERROR,
            message=message or "Payment gateway request failed",
            error_type="GatewayFailure",
            details={"provider": provider, "provider_code": provider_code},
        )


class RefundNotAllowedError(BusinessException):
    def __init__(self, reason: str, *, order_id: Optional[int] = None, state: Optional[str] = None):
        super().__init__(
            code=PaymentCode.REFUND_NOT_ALLOWED,
            message=reason,
            error_type="RefundNotAllowed",
            details={"order_id": order_id, "state": state},
        )


class RefundAmountInvalidError(BusinessException):
    def __init__(self, amount: Decimal, refundable: Decimal):
        super().__init__(
            code=PaymentCode.REFUND_AMOUNT_INVALID,
            message=f"Refund amount {amount} must be positive and at most {refundable}",
            error_type="RefundAmountInvalid",
            details={"amount": str(amount), "refundable": str(refundable)},
            field="amount",
        )


# ============================================================================
# 领域规则
# ============================================================================


@dataclass(frozen=True)
class AmountCheck:
    expected: Decimal
    claimed: Optional[Decimal]
    tolerance: Decimal

    @property
    def difference(self) -> Optional[Decimal]:
        if self.claimed is None:
            return None
        return abs(self.claimed - self.expected)

    @property
    def matches(self) -> bool:
        diff = self.difference
        return diff is not None and diff <= self.tolerance


class PaymentReconciliationPolicy:
    """对账规则集合"""

    def __init__(self, amount_tolerance: Decimal = Decimal("0.01")) -> None:
        self.amount_tolerance = Decimal(amount_tolerance)

    def check_amount(self, pending: PendingPayment, claimed: Optional[Decimal]) -> AmountCheck:
        """按快照重算应付金额并与回调金额比较"""
        return AmountCheck(
            expected=pending.compute_expected_total(),
            claimed=None if claimed is None else quantize_money(claimed),
            tolerance=self.amount_tolerance,
        )

    @staticmethod
    def match_by_order_reference(
        candidates: Iterable[PendingPayment],
        order_reference: Optional[str],
    ) -> Optional[PendingPayment]:
        """在近期待支付记录中按订单号匹配（忽略大小写与首尾空白）"""
        if not order_reference:
            return None
        wanted = order_reference.strip().lower()
        for candidate in candidates:
            ref = (candidate.order_reference or "").strip().lower()
            if ref and ref == wanted:
                return candidate
        return None

    @staticmethod
    def build_payment_details(
        *,
        provider: str,
        provider_transaction_id: Optional[str],
        approval_number: Optional[str],
        card_brand: Optional[str],
        card_last_four: Optional[str],
        confirmed_at: str,
    ) -> dict:
        return {
            "provider": provider,
            "transaction_id": provider_transaction_id,
            "approval_number": approval_number,
            "card_brand": card_brand,
            "card_last_four": card_last_four,
            "confirmed_at": confirmed_at,
        }

    @staticmethod
    def refundable_amount(charge: PaymentTransaction, refunds: Iterable[PaymentTransaction]) -> Decimal:
        """可退金额 = 扣款金额 - 已成功退款金额"""
        refunded = sum(
            (
                r.amount
                for r in refunds
                if r.type == TransactionType.REFUND and r.status == TransactionStatus.SUCCESS
            ),
            Decimal("0"),
        )
        return quantize_money(max(charge.amount - refunded, Decimal("0")))
