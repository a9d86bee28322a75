"""
回调标准化 - 把各网关解析出的 CallbackResult 清洗为统一形态

清洗之后的流程不再区分网关；需要时通过服务端状态查询补全/核实字段。
"""
from __future__ import annotations

import re
from typing import Optional

from application.dtos.payments import CallbackResult, CallbackStatus
from application.ports.payment_gateway import PaymentGateway
from core.logging_config import get_logger
from domain.payment.entity import quantize_money


logger = get_logger(__name__)

_STRING_FIELDS = (
    "provider_transaction_id",
    "correlation_id",
    "order_reference",
    "currency",
    "approval_number",
    "card_brand",
    "card_last_four",
    "error_code",
    "error_message",
)

# 查询结果中以查询为准的字段
_AUTHORITATIVE_FIELDS = ("status", "success", "amount", "currency", "provider_transaction_id")


def _blank_to_none(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def clean_callback(result: CallbackResult) -> CallbackResult:
    """纯函数清洗：去空白、空串转 None、币种大写、金额两位小数、卡号保留后四位"""
    updates = {name: _blank_to_none(getattr(result, name)) for name in _STRING_FIELDS}

    if updates["currency"]:
        updates["currency"] = updates["currency"].upper()
    if updates["card_last_four"]:
        digits = re.sub(r"\D", "", updates["card_last_four"])
        updates["card_last_four"] = digits[-4:] or None
    if updates["order_reference"] and updates["order_reference"] == updates["correlation_id"]:
        updates["order_reference"] = None
    updates["amount"] = None if result.amount is None else quantize_money(result.amount)
    updates["success"] = result.status == CallbackStatus.SUCCESS
    return result.model_copy(update=updates)


class CallbackNormalizer:
    """
    回调标准化器

    - verify_via_lookup 的网关：回调内容一律以状态查询为准
    - 成功回调缺少金额或卡信息：尝试查询补全
    - 重定向（require_lookup=True）：没有签名，只能依靠查询核实
    """

    def __init__(self, gateway: PaymentGateway) -> None:
        self.gateway = gateway

    def _needs_lookup(self, result: CallbackResult, require_lookup: bool) -> bool:
        if require_lookup or self.gateway.verify_via_lookup:
            return True
        return result.success and (result.amount is None or result.card_last_four is None)

    async def normalize(self, result: CallbackResult, *, require_lookup: bool = False) -> CallbackResult:
        cleaned = clean_callback(result)
        mandatory = require_lookup or self.gateway.verify_via_lookup
        if not self._needs_lookup(cleaned, require_lookup):
            return cleaned
        if not cleaned.provider_transaction_id and not cleaned.correlation_id:
            return cleaned.model_copy(update={"verified": False}) if mandatory else cleaned

        found = await self.gateway.get_transaction_status(
            provider_transaction_id=cleaned.provider_transaction_id,
            correlation_id=cleaned.correlation_id,
        )
        if found is None:
            logger.warning(
                "callback_lookup_failed",
                provider=cleaned.provider,
                provider_transaction_id=cleaned.provider_transaction_id,
                correlation_id=cleaned.correlation_id,
                mandatory=mandatory,
            )
            return cleaned.model_copy(update={"verified": False}) if mandatory else cleaned

        merged = self.merge(cleaned, clean_callback(found))
        logger.info(
            "callback_lookup_applied",
            provider=merged.provider,
            provider_transaction_id=merged.provider_transaction_id,
            callback_status=cleaned.status.value,
            lookup_status=merged.status.value,
        )
        return merged

    @staticmethod
    def merge(callback: CallbackResult, lookup: CallbackResult) -> CallbackResult:
        """查询结果优先；其余字段仅填补回调中缺失的部分"""
        updates: dict = {"verified": True}
        for name in _AUTHORITATIVE_FIELDS:
            value = getattr(lookup, name)
            if value is not None:
                updates[name] = value
        # 未终结的查询状态不能推翻回调里的拒绝/取消
        if not lookup.status.is_final and callback.status.is_final and not callback.success:
            updates["status"] = callback.status
            updates["success"] = False
        for name in ("correlation_id", "order_reference", "approval_number", "card_brand",
                     "card_last_four", "error_code", "error_message"):
            if getattr(callback, name) is None and getattr(lookup, name) is not None:
                updates[name] = getattr(lookup, name)
        if lookup.raw:
            updates["raw"] = {**callback.raw, "lookup": lookup.raw}
        merged = callback.model_copy(update=updates)
        if merged.order_reference and merged.order_reference == merged.correlation_id:
            merged = merged.model_copy(update={"order_reference": None})
        return merged
