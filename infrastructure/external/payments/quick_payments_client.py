"""
QuickPayments adapter, backed by the PayMe marketplace API.

Callbacks are form posts identifying the seller; when the store configured a
`seller_secret` the `payme_signature` field (md5 of seller id + sale id +
secret) is checked too. Amounts are in minor units.
"""
from __future__ import annotations

import hashlib
import hmac
from typing import Any, Mapping, Optional

from application.dtos.payments import CallbackStatus, RefundRequest, RefundResult
from infrastructure.external.payments.base import (
    BasePaymentClient,
    decode_body,
    minor_to_decimal,
    text,
    to_minor,
)
from infrastructure.external.payments.exceptions import PaymentProviderError

REDIRECT_SUCCESS_CODES = {"0", "000", "success"}


class QuickPaymentsClient(BasePaymentClient):
    provider = "quick_payments"
    sandbox_base_url = "https://sandbox.payme.io/api"
    live_base_url = "https://live.payme.io/api"
    default_status = CallbackStatus.PENDING

    @property
    def seller_id(self) -> str:
        return str(self.credentials.get("seller_payme_id") or "")

    def _map_status(self, provider_status: Any) -> CallbackStatus:
        return super()._map_status(str(provider_status or "").lower())

    def _validate(self, raw_body: bytes, headers: Mapping[str, str]) -> Optional[str]:
        data = decode_body(raw_body)
        sale_id = text(data.get("payme_sale_id"))
        seller = text(data.get("seller_payme_id"))
        if not sale_id or not seller:
            return "Missing required fields"
        if not self.seller_id or not hmac.compare_digest(seller, self.seller_id):
            return "Seller ID mismatch"
        secret = self.credentials.get("seller_secret")
        if secret:
            received = text(data.get("payme_signature")) or ""
            expected = hashlib.md5(f"{seller}{sale_id}{secret}".encode("utf-8")).hexdigest()
            if not hmac.compare_digest(expected, received.lower()):
                return "Invalid payme_signature"
        return None

    def _parse_payload(self, data: dict[str, Any]) -> dict[str, Any]:
        sale_id = text(data.get("payme_sale_id"))
        return {
            "status": self._map_status(data.get("sale_status")),
            "provider_transaction_id": sale_id,
            "correlation_id": sale_id,
            "order_reference": text(data.get("transaction_id")),
            "amount": minor_to_decimal(data.get("sale_price")),
            "currency": text(data.get("sale_currency") or "ILS"),
            "approval_number": text(data.get("transaction_auth_number")),
            "card_brand": text(data.get("card_brand")),
            "card_last_four": text(data.get("four_digits")),
            "error_code": text(data.get("status_error_code")),
            "error_message": text(data.get("status_error_details")),
        }

    def _parse_redirect(self, params: dict[str, Any]) -> dict[str, Any]:
        sale_id = text(params.get("payme_sale_id") or params.get("sale_id"))
        status_code = text(params.get("status_code") or params.get("status"))
        ok = (status_code or "").lower() in REDIRECT_SUCCESS_CODES
        return {
            "status": CallbackStatus.SUCCESS if ok else CallbackStatus.FAILED,
            "provider_transaction_id": sale_id,
            "correlation_id": sale_id,
            "order_reference": text(params.get("transaction_id")),
            "error_code": None if ok else status_code,
            "error_message": text(params.get("error_message")),
        }

    async def _lookup(self, provider_transaction_id, correlation_id):
        sale_id = provider_transaction_id or correlation_id
        payload = await self._request_json(
            "POST",
            f"{self.base_url}/get-sales",
            json_body={"seller_payme_id": self.seller_id, "payme_sale_id": sale_id},
        )
        if str(payload.get("status_code")) != "0":
            self._log("status_lookup_rejected", code=payload.get("status_error_code"))
            return None
        # get-sales answers with a list of sales on newer API versions
        items = payload.get("items")
        sale = items[0] if isinstance(items, list) and items and isinstance(items[0], dict) else payload
        fields = {
            "status": self._map_status(sale.get("sale_status")),
            "provider_transaction_id": text(sale.get("payme_sale_id")) or sale_id,
            "correlation_id": text(sale.get("payme_sale_id")) or sale_id,
            "order_reference": text(sale.get("transaction_id")),
            "amount": minor_to_decimal(sale.get("sale_price") or sale.get("price")),
            "currency": text(sale.get("sale_currency") or sale.get("currency")),
            "approval_number": text(sale.get("transaction_auth_number")),
            "card_brand": text(sale.get("card_brand")),
            "card_last_four": text(sale.get("four_digits")),
        }
        return fields, payload

    async def _refund(self, req: RefundRequest) -> RefundResult:
        payload = await self._request_json(
            "POST",
            f"{self.base_url}/refund-sale",
            json_body={
                "seller_payme_id": self.seller_id,
                "payme_sale_id": req.provider_transaction_id,
                "sale_refund_amount": to_minor(req.amount),
                "language": "he",
            },
            retry=False,
        )
        if str(payload.get("status_code")) != "0":
            raise PaymentProviderError(
                payload.get("status_error_details") or "Refund failed",
                provider=self.provider,
                provider_code=text(payload.get("status_error_code") or payload.get("status_code")),
            )
        return RefundResult(
            success=True,
            refund_id=text(payload.get("payme_transaction_id")),
            amount=minor_to_decimal(payload.get("payme_transaction_total")) or req.amount,
            raw=payload,
        )
