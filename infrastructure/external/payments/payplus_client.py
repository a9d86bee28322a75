"""
PayPlus adapter (Israeli card processor, hosted payment pages).

Webhooks are signed: the `hash` header carries base64(HMAC-SHA256(secret_key,
raw_body)) and the `User-Agent` is fixed to `PayPlus`. Two callback layouts
exist in the wild: the current nested one (`transaction.*`, `data.card_information.*`)
and the legacy flat one; both are accepted.
"""
from __future__ import annotations

import base64
import hashlib
import hmac
from typing import Any, Mapping, Optional

from application.dtos.payments import RefundRequest, RefundResult
from infrastructure.external.payments.base import (
    BasePaymentClient,
    header,
    text,
    to_decimal,
)
from infrastructure.external.payments.exceptions import PaymentProviderError


class PayPlusClient(BasePaymentClient):
    provider = "payplus"
    sandbox_base_url = "https://restapidev.payplus.co.il/api/v1.0"
    live_base_url = "https://restapi.payplus.co.il/api/v1.0"

    def _auth_headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "api-key": str(self.credentials.get("api_key") or ""),
            "secret-key": str(self.credentials.get("secret_key") or ""),
        }

    def _validate(self, raw_body: bytes, headers: Mapping[str, str]) -> Optional[str]:
        if header(headers, "user-agent") != "PayPlus":
            return "Invalid User-Agent header"
        received = header(headers, "hash")
        if not received:
            return "Missing hash header"
        secret = self.credentials.get("secret_key")
        if not secret:
            return "Missing secret_key credential"
        digest = hmac.new(str(secret).encode("utf-8"), raw_body, hashlib.sha256).digest()
        expected = base64.b64encode(digest).decode("ascii")
        if not hmac.compare_digest(expected, received.strip()):
            return "Invalid hash signature"
        return None

    def _parse_payload(self, data: dict[str, Any]) -> dict[str, Any]:
        tx = data.get("transaction")
        error = data.get("error") if isinstance(data.get("error"), dict) else {}
        if isinstance(tx, dict):
            card = (data.get("data") or {}).get("card_information") or {}
            return {
                "status": self._map_status(tx.get("status_code")),
                "provider_transaction_id": text(tx.get("uid")),
                "correlation_id": text(tx.get("payment_page_request_uid")),
                "order_reference": text(tx.get("more_info")),
                "amount": to_decimal(tx.get("amount")),
                "currency": text(tx.get("currency") or "ILS"),
                "approval_number": text(tx.get("approval_number") or tx.get("voucher_number")),
                "card_brand": text(card.get("brand_id")),
                "card_last_four": text(card.get("four_digits")),
                "error_code": text(error.get("error_code")),
                "error_message": text(error.get("error_message")),
            }
        return {
            "status": self._map_status(data.get("status_code")),
            "provider_transaction_id": text(data.get("transaction_uid")),
            "correlation_id": text(data.get("page_request_uid")),
            "order_reference": text(data.get("more_info") or data.get("ref")),
            "amount": to_decimal(data.get("amount")),
            "currency": text(data.get("currency_code") or "ILS"),
            "approval_number": text(data.get("approval_num") or data.get("voucher_num")),
            "card_brand": text(data.get("brand_name")),
            "card_last_four": text(data.get("four_digits")),
            "error_code": text(error.get("error_code") or data.get("error_code")),
            "error_message": text(error.get("error_message") or data.get("error_message")),
        }

    async def _lookup(self, provider_transaction_id, correlation_id):
        body = (
            {"payment_request_uid": correlation_id}
            if correlation_id
            else {"transaction_uid": provider_transaction_id}
        )
        payload = await self._request_json(
            "POST", f"{self.base_url}/PaymentPages/ipn", json_body=body, headers=self._auth_headers()
        )
        results = payload.get("results") or {}
        data = payload.get("data")
        if results.get("status") != "success" or not isinstance(data, dict):
            self._log("status_lookup_rejected", code=results.get("code"), description=results.get("description"))
            return None
        fields = self._parse_payload(data)
        fields["correlation_id"] = fields.get("correlation_id") or correlation_id
        return fields, payload

    async def _refund(self, req: RefundRequest) -> RefundResult:
        payload = await self._request_json(
            "POST",
            f"{self.base_url}/Transactions/RefundByTransactionUID",
            json_body={
                "transaction_uid": req.provider_transaction_id,
                "amount": float(req.amount),
                "more_info": req.reason or "",
            },
            headers=self._auth_headers(),
            retry=False,
        )
        results = payload.get("results") or {}
        if results.get("status") != "success":
            raise PaymentProviderError(
                results.get("description") or "Refund rejected",
                provider=self.provider,
                provider_code=text(results.get("code")),
            )
        data = payload.get("data") or {}
        tx = data.get("transaction") if isinstance(data.get("transaction"), dict) else data
        return RefundResult(
            success=True,
            refund_id=text(tx.get("uid") or tx.get("transaction_uid")),
            amount=to_decimal(tx.get("amount")) or req.amount,
            raw=payload,
        )
