"""
Pelecard adapter (hosted PaymentGW page + Services REST API).

Pelecard posts back only the transaction id and a status code, without a
signature or amount, so every callback is confirmed via `GetTransaction`.
Amounts on the wire are in agorot.
"""
from __future__ import annotations

from typing import Any, Mapping, Optional

from application.dtos.payments import RefundRequest, RefundResult
from infrastructure.external.payments.base import (
    BasePaymentClient,
    decode_body,
    minor_to_decimal,
    text,
    to_minor,
)
from infrastructure.external.payments.exceptions import PaymentProviderError

GATEWAY_URL = "https://gateway21.pelecard.biz/PaymentGW"

CARD_BRANDS = {
    "1": "visa",
    "2": "mastercard",
    "3": "diners",
    "4": "amex",
    "5": "jcb",
    "6": "isracard",
}


class PelecardClient(BasePaymentClient):
    provider = "pelecard"
    verify_via_lookup = True
    sandbox_base_url = "https://gateway21.pelecard.biz/SandboxServices"
    live_base_url = "https://gateway21.pelecard.biz/services"

    @property
    def gateway_url(self) -> str:
        return str(self.settings.get("gateway_url") or GATEWAY_URL).rstrip("/")

    def _service_credentials(self) -> dict[str, str]:
        return {
            "terminalNumber": str(self.credentials.get("terminal") or ""),
            "user": str(self.credentials.get("user") or ""),
            "password": str(self.credentials.get("password") or ""),
            "shopNumber": str(self.credentials.get("shop_number") or "001"),
        }

    def _validate(self, raw_body: bytes, headers: Mapping[str, str]) -> Optional[str]:
        # authenticity comes from GetTransaction; only the shape is checked here
        data = decode_body(raw_body)
        if not data.get("PelecardTransactionId"):
            return "Missing PelecardTransactionId"
        return None

    def _parse_payload(self, data: dict[str, Any]) -> dict[str, Any]:
        transaction_id = text(data.get("PelecardTransactionId"))
        return {
            "status": self._map_status(data.get("PelecardStatusCode")),
            "provider_transaction_id": transaction_id,
            "correlation_id": transaction_id,
            "order_reference": text(data.get("UserKey") or data.get("ParamX")),
            "approval_number": text(data.get("ApprovalNo")),
            "error_code": text(data.get("ErrorCode")),
            "error_message": text(data.get("ErrorMessage")),
        }

    async def _lookup(self, provider_transaction_id, correlation_id):
        transaction_id = provider_transaction_id or correlation_id
        payload = await self._request_json(
            "POST",
            f"{self.gateway_url}/GetTransaction",
            json_body={
                "terminal": str(self.credentials.get("terminal") or ""),
                "user": str(self.credentials.get("user") or ""),
                "password": str(self.credentials.get("password") or ""),
                "TransactionId": transaction_id,
            },
        )
        # GetTransaction nests the transaction under ResultData on some terminals
        data = payload.get("ResultData") if isinstance(payload.get("ResultData"), dict) else payload
        status_code = payload.get("ResultCode") or payload.get("StatusCode") or data.get("StatusCode")
        card_number = text(data.get("CreditCardNumber"))
        fields = {
            "status": self._map_status(status_code),
            "provider_transaction_id": transaction_id,
            "correlation_id": transaction_id,
            "order_reference": text(data.get("UserKey") or data.get("AdditionalDetailsParamX")),
            "amount": minor_to_decimal(data.get("DebitTotal")),
            "currency": "ILS",
            "approval_number": text(data.get("ApprovalNo") or data.get("VoucherId")),
            "card_brand": CARD_BRANDS.get(str(data.get("CreditCardBrand") or "")),
            "card_last_four": card_number[-4:] if card_number else None,
            "error_code": None if status_code == "000" else text(status_code),
            "error_message": text(payload.get("ErrorMessage") or data.get("ErrorMessage")),
        }
        return fields, payload

    async def _refund(self, req: RefundRequest) -> RefundResult:
        payload = await self._request_json(
            "POST",
            f"{self.base_url}/DeleteTran",
            json_body={
                **self._service_credentials(),
                "PelecardTransactionId": req.provider_transaction_id,
                "total": str(to_minor(req.amount)),
            },
            retry=False,
        )
        if payload.get("StatusCode") != "000":
            raise PaymentProviderError(
                payload.get("ErrorMessage") or "Refund rejected",
                provider=self.provider,
                provider_code=text(payload.get("StatusCode")) or "UNKNOWN",
            )
        return RefundResult(
            success=True,
            refund_id=text(payload.get("PelecardTransactionId") or payload.get("VoucherId")),
            amount=req.amount,
            raw=payload,
        )
