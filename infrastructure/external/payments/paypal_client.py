"""
PayPal Orders v2 adapter over plain REST (OAuth client-credentials).

Webhook notifications are only checked structurally (transmission headers);
their content is confirmed through the capture/order lookup, which is
therefore authoritative (`verify_via_lookup`).
"""
from __future__ import annotations

import time
from typing import Any, Mapping, Optional

from application.dtos.payments import CallbackStatus, RefundRequest, RefundResult
from infrastructure.external.payments.base import (
    BasePaymentClient,
    header,
    text,
    to_decimal,
)
from infrastructure.external.payments.exceptions import PaymentProviderError

# refresh the cached access token this many seconds before it expires
TOKEN_REFRESH_MARGIN = 60


class PayPalClient(BasePaymentClient):
    provider = "paypal"
    verify_via_lookup = True
    sandbox_base_url = "https://api-m.sandbox.paypal.com"
    live_base_url = "https://api-m.paypal.com"
    default_status = CallbackStatus.PENDING

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._access_token: Optional[str] = None
        self._token_expires_at: float = 0.0

    async def _token(self) -> str:
        if self._access_token and time.monotonic() < self._token_expires_at - TOKEN_REFRESH_MARGIN:
            return self._access_token
        client_id = self.credentials.get("client_id")
        client_secret = self.credentials.get("client_secret")
        if not client_id or not client_secret:
            raise PaymentProviderError("Missing PayPal client credentials", provider=self.provider)
        payload = await self._request_json(
            "POST",
            f"{self.base_url}/v1/oauth2/token",
            form={"grant_type": "client_credentials"},
            headers={"Accept": "application/json"},
            auth=(str(client_id), str(client_secret)),
        )
        token = payload.get("access_token")
        if not token:
            raise PaymentProviderError("PayPal token response without access_token", provider=self.provider)
        self._access_token = str(token)
        self._token_expires_at = time.monotonic() + float(payload.get("expires_in") or 0)
        self._log("oauth_token_refreshed", expires_in=payload.get("expires_in"))
        return self._access_token

    async def _auth_headers(self, request_id: Optional[str] = None) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {await self._token()}",
            "Content-Type": "application/json",
        }
        if request_id:
            headers["PayPal-Request-Id"] = request_id
        return headers

    def _validate(self, raw_body: bytes, headers: Mapping[str, str]) -> Optional[str]:
        if not header(headers, "paypal-transmission-id") or not header(headers, "paypal-transmission-time"):
            return "Missing PayPal webhook headers"
        return None

    @staticmethod
    def _capture_fields(resource: dict[str, Any]) -> dict[str, Any]:
        amount = resource.get("amount") or {}
        related = ((resource.get("supplementary_data") or {}).get("related_ids")) or {}
        return {
            "provider_transaction_id": text(resource.get("id")),
            "correlation_id": text(related.get("order_id")),
            "order_reference": text(resource.get("custom_id") or resource.get("invoice_id")),
            "amount": to_decimal(amount.get("value")),
            "currency": text(amount.get("currency_code")),
        }

    def _parse_payload(self, data: dict[str, Any]) -> dict[str, Any]:
        event_type = data.get("event_type")
        resource = data.get("resource") if isinstance(data.get("resource"), dict) else {}
        status = self._map_status(event_type)
        if event_type == "CHECKOUT.ORDER.APPROVED":
            # resource is the order itself; capture id arrives with the lookup
            fields = self._order_fields(resource)
        else:
            fields = self._capture_fields(resource)
        fields["status"] = status
        return fields

    def _parse_redirect(self, params: dict[str, Any]) -> dict[str, Any]:
        token = text(params.get("token"))
        payer_id = params.get("PayerID")
        cancelled = params.get("cancel") == "true" or (token and not payer_id)
        if cancelled:
            status = CallbackStatus.CANCELLED
        elif token and payer_id:
            status = CallbackStatus.PROCESSING
        else:
            status = CallbackStatus.PENDING
        return {
            "status": status,
            "correlation_id": token,
            "order_reference": text(params.get("ref") or params.get("orderRef")),
            "error_code": "CANCELLED" if cancelled else None,
            "error_message": "Payment was cancelled" if cancelled else None,
        }

    def _order_fields(self, order: dict[str, Any]) -> dict[str, Any]:
        units = order.get("purchase_units") or [{}]
        unit = units[0] if isinstance(units[0], dict) else {}
        captures = ((unit.get("payments") or {}).get("captures")) or []
        capture = captures[0] if captures and isinstance(captures[0], dict) else None
        card = ((order.get("payment_source") or {}).get("card")) or {}
        amount = (capture or unit).get("amount") or {}
        fields = {
            "status": self._map_status(capture.get("status") if capture else order.get("status")),
            # uncaptured orders are keyed by the order id until a capture exists
            "provider_transaction_id": text(capture.get("id")) if capture else text(order.get("id")),
            "correlation_id": text(order.get("id")),
            "order_reference": text(unit.get("custom_id") or unit.get("invoice_id") or unit.get("reference_id")),
            "amount": to_decimal(amount.get("value")),
            "currency": text(amount.get("currency_code")),
            "card_brand": text(card.get("brand")),
            "card_last_four": text(card.get("last_digits")),
        }
        return fields

    async def _lookup(self, provider_transaction_id, correlation_id):
        headers = await self._auth_headers()
        if provider_transaction_id and provider_transaction_id != correlation_id:
            capture = await self._request_json(
                "GET", f"{self.base_url}/v2/payments/captures/{provider_transaction_id}", headers=headers
            )
            fields = self._capture_fields(capture)
            fields["status"] = self._map_status(capture.get("status"))
            fields["correlation_id"] = fields.get("correlation_id") or correlation_id
            return fields, capture
        order = await self._request_json(
            "GET", f"{self.base_url}/v2/checkout/orders/{correlation_id}", headers=headers
        )
        return self._order_fields(order), order

    async def _refund(self, req: RefundRequest) -> RefundResult:
        payload = await self._request_json(
            "POST",
            f"{self.base_url}/v2/payments/captures/{req.provider_transaction_id}/refund",
            json_body={
                "amount": {"currency_code": req.currency, "value": f"{req.amount:.2f}"},
                "note_to_payer": req.reason or "Refund",
            },
            headers=await self._auth_headers(request_id=req.idempotency_key),
        )
        status = payload.get("status")
        if status not in ("COMPLETED", "PENDING"):
            raise PaymentProviderError(
                f"Refund status {status}",
                provider=self.provider,
                provider_code=text(status),
            )
        amount = payload.get("amount") or {}
        return RefundResult(
            success=True,
            refund_id=text(payload.get("id")),
            amount=to_decimal(amount.get("value")) or req.amount,
            raw=payload,
        )
