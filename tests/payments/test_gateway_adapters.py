import base64
import hashlib
import hmac
import json
from decimal import Decimal

import httpx
import pytest

from application.dtos.payments import CallbackStatus, RefundRequest
from domain.payment.entity import PaymentProviderConfig
from domain.payment.service import UnsupportedProviderError
from infrastructure.external.payments import (
    DefaultPaymentGatewayFactory,
    canonical_provider,
    get_payment_gateway,
)
from infrastructure.external.payments.base import decode_body
from infrastructure.external.payments.paypal_client import PayPalClient
from infrastructure.external.payments.pelecard_client import PelecardClient
from infrastructure.external.payments.payplus_client import PayPlusClient
from infrastructure.external.payments.quick_payments_client import QuickPaymentsClient


def _config(provider, **credentials):
    return PaymentProviderConfig(id=1, store_id=1, provider=provider, credentials=credentials, test_mode=True)


def _client(cls, handler, **credentials):
    client = cls(
        transport=httpx.MockTransport(handler),
        retry={"max": 0, "base": 0.01},
    )
    client.configure(_config(cls.provider, **credentials))
    return client


# ---------------------------------------------------------------------------
# Factory and helpers
# ---------------------------------------------------------------------------


def test_provider_aliases_resolve_to_canonical_names():
    assert canonical_provider("PayPlus") == "payplus"
    assert canonical_provider("quick-payments") == "quick_payments"
    assert canonical_provider("payme") == "quick_payments"
    with pytest.raises(UnsupportedProviderError):
        canonical_provider("stripe")
    with pytest.raises(UnsupportedProviderError):
        canonical_provider(None)


def test_factory_builds_configured_adapter():
    factory = DefaultPaymentGatewayFactory()
    gateway = factory.create("pelecard", _config("pelecard", terminal="0962210"))

    assert isinstance(gateway, PelecardClient)
    assert gateway.verify_via_lookup is True
    assert gateway.credentials["terminal"] == "0962210"
    assert isinstance(get_payment_gateway("quick"), QuickPaymentsClient)


def test_decode_body_accepts_json_and_form():
    assert decode_body(b'{"a": 1}') == {"a": 1}
    assert decode_body(b"a=1&b=") == {"a": "1", "b": ""}
    assert decode_body(b"") == {}
    assert decode_body(b"[1, 2]") == {}


# ---------------------------------------------------------------------------
# PayPlus
# ---------------------------------------------------------------------------


PAYPLUS_CALLBACK = {
    "transaction": {
        "uid": "tx-1001",
        "payment_page_request_uid": "page-req-1",
        "status_code": "000",
        "amount": "150.00",
        "currency": "ILS",
        "approval_number": "0123456",
        "more_info": "ORD-7731",
    },
    "data": {"card_information": {"four_digits": "4242", "brand_id": "visa"}},
}


def _payplus_headers(body: bytes, secret: str = "shh") -> dict:
    digest = hmac.new(secret.encode(), body, hashlib.sha256).digest()
    return {"User-Agent": "PayPlus", "hash": base64.b64encode(digest).decode()}


def test_payplus_signature_validation():
    client = PayPlusClient()
    client.configure(_config("payplus", api_key="k", secret_key="shh"))
    body = json.dumps(PAYPLUS_CALLBACK).encode()

    assert client.validate_webhook(body, _payplus_headers(body)).is_valid
    tampered = body.replace(b"150.00", b"1.00")
    assert not client.validate_webhook(tampered, _payplus_headers(body)).is_valid
    wrong_agent = {**_payplus_headers(body), "User-Agent": "curl"}
    assert client.validate_webhook(body, wrong_agent).error == "Invalid User-Agent header"
    assert not client.validate_webhook(body, {"User-Agent": "PayPlus"}).is_valid


def test_payplus_parses_nested_and_legacy_layouts():
    client = PayPlusClient()
    nested = client.parse_callback(json.dumps(PAYPLUS_CALLBACK).encode())

    assert nested.success is True
    assert nested.provider_transaction_id == "tx-1001"
    assert nested.correlation_id == "page-req-1"
    assert nested.order_reference == "ORD-7731"
    assert nested.amount == Decimal("150.00")
    assert nested.card_last_four == "4242"

    legacy = client.parse_callback(
        b"transaction_uid=tx-9&page_request_uid=page-9&status_code=003&amount=20&error_message=Declined"
    )
    assert legacy.status == CallbackStatus.FAILED
    assert legacy.provider_transaction_id == "tx-9"
    assert legacy.currency == "ILS"
    assert legacy.error_message == "Declined"


@pytest.mark.asyncio
async def test_payplus_status_lookup():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        seen["api_key"] = request.headers.get("api-key")
        return httpx.Response(200, json={"results": {"status": "success"}, "data": PAYPLUS_CALLBACK})

    client = _client(PayPlusClient, handler, api_key="k", secret_key="shh")
    result = await client.get_transaction_status(correlation_id="page-req-1")
    await client.aclose()

    assert seen["path"].endswith("/PaymentPages/ipn")
    assert seen["body"] == {"payment_request_uid": "page-req-1"}
    assert seen["api_key"] == "k"
    assert result.success is True
    assert result.amount == Decimal("150.00")


@pytest.mark.asyncio
async def test_payplus_lookup_http_error_returns_none():
    client = _client(PayPlusClient, lambda request: httpx.Response(500, json={"message": "boom"}))

    assert await client.get_transaction_status(provider_transaction_id="tx-1") is None
    assert await client.get_transaction_status() is None


@pytest.mark.asyncio
async def test_payplus_refund_rejection_is_a_result_not_an_exception():
    def handler(request):
        return httpx.Response(200, json={"results": {"status": "error", "code": 77, "description": "Too late"}})

    client = _client(PayPlusClient, handler, api_key="k", secret_key="shh")
    result = await client.refund(RefundRequest(provider_transaction_id="tx-1", amount=Decimal("10")))

    assert result.success is False
    assert result.error_code == "77"
    assert result.error_message == "Too late"


# ---------------------------------------------------------------------------
# PayPal
# ---------------------------------------------------------------------------


def _paypal_handler(calls):
    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        path = request.url.path
        if path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "A21", "expires_in": 32400})
        if path == "/v2/payments/captures/CAP-1":
            return httpx.Response(200, json={
                "id": "CAP-1",
                "status": "COMPLETED",
                "amount": {"value": "150.00", "currency_code": "ILS"},
                "custom_id": "ORD-7731",
                "supplementary_data": {"related_ids": {"order_id": "ORDER-1"}},
            })
        if path == "/v2/payments/captures/CAP-1/refund":
            return httpx.Response(201, json={
                "id": "RF-1", "status": "COMPLETED", "amount": {"value": "20.00", "currency_code": "ILS"},
            })
        return httpx.Response(404, json={"message": "not found"})

    return handler


def test_paypal_parses_capture_webhook():
    client = PayPalClient()
    body = json.dumps({
        "event_type": "PAYMENT.CAPTURE.COMPLETED",
        "resource": {
            "id": "CAP-1",
            "amount": {"value": "150.00", "currency_code": "ILS"},
            "custom_id": "ORD-7731",
            "supplementary_data": {"related_ids": {"order_id": "ORDER-1"}},
        },
    }).encode()

    result = client.parse_callback(body)

    assert result.success is True
    assert result.provider_transaction_id == "CAP-1"
    assert result.correlation_id == "ORDER-1"
    assert not client.validate_webhook(body, {}).is_valid
    assert client.validate_webhook(
        body, {"PAYPAL-TRANSMISSION-ID": "t1", "PAYPAL-TRANSMISSION-TIME": "2026-03-01T12:00:00Z"}
    ).is_valid


def test_paypal_redirect_statuses():
    client = PayPalClient()
    assert client.parse_redirect({"token": "ORDER-1", "PayerID": "P1"}).status == CallbackStatus.PROCESSING
    cancelled = client.parse_redirect({"token": "ORDER-1"})
    assert cancelled.status == CallbackStatus.CANCELLED
    assert cancelled.error_code == "CANCELLED"


@pytest.mark.asyncio
async def test_paypal_lookup_reuses_access_token():
    calls = []
    client = _client(PayPalClient, _paypal_handler(calls), client_id="id", client_secret="secret")

    first = await client.get_transaction_status(provider_transaction_id="CAP-1", correlation_id="ORDER-1")
    second = await client.get_transaction_status(provider_transaction_id="CAP-1", correlation_id="ORDER-1")

    assert first.success is True
    assert first.amount == Decimal("150.00")
    assert second.provider_transaction_id == "CAP-1"
    token_calls = [c for c in calls if c.url.path == "/v1/oauth2/token"]
    assert len(token_calls) == 1
    assert calls[-1].headers["Authorization"] == "Bearer A21"


@pytest.mark.asyncio
async def test_paypal_refund_sends_request_id():
    calls = []
    client = _client(PayPalClient, _paypal_handler(calls), client_id="id", client_secret="secret")

    result = await client.refund(
        RefundRequest(provider_transaction_id="CAP-1", amount=Decimal("20"), idempotency_key="k" * 64)
    )

    assert result.success is True
    assert result.refund_id == "RF-1"
    refund_call = calls[-1]
    assert refund_call.headers["PayPal-Request-Id"] == "k" * 64
    assert json.loads(refund_call.content)["amount"] == {"currency_code": "ILS", "value": "20.00"}


@pytest.mark.asyncio
async def test_paypal_without_credentials_cannot_look_up():
    client = _client(PayPalClient, _paypal_handler([]))
    assert await client.get_transaction_status(provider_transaction_id="CAP-1") is None


# ---------------------------------------------------------------------------
# Pelecard
# ---------------------------------------------------------------------------


def test_pelecard_callback_needs_transaction_id():
    client = PelecardClient()
    assert not client.validate_webhook(b"PelecardStatusCode=000", {}).is_valid
    assert client.validate_webhook(b"PelecardTransactionId=PC-1&PelecardStatusCode=000", {}).is_valid

    declined = client.parse_callback(b"PelecardTransactionId=PC-1&PelecardStatusCode=033")
    assert declined.status == CallbackStatus.FAILED
    assert declined.provider_transaction_id == "PC-1"


@pytest.mark.asyncio
async def test_pelecard_lookup_converts_agorot_and_card():
    def handler(request):
        assert request.url.path.endswith("/GetTransaction")
        assert json.loads(request.content)["TransactionId"] == "PC-1"
        return httpx.Response(200, json={
            "StatusCode": "000",
            "ResultData": {
                "DebitTotal": "15000",
                "CreditCardNumber": "458000******1234",
                "CreditCardBrand": "1",
                "ApprovalNo": "0099",
            },
        })

    client = _client(PelecardClient, handler, terminal="0962210", user="u", password="p")
    result = await client.get_transaction_status(provider_transaction_id="PC-1")

    assert result.success is True
    assert result.amount == Decimal("150")
    assert result.currency == "ILS"
    assert result.card_brand == "visa"
    assert result.card_last_four == "1234"
    assert result.approval_number == "0099"


@pytest.mark.asyncio
async def test_pelecard_refund_network_failure_is_not_retried():
    attempts = []

    def handler(request):
        attempts.append(request)
        raise httpx.ConnectError("connection refused", request=request)

    client = PelecardClient(transport=httpx.MockTransport(handler), retry={"max": 3, "base": 0.01})
    client.configure(_config("pelecard", terminal="0962210"))
    result = await client.refund(RefundRequest(provider_transaction_id="PC-1", amount=Decimal("5")))

    assert result.success is False
    assert result.error_code == "PaymentRecoverableError"
    assert len(attempts) == 1


# ---------------------------------------------------------------------------
# QuickPayments
# ---------------------------------------------------------------------------


def _quick_body(secret="s3cret", **overrides):
    fields = {
        "payme_sale_id": "SALE-1",
        "seller_payme_id": "MPL-1",
        "sale_status": "completed",
        "sale_price": "15000",
        "transaction_id": "ORD-7731",
        "four_digits": "4242",
    }
    fields.update(overrides)
    fields.setdefault(
        "payme_signature",
        hashlib.md5(f"{fields['seller_payme_id']}{fields['payme_sale_id']}{secret}".encode()).hexdigest(),
    )
    return "&".join(f"{k}={v}" for k, v in fields.items()).encode()


def test_quick_payments_validation():
    client = QuickPaymentsClient()
    client.configure(_config("quick_payments", seller_payme_id="MPL-1", seller_secret="s3cret"))

    assert client.validate_webhook(_quick_body(), {}).is_valid
    assert client.validate_webhook(_quick_body(secret="other"), {}).error == "Invalid payme_signature"
    assert client.validate_webhook(_quick_body(seller_payme_id="MPL-2"), {}).error == "Seller ID mismatch"


def test_quick_payments_parse_minor_units():
    result = QuickPaymentsClient().parse_callback(_quick_body())

    assert result.success is True
    assert result.amount == Decimal("150")
    assert result.provider_transaction_id == "SALE-1"
    assert result.order_reference == "ORD-7731"


def test_quick_payments_redirect_status_code():
    client = QuickPaymentsClient()
    assert client.parse_redirect({"payme_sale_id": "SALE-1", "status_code": "0"}).success is True
    failed = client.parse_redirect({"payme_sale_id": "SALE-1", "status_code": "1"})
    assert failed.status == CallbackStatus.FAILED
    assert failed.error_code == "1"


@pytest.mark.asyncio
async def test_quick_payments_refund():
    def handler(request):
        body = json.loads(request.content)
        assert body["sale_refund_amount"] == 5000
        return httpx.Response(200, json={
            "status_code": 0, "payme_transaction_id": "RF-9", "payme_transaction_total": 5000,
        })

    client = _client(QuickPaymentsClient, handler, seller_payme_id="MPL-1")
    result = await client.refund(RefundRequest(provider_transaction_id="SALE-1", amount=Decimal("50.00")))

    assert result.success is True
    assert result.refund_id == "RF-9"
    assert result.amount == Decimal("50")
