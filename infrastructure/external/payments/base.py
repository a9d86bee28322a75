"""
Base payment client implementing shared concerns: http, retry, logging, mapping.

Concrete providers subclass and implement the gateway-specific hooks
(`_validate`, `_parse_payload`, `_parse_redirect`, `_lookup`, `_refund`).
The public methods defined here turn every gateway misbehaviour into a typed
result so callers never see transport exceptions.
"""
from __future__ import annotations

import json
from contextlib import asynccontextmanager
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Mapping, Optional
from urllib.parse import parse_qsl

import httpx
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential, retry_if_exception_type

from core.logging_config import get_logger
from core.settings import payment_settings
from application.dtos.payments import (
    CallbackResult,
    CallbackStatus,
    RefundRequest,
    RefundResult,
    WebhookValidation,
)
from application.ports.payment_gateway import PaymentGateway
from domain.payment.entity import PaymentProviderConfig
from infrastructure.external.payments.exceptions import (
    GatewayCallError,
    PaymentProviderError,
    PaymentRecoverableError,
)
from shared.codes.payment_codes import PROVIDER_STATUS_TO_INTERNAL


logger = get_logger(__name__)


def decode_body(raw_body: bytes) -> dict[str, Any]:
    """JSON 优先，失败时按 form-urlencoded 解析；永不抛异常"""
    if not raw_body:
        return {}
    try:
        text = raw_body.decode("utf-8")
    except UnicodeDecodeError:
        text = raw_body.decode("latin-1")
    try:
        data = json.loads(text)
    except ValueError:
        return dict(parse_qsl(text, keep_blank_values=True))
    return data if isinstance(data, dict) else {}


def header(headers: Mapping[str, str], name: str) -> Optional[str]:
    """Case-insensitive header lookup."""
    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            return value
    return None


def text(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)


def to_decimal(value: Any) -> Optional[Decimal]:
    if value in (None, ""):
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def minor_to_decimal(value: Any) -> Optional[Decimal]:
    """Minor units (agorot/cents) to a major-unit Decimal."""
    amount = to_decimal(value)
    if amount is None:
        return None
    return amount / Decimal(100)


def to_minor(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).to_integral_value())


class BasePaymentClient(PaymentGateway):
    provider: str = "base"
    verify_via_lookup: bool = False
    sandbox_base_url: str = ""
    live_base_url: str = ""
    # status used when the gateway code is unknown
    default_status: CallbackStatus = CallbackStatus.FAILED

    def __init__(
        self,
        *,
        timeouts: Optional[dict[str, float]] = None,
        retry: Optional[dict[str, Any]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._timeouts_cfg = timeouts or payment_settings.timeouts.model_dump()
        self._retry_cfg = retry or {"max": payment_settings.retry.max, "base": payment_settings.retry.base_backoff}
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self.config_id: Optional[int] = None
        self.credentials: dict[str, Any] = {}
        self.settings: dict[str, Any] = {}
        self.test_mode: bool = True

    def configure(self, config: PaymentProviderConfig) -> None:
        self.config_id = config.id
        self.credentials = dict(config.credentials or {})
        self.settings = dict(config.settings or {})
        self.test_mode = config.test_mode

    @property
    def base_url(self) -> str:
        override = self.settings.get("base_url")
        if override:
            return str(override).rstrip("/")
        return self.sandbox_base_url if self.test_mode else self.live_base_url

    @property
    def timeouts(self) -> httpx.Timeout:
        return httpx.Timeout(
            connect=self._timeouts_cfg["connect"],
            read=self._timeouts_cfg["read"],
            write=self._timeouts_cfg["write"],
            timeout=self._timeouts_cfg["total"],
        )

    @asynccontextmanager
    async def client(self):
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeouts, transport=self._transport)
        try:
            yield self._client
        finally:
            # Keep open for reuse; explicit aclose() will close.
            ...

    async def aclose(self) -> None:
        """Close underlying HTTP client if created."""
        if self._client is not None:
            try:
                await self._client.aclose()
            finally:
                self._client = None

    async def _retry(self, fn: Callable[[], Any]):
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(int(self._retry_cfg["max"]) + 1),
            wait=wait_exponential(multiplier=self._retry_cfg["base"], min=0.1, max=2.0),
            retry=retry_if_exception_type((httpx.TimeoutException, httpx.TransportError)),
            reraise=True,
        ):
            with attempt:
                return await fn()

    async def _request_json(
        self,
        method: str,
        url: str,
        *,
        json_body: Optional[dict] = None,
        form: Optional[dict] = None,
        headers: Optional[dict[str, str]] = None,
        auth: Optional[tuple[str, str]] = None,
        retry: bool = True,
    ) -> dict[str, Any]:
        """发送请求并返回 JSON 对象；非 2xx 或格式错误抛 PaymentProviderError"""

        async def _send() -> httpx.Response:
            async with self.client() as c:
                return await c.request(method, url, json=json_body, data=form, headers=headers, auth=auth)

        try:
            resp = await (self._retry(_send) if retry else _send())
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            raise PaymentRecoverableError(
                str(exc) or "Gateway unreachable", provider=self.provider
            ) from exc

        try:
            payload = resp.json()
        except ValueError:
            payload = None

        if resp.status_code >= 400:
            message = None
            if isinstance(payload, dict):
                message = payload.get("message") or payload.get("error_description") or payload.get("description")
            raise PaymentProviderError(
                message or f"Gateway returned HTTP {resp.status_code}",
                provider=self.provider,
                provider_code=str(resp.status_code),
            )
        if not isinstance(payload, dict):
            raise PaymentProviderError("Malformed gateway response", provider=self.provider)
        return payload

    # ------------------------------------------------------------------
    # Public capability surface
    # ------------------------------------------------------------------

    def validate_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> WebhookValidation:
        try:
            error = self._validate(raw_body or b"", headers or {})
        except (ValueError, TypeError, KeyError) as exc:
            error = f"Validation error: {exc}"
        if error:
            self._log("webhook_validation_failed", error=error)
            return WebhookValidation(is_valid=False, error=error)
        return WebhookValidation(is_valid=True)

    def parse_callback(self, raw_body: bytes) -> CallbackResult:
        data = decode_body(raw_body)
        try:
            fields = self._parse_payload(data)
        except (ValueError, TypeError, AttributeError) as exc:
            self._log("callback_parse_failed", error=str(exc))
            fields = {}
        return self._result(fields, data)

    def parse_redirect(self, params: Mapping[str, str]) -> CallbackResult:
        data = dict(params or {})
        try:
            fields = self._parse_redirect(data)
        except (ValueError, TypeError, AttributeError) as exc:
            self._log("redirect_parse_failed", error=str(exc))
            fields = {}
        return self._result(fields, data)

    async def get_transaction_status(
        self,
        *,
        provider_transaction_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> Optional[CallbackResult]:
        if not (provider_transaction_id or correlation_id):
            return None
        try:
            found = await self._lookup(provider_transaction_id, correlation_id)
        except GatewayCallError as exc:
            self._log(
                "status_lookup_failed",
                error=exc.message,
                provider_transaction_id=provider_transaction_id,
                correlation_id=correlation_id,
            )
            return None
        if found is None:
            return None
        fields, raw = found
        return self._result(fields, raw)

    async def refund(self, req: RefundRequest) -> RefundResult:
        self._log("refund_request", provider_transaction_id=req.provider_transaction_id, amount=str(req.amount))
        try:
            result = await self._refund(req)
        except GatewayCallError as exc:
            self._log("refund_failed", error=exc.message, error_type=exc.error_type)
            return RefundResult(
                success=False,
                error_code=exc.provider_code or exc.error_type,
                error_message=exc.message,
            )
        self._log("refund_response", success=result.success, refund_id=result.refund_id, error_code=result.error_code)
        return result

    # ------------------------------------------------------------------
    # Gateway hooks
    # ------------------------------------------------------------------

    def _validate(self, raw_body: bytes, headers: Mapping[str, str]) -> Optional[str]:
        """Return an error message, or None when the proof checks out."""
        return None

    def _parse_payload(self, data: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def _parse_redirect(self, params: dict[str, Any]) -> dict[str, Any]:
        return self._parse_payload(params)

    async def _lookup(
        self,
        provider_transaction_id: Optional[str],
        correlation_id: Optional[str],
    ) -> Optional[tuple[dict[str, Any], dict[str, Any]]]:
        return None

    async def _refund(self, req: RefundRequest) -> RefundResult:
        raise PaymentProviderError("Refund is not supported", provider=self.provider)

    # Helpers
    def _map_status(self, provider_status: Any) -> CallbackStatus:
        mapping = PROVIDER_STATUS_TO_INTERNAL.get(self.provider, {})
        mapped = mapping.get(str(provider_status or ""))
        return CallbackStatus(mapped) if mapped else self.default_status

    def _result(self, fields: dict[str, Any], raw: dict[str, Any]) -> CallbackResult:
        status = fields.pop("status", None) or CallbackStatus.PENDING
        return CallbackResult(
            provider=self.provider,
            success=status == CallbackStatus.SUCCESS,
            status=status,
            raw=raw,
            **fields,
        )

    def _log(self, event: str, **kwargs) -> None:
        logger.info(
            event,
            provider=self.provider,
            **kwargs,
        )
