"""
Payments API routes (gateway-facing).

Webhooks are always acknowledged with 200 and the reconciliation outcome;
only an unexpected internal error yields 500 so the gateway retries.
Browser redirects end in a 303 to the storefront success or failure page.
Keep this thin: no gateway details here.
"""
from __future__ import annotations

import ipaddress
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import RedirectResponse
from starlette import status as http_status

from api.dependencies import get_reconciliation_service
from application.dtos.payments import ReconciliationResult
from application.services.reconciliation_service import ReconciliationService
from core.logging_config import get_logger
from core.response import success_response, webhook_ack
from core.settings import payment_settings
from domain.payment.entity import ReconciliationOutcome


router = APIRouter(prefix="/payments", tags=["Payments"])
logger = get_logger(__name__)


def _ip_allowed(request: Request) -> bool:
    """Optional IP allowlist (exact addresses or CIDR ranges)."""
    allowlist = payment_settings.webhook.ip_allowlist or []
    if not allowlist:
        return True
    remote_ip = request.client.host if request.client else None
    if not remote_ip:
        return False
    try:
        rip = ipaddress.ip_address(remote_ip)
    except ValueError:
        return False
    for entry in allowlist:
        try:
            if "/" in entry:
                if rip in ipaddress.ip_network(entry, strict=False):
                    return True
            elif rip == ipaddress.ip_address(entry):
                return True
        except ValueError:
            logger.warning("webhook_allowlist_entry_invalid", entry=entry)
    return False


def _with_query(url: str, params: dict) -> str:
    sep = "&" if "?" in url else "?"
    return f"{url}{sep}{urlencode(params)}"


@router.get("/webhooks/health", summary="Webhook liveness")
async def webhooks_health():
    return success_response(data={"status": "ok"}, message="Webhook endpoint is alive")


@router.post("/webhooks/{provider}", summary="Gateway webhook")
async def payments_webhook(
    provider: str,
    request: Request,
    store: Optional[str] = Query(default=None, description="Store slug"),
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    if not _ip_allowed(request):
        logger.warning(
            "webhook_ip_rejected",
            provider=provider,
            remote_ip=request.client.host if request.client else None,
        )
        result = ReconciliationResult(
            outcome=ReconciliationOutcome.UNAUTHORIZED, provider=provider, message="IP not allowed"
        )
        return webhook_ack(result, "Webhook rejected")

    raw_body = await request.body()
    headers = {k: v for k, v in request.headers.items()}
    result = await service.handle_webhook(provider, store, raw_body, headers)
    # 业务拒绝同样返回 200，避免网关无意义重试
    return webhook_ack(result)


@router.get("/redirect/{provider}", summary="Customer return from the hosted payment page")
async def payments_redirect(
    provider: str,
    request: Request,
    store: Optional[str] = Query(default=None, description="Store slug"),
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    params = {k: v for k, v in request.query_params.items() if k != "store"}
    result = await service.handle_redirect(provider, store, params)
    redirect = payment_settings.redirect
    if result.is_success and result.pending_payment_id:
        target = _with_query(redirect.success_url, {"ref": result.pending_payment_id})
    else:
        target = _with_query(redirect.failure_url, {"error": "payment_failed"})
    logger.info("payment_redirect_resolved", provider=provider, store=store, outcome=result.outcome.value)
    return RedirectResponse(url=target, status_code=http_status.HTTP_303_SEE_OTHER)
