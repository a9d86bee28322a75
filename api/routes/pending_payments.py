"""
待支付记录API路由 - 结账发起与下单服务领取
"""
from typing import List

from fastapi import APIRouter, Depends, Query

from api.dependencies import get_pending_payment_service
from application.dtos.checkout import (
    CorrelationAttachDTO,
    PendingPaymentCreateDTO,
    PendingPaymentResponseDTO,
)
from application.services.pending_payment_service import PendingPaymentService
from core.config import settings
from core.response import Response as ApiResponse, success_response

router = APIRouter(
    prefix="/stores/{store_slug}/pending-payments",
    tags=["待支付记录"]
)


@router.post("", summary="发起结账", response_model=ApiResponse[PendingPaymentResponseDTO])
async def create_pending_payment(
    store_slug: str,
    payload: PendingPaymentCreateDTO,
    service: PendingPaymentService = Depends(get_pending_payment_service)
):
    """
    保存购物车快照并计算应付金额

    应付金额 = Σ(单价 × 数量) + 运费 − 折扣 − 余额抵扣，由服务端计算。
    """
    payment = await service.create(store_slug, payload)
    return success_response(data=payment, message="Pending payment created")


@router.get("/confirmed", summary="已确认未领取的支付", response_model=ApiResponse[List[PendingPaymentResponseDTO]])
async def list_confirmed_payments(
    store_slug: str,
    limit: int = Query(settings.MAX_PAGE_SIZE, ge=1, le=500, description="最大返回条数"),
    service: PendingPaymentService = Depends(get_pending_payment_service)
):
    payments = await service.list_confirmed(store_slug, limit=limit)
    return success_response(data=payments)


@router.get("/{pending_payment_id}", summary="获取待支付记录", response_model=ApiResponse[PendingPaymentResponseDTO])
async def get_pending_payment(
    store_slug: str,
    pending_payment_id: str,
    service: PendingPaymentService = Depends(get_pending_payment_service)
):
    return success_response(data=await service.get(store_slug, pending_payment_id))


@router.put(
    "/{pending_payment_id}/correlation",
    summary="绑定网关请求ID",
    response_model=ApiResponse[PendingPaymentResponseDTO],
)
async def attach_correlation(
    store_slug: str,
    pending_payment_id: str,
    payload: CorrelationAttachDTO,
    service: PendingPaymentService = Depends(get_pending_payment_service)
):
    """网关创建支付页后回填其请求ID（仅 pending 状态）"""
    payment = await service.attach_correlation(store_slug, pending_payment_id, payload.correlation_id)
    return success_response(data=payment, message="Correlation id attached")


@router.post(
    "/{pending_payment_id}/claim",
    summary="领取已确认支付",
    response_model=ApiResponse[PendingPaymentResponseDTO],
)
async def claim_pending_payment(
    store_slug: str,
    pending_payment_id: str,
    service: PendingPaymentService = Depends(get_pending_payment_service)
):
    """下单服务领取已确认的支付；重复领取返回 409"""
    payment = await service.claim(store_slug, pending_payment_id)
    return success_response(data=payment, message="Pending payment claimed")
