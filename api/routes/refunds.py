"""
退款API路由 - 操作员对已支付订单发起全额或部分退款
"""
from fastapi import APIRouter, Depends

from api.dependencies import get_refund_service
from application.dtos.checkout import OrderRefundDTO, RefundResponseDTO
from application.services.refund_service import RefundService
from core.response import Response as ApiResponse, success_response

router = APIRouter(
    prefix="/stores/{store_slug}/orders",
    tags=["退款"]
)


@router.post("/{order_id}/refund", summary="订单退款", response_model=ApiResponse[RefundResponseDTO])
async def refund_order(
    store_slug: str,
    order_id: int,
    payload: OrderRefundDTO,
    service: RefundService = Depends(get_refund_service)
):
    """
    订单退款

    - **amount**: 退款金额，为空时退还全部剩余可退金额
    - **reason**: 退款原因（可选）

    网关拒绝时返回 502，错误信息为网关原文。
    """
    result = await service.refund_order(store_slug, order_id, amount=payload.amount, reason=payload.reason)
    return success_response(data=result, message="Refund processed")
