"""
支付渠道配置API路由 - 店铺后台管理各支付渠道的凭据与开关
"""
from typing import Any, List

from fastapi import APIRouter, Depends

from api.dependencies import get_provider_config_service
from application.dtos.checkout import (
    ProviderConfigCreateDTO,
    ProviderConfigResponseDTO,
    ProviderConfigUpdateDTO,
)
from application.services.provider_config_service import ProviderConfigService
from core.response import Response as ApiResponse, success_response

router = APIRouter(
    prefix="/stores/{store_slug}/payment-providers",
    tags=["支付渠道配置"]
)


@router.get("", summary="支付渠道列表", response_model=ApiResponse[List[ProviderConfigResponseDTO]])
async def list_provider_configs(
    store_slug: str,
    service: ProviderConfigService = Depends(get_provider_config_service)
):
    """凭据以掩码返回，包含交易笔数与交易额统计"""
    configs = await service.list_configs(store_slug)
    return success_response(data=configs)


@router.post("", summary="新增支付渠道", response_model=ApiResponse[ProviderConfigResponseDTO])
async def create_provider_config(
    store_slug: str,
    payload: ProviderConfigCreateDTO,
    service: ProviderConfigService = Depends(get_provider_config_service)
):
    """
    新增支付渠道配置

    - **provider**: payplus / paypal / pelecard / quick_payments
    - 店铺第一条启用中的配置自动成为默认渠道
    """
    config = await service.create_config(store_slug, payload)
    return success_response(data=config, message="Provider configured")


@router.get("/{provider}", summary="获取支付渠道", response_model=ApiResponse[ProviderConfigResponseDTO])
async def get_provider_config(
    store_slug: str,
    provider: str,
    service: ProviderConfigService = Depends(get_provider_config_service)
):
    return success_response(data=await service.get_config(store_slug, provider))


@router.patch("/{provider}", summary="更新支付渠道", response_model=ApiResponse[ProviderConfigResponseDTO])
async def update_provider_config(
    store_slug: str,
    provider: str,
    payload: ProviderConfigUpdateDTO,
    service: ProviderConfigService = Depends(get_provider_config_service)
):
    """凭据按键合并；传回掩码值的键保持原值。停用默认渠道会同时取消默认。"""
    config = await service.update_config(store_slug, provider, payload)
    return success_response(data=config, message="Provider updated")


@router.post("/{provider}/default", summary="设为默认渠道", response_model=ApiResponse[ProviderConfigResponseDTO])
async def set_default_provider(
    store_slug: str,
    provider: str,
    service: ProviderConfigService = Depends(get_provider_config_service)
):
    config = await service.set_default(store_slug, provider)
    return success_response(data=config, message="Default provider updated")


@router.delete("/{provider}", summary="删除支付渠道", response_model=ApiResponse[Any])
async def delete_provider_config(
    store_slug: str,
    provider: str,
    service: ProviderConfigService = Depends(get_provider_config_service)
):
    await service.delete_config(store_slug, provider)
    return success_response(data=None, message="Provider deleted")
