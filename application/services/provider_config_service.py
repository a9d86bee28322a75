"""
支付渠道配置应用服务（店铺后台使用）

业务规则：
1. 同一店铺同一渠道只有一条配置
2. 第一条启用中的配置自动成为默认渠道；停用配置时同时取消默认
3. 凭据对外只返回掩码，更新时掩码值表示保持原值
"""
from __future__ import annotations

from typing import Callable, List

from application.dtos.checkout import (
    ProviderConfigCreateDTO,
    ProviderConfigResponseDTO,
    ProviderConfigUpdateDTO,
)
from application.ports.payment_gateway import PaymentGatewayFactory
from core.logging_config import get_logger
from domain.common.exceptions import (
    DomainValidationException,
    ProviderConfigAlreadyExistsException,
    ProviderConfigNotFoundException,
    StoreNotFoundException,
)
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.entity import PaymentProviderConfig, _utcnow
from domain.store.entity import Store


logger = get_logger(__name__)


class ProviderConfigService:
    def __init__(self, uow_factory: Callable[..., AbstractUnitOfWork], gateways: PaymentGatewayFactory) -> None:
        self._uow_factory = uow_factory
        self._gateways = gateways

    @staticmethod
    async def _store(uow: AbstractUnitOfWork, store_slug: str) -> Store:
        store = await uow.store_repository.get_by_slug(store_slug)
        if store is None:
            raise StoreNotFoundException(store_slug)
        return store

    async def _config(self, uow: AbstractUnitOfWork, store: Store, provider: str) -> PaymentProviderConfig:
        name = self._gateways.canonical(provider)
        config = await uow.provider_config_repository.get_by_store_and_provider(store.id, name)
        if config is None:
            raise ProviderConfigNotFoundException(name)
        return config

    async def list_configs(self, store_slug: str) -> List[ProviderConfigResponseDTO]:
        async with self._uow_factory(readonly=True) as uow:
            store = await self._store(uow, store_slug)
            configs = await uow.provider_config_repository.list_by_store(store.id)
        return [ProviderConfigResponseDTO.from_entity(c) for c in configs]

    async def get_config(self, store_slug: str, provider: str) -> ProviderConfigResponseDTO:
        async with self._uow_factory(readonly=True) as uow:
            store = await self._store(uow, store_slug)
            config = await self._config(uow, store, provider)
        return ProviderConfigResponseDTO.from_entity(config)

    async def create_config(self, store_slug: str, dto: ProviderConfigCreateDTO) -> ProviderConfigResponseDTO:
        name = self._gateways.canonical(dto.provider)
        async with self._uow_factory() as uow:
            store = await self._store(uow, store_slug)
            repo = uow.provider_config_repository
            if await repo.get_by_store_and_provider(store.id, name) is not None:
                raise ProviderConfigAlreadyExistsException(name)
            is_default = dto.is_active and await repo.count_active(store.id) == 0
            config = await repo.create(
                PaymentProviderConfig(
                    id=None,
                    store_id=store.id,
                    provider=name,
                    display_name=dto.display_name,
                    credentials=dict(dto.credentials),
                    settings=dict(dto.settings),
                    is_active=dto.is_active,
                    is_default=is_default,
                    test_mode=dto.test_mode,
                )
            )
        return ProviderConfigResponseDTO.from_entity(config)

    async def update_config(
        self, store_slug: str, provider: str, dto: ProviderConfigUpdateDTO
    ) -> ProviderConfigResponseDTO:
        async with self._uow_factory() as uow:
            store = await self._store(uow, store_slug)
            config = await self._config(uow, store, provider)
            if dto.display_name is not None:
                config.display_name = dto.display_name
            if dto.credentials is not None:
                config.merge_credentials(dto.credentials)
            if dto.settings is not None:
                config.settings = {**config.settings, **dto.settings}
            if dto.test_mode is not None:
                config.test_mode = dto.test_mode
            if dto.is_active is False:
                config.deactivate()
            elif dto.is_active:
                config.is_active = True
            config.updated_at = _utcnow()
            config = await uow.provider_config_repository.update(config)
        return ProviderConfigResponseDTO.from_entity(config)

    async def set_default(self, store_slug: str, provider: str) -> ProviderConfigResponseDTO:
        async with self._uow_factory() as uow:
            store = await self._store(uow, store_slug)
            config = await self._config(uow, store, provider)
            if not config.is_active:
                raise DomainValidationException("停用的支付渠道不能设为默认", field="provider")
            await uow.provider_config_repository.clear_default(store.id)
            config.is_default = True
            config = await uow.provider_config_repository.update(config)
        logger.info("provider_config_default_changed", store=store_slug, provider=config.provider)
        return ProviderConfigResponseDTO.from_entity(config)

    async def delete_config(self, store_slug: str, provider: str) -> None:
        async with self._uow_factory() as uow:
            store = await self._store(uow, store_slug)
            config = await self._config(uow, store, provider)
            await uow.provider_config_repository.delete(config.id)
