"""
Payment-related settings using pydantic-settings v2 with nested env keys.

Kept apart from core.config.Settings so gateway and reconciliation tuning can
be overridden with PAYMENT__* style variables without touching app settings.
"""
from __future__ import annotations

from decimal import Decimal
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import BaseModel, Field


class PaymentTimeouts(BaseModel):
    connect: float = 1.0
    read: float = 5.0
    write: float = 5.0
    total: float = 10.0


class PaymentRetry(BaseModel):
    max: int = 2
    base_backoff: float = 0.2


class WebhookSettings(BaseModel):
    ip_allowlist: list[str] | None = None  # Optional IPs/CIDRs allowed to post webhooks


class ReconciliationSettings(BaseModel):
    amount_tolerance: Decimal = Decimal("0.01")
    match_scan_limit: int = 100
    pending_ttl_minutes: int = 30
    # False: a success arriving after expires_at is recorded but never confirms
    accept_late_confirmations: bool = False
    expiry_sweep_batch: int = 500
    expiry_sweep_interval_seconds: int = 300


class RedirectSettings(BaseModel):
    success_url: str = "http://localhost:3000/checkout/thank-you"
    failure_url: str = "http://localhost:3000/checkout"


class PaymentSettings(BaseSettings):
    timeouts: PaymentTimeouts = Field(default_factory=PaymentTimeouts)
    retry: PaymentRetry = Field(default_factory=PaymentRetry)
    webhook: WebhookSettings = Field(default_factory=WebhookSettings)
    reconciliation: ReconciliationSettings = Field(default_factory=ReconciliationSettings)
    redirect: RedirectSettings = Field(default_factory=RedirectSettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="PAYMENT__",
        case_sensitive=False,
        extra="allow",
        env_nested_delimiter="__",
    )


payment_settings = PaymentSettings()
