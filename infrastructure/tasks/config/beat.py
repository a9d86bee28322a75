"""Celery beat schedule configuration."""
from __future__ import annotations

from core.settings import payment_settings

CELERY_BEAT_SCHEDULE = {
    # pending payments past expires_at are swept to expired in batches
    "expire-pending-payments": {
        "task": "payments.expire_pending",
        "schedule": payment_settings.reconciliation.expiry_sweep_interval_seconds,
        "options": {"queue": "maintenance"},
    },
}
