"""Small dispatching helpers to decouple Celery from callers."""
from __future__ import annotations

from typing import Any, Dict

from ..config.celery import celery_app


class TaskDispatcher:
    """Internal facade used by higher layers to schedule tasks."""

    def notify_payment_event(self, payload: Dict[str, Any]) -> None:
        """Fire-and-forget hand-off of a serialized payment event."""
        self.enqueue("payments.notify_event", kwargs={"payload": payload})

    def enqueue(self, task_name: str, *, args: tuple | None = None, kwargs: Dict[str, Any] | None = None) -> None:
        """Generic escape hatch for scheduling arbitrary tasks by name."""
        celery_app.send_task(task_name, args=args or (), kwargs=kwargs or {})
