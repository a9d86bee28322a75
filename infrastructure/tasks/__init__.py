"""Celery plumbing for payment background jobs.

The API process only needs the dispatcher (event fan-out); workers and beat
import the app, which registers ``infrastructure.tasks.tasks``.
"""
from .config.celery import celery_app
from .utils.dispatcher import TaskDispatcher

__all__ = ["celery_app", "TaskDispatcher"]
