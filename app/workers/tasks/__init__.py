"""
Celery Tasks Module.

All tasks are registered with the Celery app.

Sub-modules:
- subscription_tasks: Plus expiration sweep
"""
from __future__ import annotations

from .subscription_tasks import sweep_expired_subscriptions

__all__ = [
    "sweep_expired_subscriptions",
]
