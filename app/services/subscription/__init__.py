from .lifecycle import SubscriptionLifecycleManager, SweepResult, WebhookEvent, WebhookOutcome

__all__ = [
    "SubscriptionLifecycleManager",
    "SweepResult",
    "WebhookEvent",
    "WebhookOutcome",
]
