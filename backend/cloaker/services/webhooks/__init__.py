"""Webhook notifications for click decisions."""
from .dispatcher import (
    WebhookDelivery,
    WebhookDispatcher,
    backoff_delay,
    build_payload,
    get_webhook_dispatcher,
    select_event_type,
)

__all__ = [
    "WebhookDelivery",
    "WebhookDispatcher",
    "backoff_delay",
    "build_payload",
    "get_webhook_dispatcher",
    "select_event_type",
]
