"""HTTP-backed collaborators: outbound message delivery and agent notifications."""
from channels.notifications import WebhookNotifier, create_notifier
from channels.outbound import HttpOutboundDelivery, create_delivery

__all__ = [
    "HttpOutboundDelivery", "create_delivery",
    "WebhookNotifier", "create_notifier",
]
