"""
Live notification fan-out.

The dispatcher tails entity streams and the subscription registry pushes
each event to the clients subscribed to its topic.
"""

from .dispatcher import NotificationDispatcher
from .registry import Connection, Notification, SubscriptionRegistry, Transport

__all__ = [
    "NotificationDispatcher",
    "SubscriptionRegistry",
    "Connection",
    "Notification",
    "Transport",
]
