"""
Notification module for the batch monitor.
Fans out status, progress and console events to subscribers.
"""

from .hub import NotificationHub, Subscription
from .events import status_event, progress_event, console_event

__all__ = [
    "NotificationHub",
    "Subscription",
    "status_event",
    "progress_event",
    "console_event",
]
