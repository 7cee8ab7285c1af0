"""Event bus and websocket hub exports."""

from .bus import EventBus, Subscription
from .ws import hub

__all__ = ["EventBus", "Subscription", "hub"]
