"""Route modules."""

from . import events, webhooks

__all__ = [
    "events",
    "webhooks",
]
