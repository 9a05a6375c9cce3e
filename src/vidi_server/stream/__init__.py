"""Live update fan-out to dashboard viewers."""

from .hub import CHANNEL_CAPACITY, BroadcastHub, Subscription

__all__ = ["CHANNEL_CAPACITY", "BroadcastHub", "Subscription"]
