# Vidi Server: Broadcast Hub
#
# In-memory, process-local publish/subscribe with one channel per
# dashboard. Each channel stamps messages with a sequence number that
# starts at 1 and grows by one per broadcast.
#
# Publishers never wait on viewers: every subscription has a bounded
# buffer and a full buffer drops its oldest unread message. The drop is
# counted on that subscription only so the viewer can be told to resync.

import asyncio
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Optional

from ..models.messages import ServerMessage, UpdateCommand

logger = logging.getLogger(__name__)

CHANNEL_CAPACITY = 256


class Subscription:
    """One viewer's receive handle on a dashboard channel."""

    def __init__(self, dashboard_id: str, capacity: int = CHANNEL_CAPACITY):
        self.dashboard_id = dashboard_id
        self._queue: Deque[ServerMessage] = deque(maxlen=capacity)
        self._dropped = 0
        self._closed = False
        self._event = asyncio.Event()
        try:
            self._loop: Optional[asyncio.AbstractEventLoop] = asyncio.get_running_loop()
        except RuntimeError:
            self._loop = None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        return len(self._queue)

    @property
    def dropped(self) -> int:
        return self._dropped

    def take_dropped(self) -> int:
        """Return the number of messages lost since the last call and reset it."""
        dropped, self._dropped = self._dropped, 0
        return dropped

    def _push(self, message: ServerMessage):
        if len(self._queue) == self._queue.maxlen:
            self._dropped += 1
        self._queue.append(message)
        self._wake()

    def close(self):
        self._closed = True
        self._wake()

    def _wake(self):
        loop = self._loop
        if loop is None or loop.is_closed():
            self._event.set()
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._event.set()
        else:
            loop.call_soon_threadsafe(self._event.set)

    def get_nowait(self) -> Optional[ServerMessage]:
        if self._queue:
            return self._queue.popleft()
        return None

    async def get(self) -> Optional[ServerMessage]:
        """Wait for the next message. Returns None once the subscription is closed."""
        while True:
            if self._queue:
                return self._queue.popleft()
            if self._closed:
                return None
            self._event.clear()
            if self._queue or self._closed:
                continue
            await self._event.wait()


@dataclass
class _Channel:
    seq: int = 0
    subscribers: List[Subscription] = field(default_factory=list)


class BroadcastHub:
    """Registry of per-dashboard channels.

    Args:
        capacity: Buffer size of each subscription.
    """

    def __init__(self, capacity: int = CHANNEL_CAPACITY):
        self._capacity = capacity
        self._lock = threading.Lock()
        self._channels: Dict[str, _Channel] = {}

    def subscribe(self, dashboard_id: str) -> Subscription:
        """Receive every message broadcast to ``dashboard_id`` after this call."""
        subscription = Subscription(dashboard_id, self._capacity)
        with self._lock:
            channel = self._channels.setdefault(dashboard_id, _Channel())
            channel.subscribers.append(subscription)
            count = len(channel.subscribers)
        logger.debug("Viewer subscribed to %s (%d connected)", dashboard_id, count)
        return subscription

    def unsubscribe(self, dashboard_id: str, subscription: Subscription):
        """Detach a subscription. The channel and its counter are kept."""
        with self._lock:
            channel = self._channels.get(dashboard_id)
            if channel is not None and subscription in channel.subscribers:
                channel.subscribers.remove(subscription)
        subscription.close()

    def broadcast(self, dashboard_id: str, command: UpdateCommand) -> int:
        """Deliver ``command`` to every current subscriber; returns its seq."""
        with self._lock:
            channel = self._channels.setdefault(dashboard_id, _Channel())
            channel.seq += 1
            message = ServerMessage(seq=channel.seq, payload=command)
            for subscription in channel.subscribers:
                subscription._push(message)
            return channel.seq

    def remove_dashboard(self, dashboard_id: str) -> bool:
        """Destroy a channel and close its subscriptions."""
        with self._lock:
            channel = self._channels.pop(dashboard_id, None)
        if channel is None:
            return False
        for subscription in channel.subscribers:
            subscription.close()
        logger.debug("Removed channel %s (%d viewers closed)",
                     dashboard_id, len(channel.subscribers))
        return True

    def active_dashboard_ids(self) -> List[str]:
        """Ids with at least one live subscriber."""
        with self._lock:
            return [
                dashboard_id
                for dashboard_id, channel in self._channels.items()
                if channel.subscribers
            ]

    def connection_count(self, dashboard_id: Optional[str] = None) -> int:
        """Live subscribers for one dashboard, or across all of them."""
        with self._lock:
            if dashboard_id is not None:
                channel = self._channels.get(dashboard_id)
                return len(channel.subscribers) if channel else 0
            return sum(len(c.subscribers) for c in self._channels.values())

    def current_seq(self, dashboard_id: str) -> int:
        """Last sequence number assigned on a channel (0 if none yet)."""
        with self._lock:
            channel = self._channels.get(dashboard_id)
            return channel.seq if channel else 0
