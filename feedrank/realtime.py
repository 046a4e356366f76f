"""
Realtime engagement updates.

Server side, `EngagementHub` fans committed counter changes out to
subscriptions keyed by the item ids a feed session currently shows. Publishing
is thread-safe (toggles commit on threadpool threads); delivery always hops
onto the subscriber's event loop.

Client side, `RealtimeEngagementObserver` keeps one subscription per feed
session, debounces resubscription while the visible set churns, throttles
per-item application and hands every accepted update to the item's
`EngagementState` on the event loop, which is that state's only writer.
"""
from __future__ import annotations

import asyncio
import logging
import threading
from typing import Callable, Dict, FrozenSet, List, Optional, Sequence, Set, Tuple

from .client import EngagementStateCache
from .models import EngagementUpdate

logger = logging.getLogger(__name__)

MAX_IDS_PER_CHANNEL = 100
THROTTLE_S = 0.3
DEBOUNCE_S = 0.5


def chunk_ids(item_ids: Sequence[str], size: int = MAX_IDS_PER_CHANNEL) -> List[Tuple[str, ...]]:
    ids = list(dict.fromkeys(item_ids))
    return [tuple(ids[i : i + size]) for i in range(0, len(ids), size)]


# ---------- Server: hub ----------


class Subscription:
    """Delivery endpoint for one feed session; updates land in `queue`."""

    def __init__(self, hub: "EngagementHub", loop: asyncio.AbstractEventLoop, maxsize: int = 256) -> None:
        self.hub = hub
        self.loop = loop
        self.queue: "asyncio.Queue[EngagementUpdate]" = asyncio.Queue(maxsize=maxsize)
        self.channels: List[Tuple[str, ...]] = []
        self.closed = False
        self.dropped = 0

    @property
    def item_ids(self) -> FrozenSet[str]:
        return frozenset(i for channel in self.channels for i in channel)

    def _deliver(self, update: EngagementUpdate) -> None:
        if self.closed:
            return
        if self.queue.full():
            # Slow consumer: shed the oldest; the reconciliation sweep is the backstop.
            self.queue.get_nowait()
            self.dropped += 1
        self.queue.put_nowait(update)

    async def get(self) -> EngagementUpdate:
        return await self.queue.get()

    def update(self, item_ids: Sequence[str]) -> None:
        self.hub.resubscribe(self, item_ids)

    def close(self) -> None:
        self.hub.unsubscribe(self)


class EngagementHub:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._by_item: Dict[str, Set[Subscription]] = {}

    def subscribe(
        self,
        item_ids: Sequence[str] = (),
        loop: Optional[asyncio.AbstractEventLoop] = None,
        maxsize: int = 256,
    ) -> Subscription:
        sub = Subscription(self, loop or asyncio.get_running_loop(), maxsize=maxsize)
        self.resubscribe(sub, item_ids)
        return sub

    def resubscribe(self, sub: Subscription, item_ids: Sequence[str]) -> None:
        channels = chunk_ids(item_ids)
        with self._lock:
            for item_id in sub.item_ids:
                self._detach(sub, item_id)
            sub.channels = channels
            for item_id in sub.item_ids:
                self._by_item.setdefault(item_id, set()).add(sub)

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            for item_id in sub.item_ids:
                self._detach(sub, item_id)
            sub.channels = []
            sub.closed = True

    def _detach(self, sub: Subscription, item_id: str) -> None:
        subs = self._by_item.get(item_id)
        if subs is None:
            return
        subs.discard(sub)
        if not subs:
            del self._by_item[item_id]

    def subscriber_count(self, item_id: str) -> int:
        with self._lock:
            return len(self._by_item.get(item_id, ()))

    def publish(self, update: EngagementUpdate) -> int:
        """Fan `update` out to every subscription that includes its item. Safe from any thread."""
        with self._lock:
            targets = list(self._by_item.get(update.item_id, ()))
        delivered = 0
        for sub in targets:
            try:
                sub.loop.call_soon_threadsafe(sub._deliver, update)
                delivered += 1
            except RuntimeError:
                # Subscriber's loop is closed; it will never read again.
                self.unsubscribe(sub)
        return delivered


# ---------- Client: channel + observer ----------


UpdateCallback = Callable[[EngagementUpdate], None]


class RealtimeChannel:
    """Transport for the observer: one subscription per feed session."""

    async def subscribe(self, item_ids: Sequence[str], on_update: UpdateCallback) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        raise NotImplementedError


class HubChannel(RealtimeChannel):
    """In-process channel reading straight from an `EngagementHub`."""

    def __init__(self, hub: EngagementHub) -> None:
        self.hub = hub
        self._sub: Optional[Subscription] = None
        self._pump: Optional[asyncio.Task] = None
        self.subscribe_calls = 0

    async def subscribe(self, item_ids: Sequence[str], on_update: UpdateCallback) -> None:
        self.subscribe_calls += 1
        if self._sub is None:
            self._sub = self.hub.subscribe(item_ids)
            self._pump = asyncio.get_running_loop().create_task(self._run(self._sub, on_update))
        else:
            self._sub.update(item_ids)

    async def _run(self, sub: Subscription, on_update: UpdateCallback) -> None:
        while True:
            on_update(await sub.get())

    async def close(self) -> None:
        if self._sub is not None:
            self._sub.close()
            self._sub = None
        if self._pump is not None:
            self._pump.cancel()
            try:
                await self._pump
            except asyncio.CancelledError:
                pass
            self._pump = None


class RealtimeEngagementObserver:
    def __init__(
        self,
        cache: EngagementStateCache,
        channel: RealtimeChannel,
        throttle_s: float = THROTTLE_S,
        debounce_s: float = DEBOUNCE_S,
    ) -> None:
        self.cache = cache
        self.channel = channel
        self.throttle_s = float(throttle_s)
        self.debounce_s = float(debounce_s)

        self._visible: FrozenSet[str] = frozenset()
        self._subscribed: Optional[FrozenSet[str]] = None
        self._debounce: Optional[asyncio.TimerHandle] = None
        self._resubscribe_task: Optional[asyncio.Task] = None

        self._last_applied_at: Dict[str, float] = {}
        self._pending: Dict[str, EngagementUpdate] = {}
        self._timers: Dict[str, asyncio.TimerHandle] = {}

        self.applied = 0
        self.stale = 0
        self.coalesced = 0

    # ---------- Subscription ----------

    def update_visible(self, item_ids: Sequence[str]) -> None:
        """Record the visible set; the channel is resubscribed once it settles for `debounce_s`."""
        self._visible = frozenset(item_ids)
        if self._debounce is not None:
            self._debounce.cancel()
        loop = asyncio.get_running_loop()
        self._debounce = loop.call_later(self.debounce_s, self._start_resubscribe)

    def _start_resubscribe(self) -> None:
        self._debounce = None
        self._resubscribe_task = asyncio.get_running_loop().create_task(self._resubscribe())

    async def _resubscribe(self) -> None:
        visible = self._visible
        if visible == self._subscribed:
            return
        await self.channel.subscribe(sorted(visible), self.on_update)
        self._subscribed = visible
        for item_id in list(self._pending):
            if item_id not in visible:
                self._drop_pending(item_id)
        for item_id in list(self._last_applied_at):
            if item_id not in visible:
                del self._last_applied_at[item_id]

    async def flush(self) -> None:
        """Apply a pending resubscription immediately."""
        if self._debounce is not None:
            self._debounce.cancel()
            self._debounce = None
        if self._resubscribe_task is not None:
            await self._resubscribe_task
        await self._resubscribe()

    # ---------- Updates ----------

    def on_update(self, update: EngagementUpdate) -> None:
        state = self.cache.get(update.item_id)
        if state is None:
            return
        if update.revision <= state.last_revision:
            self.stale += 1
            return

        loop = asyncio.get_running_loop()
        now = loop.time()
        last = self._last_applied_at.get(update.item_id)
        if last is not None and now - last < self.throttle_s:
            pending = self._pending.get(update.item_id)
            if pending is not None:
                self.coalesced += 1
            if pending is None or update.revision > pending.revision:
                self._pending[update.item_id] = update
            if update.item_id not in self._timers:
                self._timers[update.item_id] = loop.call_later(
                    self.throttle_s - (now - last), self._flush_pending, update.item_id
                )
            return

        self._last_applied_at[update.item_id] = now
        if state.receive(update):
            self.applied += 1

    def _flush_pending(self, item_id: str) -> None:
        self._timers.pop(item_id, None)
        update = self._pending.pop(item_id, None)
        if update is not None:
            self.on_update(update)

    def _drop_pending(self, item_id: str) -> None:
        timer = self._timers.pop(item_id, None)
        if timer is not None:
            timer.cancel()
        self._pending.pop(item_id, None)

    async def close(self) -> None:
        if self._debounce is not None:
            self._debounce.cancel()
            self._debounce = None
        for item_id in list(self._timers):
            self._drop_pending(item_id)
        await self.channel.close()
