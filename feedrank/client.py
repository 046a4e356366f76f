"""
Client-side engagement state.

Each visible item owns one `EngagementState`. All mutation happens on the
event loop: user toggles, the settle step of the service call and realtime
updates handed over by the observer. `in_flight` is the only guard.

A toggle flips local state immediately, then awaits the service. Server truth
overwrites local state on success; the pre-toggle snapshot is restored on
failure. The service call is never cancelled with its caller, because by the
time it is running it may already have mutated durable state.
"""
from __future__ import annotations

import asyncio
import functools
import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Literal, Optional

import requests

from .errors import (
    ENGAGEMENT_ERRORS_BY_CODE,
    EngagementError,
    ItemNotFound,
    NetworkError,
    RateLimited,
    ServerError,
    ToggleConflict,
    Unauthenticated,
)
from .models import EngagementUpdate, FeedItemOut, ToggleKind, ToggleOut, ToggleResult

logger = logging.getLogger(__name__)

Phase = Literal["idle", "toggling", "active", "inactive"]

DEFAULT_CACHE_SIZE = 1000


# ---------- Services ----------


class EngagementService:
    async def toggle(self, item_id: str, kind: ToggleKind) -> ToggleResult:
        raise NotImplementedError


class LocalEngagementService(EngagementService):
    """Calls an in-process `EngagementToggleService` as a fixed user."""

    def __init__(self, toggles, user_id: Optional[str]) -> None:
        self.toggles = toggles
        self.user_id = user_id

    async def toggle(self, item_id: str, kind: ToggleKind) -> ToggleResult:
        return await asyncio.to_thread(self.toggles.toggle, self.user_id, item_id, kind)


_ERRORS_BY_STATUS = {
    401: Unauthenticated,
    403: Unauthenticated,
    404: ItemNotFound,
    409: ToggleConflict,
    429: RateLimited,
}


def error_from_response(resp: requests.Response) -> EngagementError:
    code = None
    message = None
    try:
        payload = resp.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        code = payload.get("code")
        message = payload.get("message")
    cls = ENGAGEMENT_ERRORS_BY_CODE.get(code) or _ERRORS_BY_STATUS.get(resp.status_code, ServerError)
    return cls(message or f"HTTP {resp.status_code}")


class HttpEngagementService(EngagementService):
    """Toggle client for `POST /api/engagement/toggle`."""

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        session: Optional[requests.Session] = None,
        timeout: float = 10.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = float(timeout)
        self.session = session or requests.Session()
        if token:
            self.session.headers.update({"Authorization": f"Bearer {token}"})

    def _toggle_sync(self, item_id: str, kind: ToggleKind) -> ToggleResult:
        try:
            resp = self.session.post(
                f"{self.base_url}/api/engagement/toggle",
                json={"itemId": item_id, "kind": kind},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise NetworkError(str(exc)) from exc
        if resp.status_code >= 400:
            raise error_from_response(resp)
        try:
            out = ToggleOut.model_validate(resp.json())
        except ValueError as exc:
            raise ServerError(f"malformed toggle response: {exc}") from exc
        return ToggleResult(is_active=out.is_active, count=out.count, revision=out.revision)

    async def toggle(self, item_id: str, kind: ToggleKind) -> ToggleResult:
        return await asyncio.to_thread(self._toggle_sync, item_id, kind)


# ---------- State ----------


@dataclass(frozen=True)
class EngagementSnapshot:
    is_liked: bool
    like_count: int
    is_reposted: bool
    repost_count: int


class EngagementState:
    def __init__(
        self,
        item_id: str,
        service: EngagementService,
        is_liked: bool = False,
        like_count: int = 0,
        is_reposted: bool = False,
        repost_count: int = 0,
        reply_count: int = 0,
        revision: int = 0,
    ) -> None:
        self.item_id = item_id
        self.service = service
        self.is_liked = bool(is_liked)
        self.like_count = max(0, int(like_count))
        self.is_reposted = bool(is_reposted)
        self.repost_count = max(0, int(repost_count))
        self.reply_count = max(0, int(reply_count))
        self.last_revision = int(revision)
        self.in_flight = False
        self.error: Optional[EngagementError] = None
        self.phase: Phase = "idle"
        self._buffered: Optional[EngagementUpdate] = None
        self._pending: Optional[asyncio.Task] = None

    @classmethod
    def from_feed_item(cls, item: FeedItemOut, service: EngagementService) -> "EngagementState":
        return cls(
            item_id=item.id,
            service=service,
            is_liked=item.is_liked,
            like_count=item.like_count,
            is_reposted=item.is_reposted,
            repost_count=item.repost_count,
            reply_count=item.reply_count,
            revision=item.revision,
        )

    def snapshot(self) -> EngagementSnapshot:
        return EngagementSnapshot(self.is_liked, self.like_count, self.is_reposted, self.repost_count)

    def _restore(self, snap: EngagementSnapshot) -> None:
        self.is_liked = snap.is_liked
        self.like_count = max(0, snap.like_count)
        self.is_reposted = snap.is_reposted
        self.repost_count = max(0, snap.repost_count)

    def _flip(self, kind: ToggleKind) -> None:
        if kind == "like":
            self.is_liked = not self.is_liked
            self.like_count = max(0, self.like_count + (1 if self.is_liked else -1))
        else:
            self.is_reposted = not self.is_reposted
            self.repost_count = max(0, self.repost_count + (1 if self.is_reposted else -1))

    def _active(self, kind: ToggleKind) -> bool:
        return self.is_liked if kind == "like" else self.is_reposted

    async def toggle_like(self) -> bool:
        return await self._toggle("like")

    async def toggle_repost(self) -> bool:
        return await self._toggle("repost")

    async def _toggle(self, kind: ToggleKind) -> bool:
        """Returns True when the server confirmed the toggle; False if ignored or rolled back."""
        if self.in_flight:
            return False
        snap = self.snapshot()
        self.in_flight = True
        self.error = None
        self.phase = "toggling"
        self._flip(kind)

        task = asyncio.ensure_future(self.service.toggle(self.item_id, kind))
        self._pending = task
        try:
            # asyncio.wait never cancels `task`, even when this coroutine is cancelled.
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.add_done_callback(functools.partial(self._settle, kind, snap))
            raise
        return self._settle(kind, snap, task)

    def _settle(self, kind: ToggleKind, snap: EngagementSnapshot, task: asyncio.Future) -> bool:
        ok = False
        try:
            if task.cancelled():
                exc: Optional[BaseException] = NetworkError("toggle request cancelled")
            else:
                exc = task.exception()
            if exc is None:
                result: ToggleResult = task.result()
                if kind == "like":
                    self.is_liked = result.is_active
                    self.like_count = max(0, int(result.count))
                else:
                    self.is_reposted = result.is_active
                    self.repost_count = max(0, int(result.count))
                self.last_revision = max(self.last_revision, int(result.revision))
                ok = True
            else:
                self._restore(snap)
                if not isinstance(exc, EngagementError):
                    logger.error(f"Unexpected toggle failure for {self.item_id}: {exc!r}")
                    exc = ServerError(str(exc))
                self.error = exc
            self.phase = "active" if self._active(kind) else "inactive"
        finally:
            self.in_flight = False
            self._pending = None
            self._apply_buffered()
        return ok

    # ---------- Realtime ----------

    def receive(self, update: EngagementUpdate) -> bool:
        """Apply an authoritative update. Buffered while a toggle is in flight;
        ignored unless newer than the last applied revision."""
        if update.item_id != self.item_id:
            return False
        if self.in_flight:
            if self._buffered is None or update.revision > self._buffered.revision:
                self._buffered = update
            return False
        if update.revision <= self.last_revision:
            return False
        self.like_count = max(0, int(update.like_count))
        self.repost_count = max(0, int(update.repost_count))
        self.reply_count = max(0, int(update.reply_count))
        self.last_revision = int(update.revision)
        return True

    def _apply_buffered(self) -> None:
        update, self._buffered = self._buffered, None
        if update is not None:
            self.receive(update)


class EngagementStateCache:
    """Bounded working set of states, least recently used evicted first.

    States with a toggle in flight are never evicted.
    """

    def __init__(self, service: EngagementService, max_size: int = DEFAULT_CACHE_SIZE) -> None:
        self.service = service
        self.max_size = max(1, int(max_size))
        self._states: "OrderedDict[str, EngagementState]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._states)

    def __contains__(self, item_id: str) -> bool:
        return item_id in self._states

    def get(self, item_id: str) -> Optional[EngagementState]:
        return self._states.get(item_id)

    def get_or_create(self, item: FeedItemOut) -> EngagementState:
        state = self._states.get(item.id)
        if state is None:
            state = EngagementState.from_feed_item(item, self.service)
            self._states[item.id] = state
            self._trim()
        else:
            self._states.move_to_end(item.id)
            state.receive(
                EngagementUpdate(
                    item_id=item.id,
                    like_count=item.like_count,
                    repost_count=item.repost_count,
                    reply_count=item.reply_count,
                    revision=item.revision,
                )
            )
        return state

    def evict(self, item_id: str) -> bool:
        state = self._states.get(item_id)
        if state is None or state.in_flight:
            return False
        del self._states[item_id]
        return True

    def _trim(self) -> None:
        if len(self._states) <= self.max_size:
            return
        for item_id in list(self._states):
            if len(self._states) <= self.max_size:
                break
            if not self._states[item_id].in_flight:
                del self._states[item_id]
