"""
Idempotent like/repost toggles; the engagement counter of record.

A toggle runs in one IMMEDIATE transaction:

  rate-limit upsert -> item check -> delete-if-present / insert-if-absent
  -> live COUNT(*) -> snapshot column write -> revision bump -> event append

The relation's (user_id, item_id) primary key is what serializes concurrent
toggles of the same pair: a second caller always observes the first caller's
committed row. There is no application-level lock.
"""
from __future__ import annotations

import logging
import time
import uuid
from pathlib import Path
from typing import Callable, List, Optional

from .bandit import BanditUpdater
from .db import SQLiteStore, bump_revision
from .errors import ItemNotFound, RateLimited, Unauthenticated
from .models import EngagementUpdate, InteractionEvent, ToggleKind, ToggleResult
from .persistence import to_db_ts, utc_now
from .realtime import EngagementHub

logger = logging.getLogger(__name__)

# kind -> (relation table, snapshot column)
TOGGLE_TARGETS = {
    "like": ("likes", "like_count"),
    "repost": ("reposts", "repost_count"),
}


def _snapshot_update(conn, item_id: str, revision: int) -> EngagementUpdate:
    row = conn.execute(
        "SELECT like_count, repost_count, reply_count FROM items WHERE item_id = ?;", (item_id,)
    ).fetchone()
    return EngagementUpdate(
        item_id=item_id,
        like_count=int(row["like_count"]),
        repost_count=int(row["repost_count"]),
        reply_count=int(row["reply_count"]),
        revision=revision,
    )


class EngagementToggleService(SQLiteStore):
    def __init__(
        self,
        db_path: Path,
        hub: Optional[EngagementHub] = None,
        bandit_updater: Optional[BanditUpdater] = None,
        rate_limit_s: float = 1.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.hub = hub
        self.bandit_updater = bandit_updater
        self.rate_limit_s = float(rate_limit_s)
        self._clock = clock
        super().__init__(db_path)

    def _consume_rate_limit(self, conn, key: str) -> bool:
        if self.rate_limit_s <= 0:
            return True
        cur = conn.execute(
            """
            INSERT INTO rate_limits (key, last_action_at) VALUES (?, ?)
            ON CONFLICT(key) DO UPDATE SET last_action_at = excluded.last_action_at
            WHERE excluded.last_action_at - rate_limits.last_action_at >= ?;
            """,
            (key, float(self._clock()), self.rate_limit_s),
        )
        return cur.rowcount > 0

    def toggle(self, user_id: Optional[str], item_id: str, kind: ToggleKind) -> ToggleResult:
        if not user_id:
            raise Unauthenticated("authentication required")
        if kind not in TOGGLE_TARGETS:
            raise ValueError(f"unsupported toggle kind: {kind}")
        table, column = TOGGLE_TARGETS[kind]
        now = utc_now()

        with self._transaction() as conn:
            if not self._consume_rate_limit(conn, f"{kind}:{user_id}:{item_id}"):
                raise RateLimited(f"at most one {kind} toggle per {self.rate_limit_s:g}s per item")

            if conn.execute("SELECT 1 FROM items WHERE item_id = ?;", (item_id,)).fetchone() is None:
                raise ItemNotFound(f"item {item_id} not found")

            exists = conn.execute(
                f"SELECT 1 FROM {table} WHERE user_id = ? AND item_id = ?;", (user_id, item_id)
            ).fetchone()
            if exists is not None:
                conn.execute(f"DELETE FROM {table} WHERE user_id = ? AND item_id = ?;", (user_id, item_id))
            else:
                conn.execute(
                    f"""
                    INSERT INTO {table} (user_id, item_id, created_at) VALUES (?, ?, ?)
                    ON CONFLICT(user_id, item_id) DO NOTHING;
                    """,
                    (user_id, item_id, to_db_ts(now)),
                )
            is_active = exists is None

            count = int(
                conn.execute(f"SELECT COUNT(*) AS n FROM {table} WHERE item_id = ?;", (item_id,)).fetchone()["n"]
            )
            conn.execute(f"UPDATE items SET {column} = ? WHERE item_id = ?;", (count, item_id))
            revision = bump_revision(conn, item_id)
            update = _snapshot_update(conn, item_id, revision)

            event: Optional[InteractionEvent] = None
            event_kind = kind if is_active else ("unlike" if kind == "like" else None)
            if event_kind is not None:
                event = InteractionEvent(
                    user_id=user_id,
                    item_id=item_id,
                    kind=event_kind,
                    created_at=now,
                    event_id=uuid.uuid4().hex,
                )
                conn.execute(
                    """
                    INSERT INTO interaction_events (event_id, user_id, item_id, kind, created_at)
                    VALUES (?, ?, ?, ?, ?);
                    """,
                    (event.event_id, user_id, item_id, event_kind, to_db_ts(now)),
                )

        logger.info(f"{kind} toggle user={user_id} item={item_id} -> active={is_active} count={count} rev={revision}")
        self._publish(update)
        if event is not None and self.bandit_updater is not None:
            self.bandit_updater.submit(event)
        return ToggleResult(is_active=is_active, count=count, revision=revision)

    def _publish(self, update: EngagementUpdate) -> None:
        if self.hub is not None:
            self.hub.publish(update)

    def reconcile_counts(self) -> List[EngagementUpdate]:
        """Recompute snapshot counters from the relations; returns corrections made."""
        corrections: List[EngagementUpdate] = []
        with self._transaction() as conn:
            drifted = conn.execute(
                """
                SELECT item_id, like_count, repost_count, live_likes, live_reposts
                FROM (
                    SELECT i.item_id, i.like_count, i.repost_count,
                           (SELECT COUNT(*) FROM likes l WHERE l.item_id = i.item_id) AS live_likes,
                           (SELECT COUNT(*) FROM reposts r WHERE r.item_id = i.item_id) AS live_reposts
                    FROM items i
                )
                WHERE like_count != live_likes OR repost_count != live_reposts;
                """
            ).fetchall()
            for row in drifted:
                conn.execute(
                    "UPDATE items SET like_count = ?, repost_count = ? WHERE item_id = ?;",
                    (int(row["live_likes"]), int(row["live_reposts"]), row["item_id"]),
                )
                revision = bump_revision(conn, row["item_id"])
                corrections.append(_snapshot_update(conn, row["item_id"], revision))
                logger.warning(
                    f"Counter drift on {row['item_id']}: "
                    f"likes {row['like_count']}->{row['live_likes']}, "
                    f"reposts {row['repost_count']}->{row['live_reposts']}"
                )

        for update in corrections:
            self._publish(update)
        logger.info(f"Reconciliation sweep fixed {len(corrections)} items")
        return corrections

    def prune_rate_limits(self, older_than_s: float = 3600.0) -> int:
        cutoff = float(self._clock()) - float(older_than_s)
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM rate_limits WHERE last_action_at < ?;", (cutoff,))
            return int(cur.rowcount or 0)
