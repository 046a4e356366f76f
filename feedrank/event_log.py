from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from .db import SQLiteStore, placeholders
from .models import InteractionEvent, Item, ViewerState
from .persistence import from_db_ts, to_db_ts

logger = logging.getLogger(__name__)


def row_to_item(row) -> Item:
    return Item(
        item_id=str(row["item_id"]),
        author_id=str(row["author_id"]),
        created_at=from_db_ts(row["created_at"]),
        like_count=int(row["like_count"] or 0),
        repost_count=int(row["repost_count"] or 0),
        reply_count=int(row["reply_count"] or 0),
        is_visible=bool(row["is_visible"]),
        text=row["text"],
    )


class ItemStore(SQLiteStore):
    """Items and their engagement aggregates.

    Items are created by the content CRUD path (outside this engine) through
    `upsert_item`; counters are only written by the aggregate refresher and the
    engagement toggle service.
    """

    def upsert_item(self, item: Item) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO items (item_id, author_id, created_at, like_count, repost_count,
                                   reply_count, is_visible, text)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(item_id) DO UPDATE SET
                    author_id = excluded.author_id,
                    created_at = excluded.created_at,
                    is_visible = excluded.is_visible,
                    text = excluded.text;
                """,
                (
                    item.item_id,
                    item.author_id,
                    to_db_ts(item.created_at),
                    max(0, int(item.like_count)),
                    max(0, int(item.repost_count)),
                    max(0, int(item.reply_count)),
                    1 if item.is_visible else 0,
                    item.text,
                ),
            )

    def get_item(self, item_id: str) -> Optional[Item]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM items WHERE item_id = ?;", (item_id,)).fetchone()
        return row_to_item(row) if row else None

    def get_items(self, item_ids: Sequence[str]) -> Dict[str, Item]:
        if not item_ids:
            return {}
        ids = list(item_ids)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM items WHERE item_id IN ({placeholders(ids)});", ids
            ).fetchall()
        return {str(r["item_id"]): row_to_item(r) for r in rows}

    def aggregate_counts(self, item_ids: Sequence[str]) -> Dict[str, Dict[str, int]]:
        """item_id -> {kind: count} for items the refresher has covered."""
        if not item_ids:
            return {}
        ids = list(item_ids)
        out: Dict[str, Dict[str, int]] = {}
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT item_id, kind, count
                FROM item_aggregates
                WHERE item_id IN ({placeholders(ids)});
                """,
                ids,
            ).fetchall()
        for r in rows:
            out.setdefault(str(r["item_id"]), {})[str(r["kind"])] = int(r["count"] or 0)
        return out

    def viewer_state(self, user_id: Optional[str], item_ids: Sequence[str]) -> ViewerState:
        """Which of `item_ids` this user has liked / reposted."""
        state = ViewerState()
        if not user_id or not item_ids:
            return state
        ids = list(item_ids)
        with self._connect() as conn:
            for table, target in (("likes", state.liked), ("reposts", state.reposted)):
                rows = conn.execute(
                    f"SELECT item_id FROM {table} WHERE user_id = ? AND item_id IN ({placeholders(ids)});",
                    [user_id, *ids],
                ).fetchall()
                target.update(str(r["item_id"]) for r in rows)
        return state

    def revisions(self, item_ids: Sequence[str]) -> Dict[str, int]:
        if not item_ids:
            return {}
        ids = list(item_ids)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT item_id, revision FROM item_revisions WHERE item_id IN ({placeholders(ids)});",
                ids,
            ).fetchall()
        return {str(r["item_id"]): int(r["revision"]) for r in rows}


class EventLog(SQLiteStore):
    """Append-only impressions and interaction events."""

    # ---------- Impressions ----------

    def record_impressions(
        self,
        user_id: str,
        page_id: str,
        entries: Iterable[Tuple[str, int, List[Dict[str, Any]]]],
        served_at: datetime,
    ) -> int:
        ts = to_db_ts(served_at)
        rows = [
            (user_id, item_id, ts, page_id, int(position), json.dumps(reasons))
            for item_id, position, reasons in entries
        ]
        if not rows:
            return 0
        with self._connect() as conn:
            conn.executemany(
                """
                INSERT INTO impressions (user_id, item_id, created_at, page_id, position, reasons)
                VALUES (?, ?, ?, ?, ?, ?);
                """,
                rows,
            )
        return len(rows)

    def impression_counts(self, user_id: str, item_ids: Sequence[str]) -> Dict[str, int]:
        if not item_ids:
            return {}
        ids = list(item_ids)
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT item_id, COUNT(1) AS n
                FROM impressions
                WHERE user_id = ? AND item_id IN ({placeholders(ids)})
                GROUP BY item_id;
                """,
                [user_id, *ids],
            ).fetchall()
        return {str(r["item_id"]): int(r["n"]) for r in rows}

    def page_impressions(self, page_id: str) -> List[Dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT user_id, item_id, created_at, position, reasons
                FROM impressions
                WHERE page_id = ?
                ORDER BY position;
                """,
                (page_id,),
            ).fetchall()
        return [
            {
                "user_id": r["user_id"],
                "item_id": r["item_id"],
                "created_at": r["created_at"],
                "position": r["position"],
                "reasons": json.loads(r["reasons"]) if r["reasons"] else [],
            }
            for r in rows
        ]

    def prune_impressions(self, before: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM impressions WHERE created_at < ?;", (to_db_ts(before),))
            deleted = int(cur.rowcount or 0)
        if deleted:
            logger.info(f"Pruned {deleted} impressions older than {to_db_ts(before)}")
        return deleted

    # ---------- Interaction events ----------

    def record_event(self, event: InteractionEvent) -> InteractionEvent:
        if event.event_id is None:
            event.event_id = uuid.uuid4().hex
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO interaction_events
                    (event_id, user_id, item_id, kind, created_at, dwell_ms)
                VALUES (?, ?, ?, ?, ?, ?);
                """,
                (
                    event.event_id,
                    event.user_id,
                    event.item_id,
                    event.kind,
                    to_db_ts(event.created_at),
                    event.dwell_ms,
                ),
            )
        return event

    def events_for_user(self, user_id: str, kinds: Sequence[str], limit: int = 200) -> List[InteractionEvent]:
        if not kinds:
            return []
        kinds = list(kinds)
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT event_id, user_id, item_id, kind, created_at, dwell_ms
                FROM interaction_events
                WHERE user_id = ? AND kind IN ({placeholders(kinds)})
                ORDER BY created_at DESC
                LIMIT ?;
                """,
                [user_id, *kinds, int(limit)],
            ).fetchall()
        return [
            InteractionEvent(
                event_id=r["event_id"],
                user_id=r["user_id"],
                item_id=r["item_id"],
                kind=r["kind"],
                created_at=from_db_ts(r["created_at"]),
                dwell_ms=r["dwell_ms"],
            )
            for r in rows
        ]
