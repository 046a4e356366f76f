"""
Periodic recomputation of per-item engagement aggregates.

Likes and reposts are counted from their relations (the counter of record);
every other kind is counted from the interaction event log. Rows are written
with an upsert that refuses to move `refreshed_at` backwards, so a delayed run
that overlaps a newer one cannot overwrite fresher counts.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from .db import SQLiteStore, bump_revision
from .models import AGGREGATE_KINDS
from .persistence import to_db_ts, utc_now

logger = logging.getLogger(__name__)

# Kinds counted from a relation table instead of the event log.
RELATION_TABLES = {"like": "likes", "repost": "reposts"}

_EPOCH = datetime(1970, 1, 1)


@dataclass
class RefreshStats:
    rows: int = 0
    reply_count_changes: List[str] = field(default_factory=list)


def _count_expression(kind: str) -> str:
    table = RELATION_TABLES.get(kind)
    if table is not None:
        return f"(SELECT COUNT(1) FROM {table} r WHERE r.item_id = i.item_id)"
    return "(SELECT COUNT(1) FROM interaction_events e WHERE e.item_id = i.item_id AND e.kind = ?)"


class AggregateRefresher(SQLiteStore):
    def refresh(self, since: Optional[datetime] = None, now: Optional[datetime] = None) -> RefreshStats:
        """Recompute aggregates for items created at or after `since` (all items by default)."""
        refreshed_at = to_db_ts(now or utc_now())
        created_floor = to_db_ts(since or _EPOCH)
        stats = RefreshStats()

        with self._transaction() as conn:
            for kind in AGGREGATE_KINDS:
                params: list = [kind]
                if kind not in RELATION_TABLES:
                    params.append(kind)
                params.extend([refreshed_at, created_floor])
                cur = conn.execute(
                    f"""
                    INSERT INTO item_aggregates (item_id, kind, count, refreshed_at)
                    SELECT i.item_id, ?, {_count_expression(kind)}, ?
                    FROM items i
                    WHERE i.created_at >= ?
                    ON CONFLICT(item_id, kind) DO UPDATE SET
                        count = excluded.count,
                        refreshed_at = excluded.refreshed_at
                    WHERE excluded.refreshed_at >= item_aggregates.refreshed_at;
                    """,
                    params,
                )
                stats.rows += max(0, int(cur.rowcount or 0))

            # Replies live on the item snapshot; likes/reposts are kept there by the toggle path.
            changed = conn.execute(
                """
                SELECT i.item_id, a.count
                FROM items i
                JOIN item_aggregates a ON a.item_id = i.item_id AND a.kind = 'comment'
                WHERE i.created_at >= ? AND i.reply_count != a.count;
                """,
                (created_floor,),
            ).fetchall()
            for row in changed:
                conn.execute(
                    "UPDATE items SET reply_count = ? WHERE item_id = ?;",
                    (max(0, int(row["count"])), row["item_id"]),
                )
                bump_revision(conn, row["item_id"])
                stats.reply_count_changes.append(str(row["item_id"]))

        logger.info(
            f"Refreshed {stats.rows} aggregate rows "
            f"({len(stats.reply_count_changes)} reply counts changed)"
        )
        return stats
