"""
Social-graph proximity cache.

The follow relation is written by the social CRUD path through `add_follow` /
`remove_follow`. Proximity weights are recomputed out-of-band by the worker:

  * direct follow            -> DIRECT_WEIGHT
  * followed by >= MIN_SECOND_DEGREE_OVERLAP of the user's follows
                             -> SECOND_DEGREE_BASE * min(1, overlap / 3)

The ranking path only reads `graph_proximity` and `follows`.
"""
from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Set

from .db import SQLiteStore, placeholders
from .models import GraphProximityEdge
from .persistence import to_db_ts, utc_now

logger = logging.getLogger(__name__)

DIRECT_WEIGHT = 1.0
SECOND_DEGREE_BASE = 0.5
MIN_SECOND_DEGREE_OVERLAP = 2
MAX_SECOND_DEGREE_CANDIDATES = 100


class GraphProximityCache(SQLiteStore):
    # ---------- Follow relation ----------

    def add_follow(self, follower_id: str, followee_id: str, at: Optional[datetime] = None) -> bool:
        if follower_id == followee_id:
            return False
        with self._connect() as conn:
            cur = conn.execute(
                "INSERT OR IGNORE INTO follows (follower_id, followee_id, created_at) VALUES (?, ?, ?);",
                (follower_id, followee_id, to_db_ts(at or utc_now())),
            )
            return bool(cur.rowcount)

    def remove_follow(self, follower_id: str, followee_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM follows WHERE follower_id = ? AND followee_id = ?;",
                (follower_id, followee_id),
            )
            return bool(cur.rowcount)

    def followed_authors(self, user_id: str) -> Set[str]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT followee_id FROM follows WHERE follower_id = ?;", (user_id,)
            ).fetchall()
        return {str(r["followee_id"]) for r in rows}

    # ---------- Proximity reads ----------

    def proximity(self, user_id: str, other_ids: Sequence[str]) -> Dict[str, float]:
        """other_id -> weight; ids without an edge are simply absent."""
        if not other_ids:
            return {}
        ids = list(set(other_ids))
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT other_id, weight
                FROM graph_proximity
                WHERE user_id = ? AND other_id IN ({placeholders(ids)});
                """,
                [user_id, *ids],
            ).fetchall()
        return {str(r["other_id"]): float(r["weight"]) for r in rows}

    def edges(self, user_id: str) -> List[GraphProximityEdge]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT user_id, other_id, weight FROM graph_proximity WHERE user_id = ? ORDER BY weight DESC;",
                (user_id,),
            ).fetchall()
        return [GraphProximityEdge(r["user_id"], r["other_id"], float(r["weight"])) for r in rows]

    # ---------- Out-of-band recompute ----------

    def _follow_map(self, conn) -> Dict[str, Set[str]]:
        out: Dict[str, Set[str]] = {}
        for r in conn.execute("SELECT follower_id, followee_id FROM follows;"):
            out.setdefault(str(r["follower_id"]), set()).add(str(r["followee_id"]))
        return out

    @staticmethod
    def compute_edges(user_id: str, follow_map: Dict[str, Set[str]]) -> Dict[str, float]:
        direct = follow_map.get(user_id, set())
        weights: Dict[str, float] = {other: DIRECT_WEIGHT for other in direct}

        overlap: Counter = Counter()
        for followed in direct:
            for candidate in follow_map.get(followed, ()):
                if candidate == user_id or candidate in direct:
                    continue
                overlap[candidate] += 1

        for candidate, count in overlap.most_common(MAX_SECOND_DEGREE_CANDIDATES):
            if count < MIN_SECOND_DEGREE_OVERLAP:
                break
            weights[candidate] = SECOND_DEGREE_BASE * min(1.0, count / 3.0)
        return weights

    def recompute(self, user_ids: Optional[Iterable[str]] = None, now: Optional[datetime] = None) -> int:
        """Rebuild proximity rows for `user_ids` (every follower by default). Returns edges written."""
        computed_at = to_db_ts(now or utc_now())
        written = 0
        with self._transaction() as conn:
            follow_map = self._follow_map(conn)
            if user_ids is not None:
                targets = list(user_ids)
            else:
                existing = {str(r["user_id"]) for r in conn.execute("SELECT DISTINCT user_id FROM graph_proximity;")}
                targets = sorted(set(follow_map) | existing)
            for user_id in targets:
                weights = self.compute_edges(user_id, follow_map)
                conn.executemany(
                    """
                    INSERT INTO graph_proximity (user_id, other_id, weight, computed_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(user_id, other_id) DO UPDATE SET
                        weight = excluded.weight,
                        computed_at = excluded.computed_at
                    WHERE excluded.computed_at >= graph_proximity.computed_at;
                    """,
                    [(user_id, other, float(w), computed_at) for other, w in weights.items()],
                )
                # Edges not produced by this run are stale (unfollows).
                conn.execute(
                    "DELETE FROM graph_proximity WHERE user_id = ? AND computed_at < ?;",
                    (user_id, computed_at),
                )
                written += len(weights)
        logger.info(f"Recomputed graph proximity for {len(targets)} users ({written} edges)")
        return written
