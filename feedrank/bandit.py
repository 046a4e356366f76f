from __future__ import annotations

import logging
import queue
import threading
from datetime import datetime
from typing import Dict, Optional, Sequence, Union

import numpy as np

from .db import SQLiteStore, placeholders
from .models import FAILURE_KINDS, SUCCESS_KINDS, ArmType, BanditArmStat, InteractionEvent
from .persistence import from_db_ts, to_db_ts, utc_now

logger = logging.getLogger(__name__)


def outcome_for(kind: str) -> Optional[bool]:
    """True for a success kind, False for a failure kind, None if the kind is not a bandit signal."""
    if kind in SUCCESS_KINDS:
        return True
    if kind in FAILURE_KINDS:
        return False
    return None


class BetaThompsonSampler:
    """Thompson Sampling over independent Beta-Bernoulli arms.

    Each arm keeps cumulative (successes, failures). The posterior is

      theta ~ Beta(prior_successes + successes, prior_failures + failures)

    A pessimistic prior (1, 3) keeps unseen arms around a mean of 0.25, so they
    need real successes before they out-sample established arms.
    """

    def __init__(
        self,
        prior_successes: float = 1.0,
        prior_failures: float = 3.0,
        rng: Union[np.random.Generator, int, None] = None,
    ) -> None:
        self.prior_successes = float(prior_successes)
        self.prior_failures = float(prior_failures)
        self.rng = rng if isinstance(rng, np.random.Generator) else np.random.default_rng(rng)

    def posterior(self, stat: BanditArmStat) -> tuple[float, float]:
        return (
            self.prior_successes + max(0, int(stat.successes)),
            self.prior_failures + max(0, int(stat.failures)),
        )

    def posterior_mean(self, stat: BanditArmStat) -> float:
        a, b = self.posterior(stat)
        return a / (a + b)

    def sample(self, stats: Sequence[BanditArmStat]) -> np.ndarray:
        if not stats:
            return np.zeros(0, dtype=np.float64)
        a = np.asarray([self.posterior(s)[0] for s in stats], dtype=np.float64)
        b = np.asarray([self.posterior(s)[1] for s in stats], dtype=np.float64)
        return self.rng.beta(a, b)


class BanditStatsStore(SQLiteStore):
    """Monotonic per-arm success/failure counters (item and author arms)."""

    def get_stats(self, entity_type: ArmType, entity_ids: Sequence[str]) -> Dict[str, BanditArmStat]:
        """entity_id -> stat; arms never updated come back as zero counts."""
        ids = list(dict.fromkeys(entity_ids))
        out = {eid: BanditArmStat(entity_type=entity_type, entity_id=eid) for eid in ids}
        if not ids:
            return out
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT entity_id, successes, failures
                FROM bandit_stats
                WHERE entity_type = ? AND entity_id IN ({placeholders(ids)});
                """,
                [entity_type, *ids],
            ).fetchall()
        for r in rows:
            out[str(r["entity_id"])] = BanditArmStat(
                entity_type=entity_type,
                entity_id=str(r["entity_id"]),
                successes=int(r["successes"]),
                failures=int(r["failures"]),
            )
        return out

    @staticmethod
    def _increment(conn, entity_type: str, entity_id: str, success: bool, ts: str) -> None:
        ds, df = (1, 0) if success else (0, 1)
        conn.execute(
            """
            INSERT INTO bandit_stats (entity_type, entity_id, successes, failures, last_update)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(entity_type, entity_id) DO UPDATE SET
                successes = successes + excluded.successes,
                failures = failures + excluded.failures,
                last_update = excluded.last_update;
            """,
            (entity_type, entity_id, ds, df, ts),
        )

    def _count(self, conn, event: InteractionEvent, success: bool, ts: str) -> bool:
        if event.event_id is not None:
            cur = conn.execute(
                "INSERT OR IGNORE INTO bandit_applied (event_id, applied_at) VALUES (?, ?);",
                (event.event_id, ts),
            )
            if cur.rowcount == 0:
                return False
        self._increment(conn, "item", event.item_id, success, ts)
        row = conn.execute("SELECT author_id FROM items WHERE item_id = ?;", (event.item_id,)).fetchone()
        if row is not None:
            self._increment(conn, "author", str(row["author_id"]), success, ts)
        return True

    def apply_event(self, event: InteractionEvent) -> bool:
        """Update the item arm and its author's arm for one event.

        Returns False if the kind is not a bandit signal or the event id was
        already counted.
        """
        success = outcome_for(event.kind)
        if success is None:
            return False
        with self._transaction() as conn:
            return self._count(conn, event, success, to_db_ts(utc_now()))

    def replay(self, batch_size: int = 500) -> int:
        """Apply logged events past the stored high-water mark; returns how many were counted.

        Picks up whatever the in-process updater dropped or lost on restart.
        """
        kinds = sorted(SUCCESS_KINDS | FAILURE_KINDS)
        applied = 0
        while True:
            with self._transaction() as conn:
                mark = conn.execute(
                    "SELECT last_rowid FROM bandit_progress WHERE name = 'events';"
                ).fetchone()
                last = int(mark["last_rowid"]) if mark else 0
                rows = conn.execute(
                    f"""
                    SELECT rowid, event_id, user_id, item_id, kind, created_at
                    FROM interaction_events
                    WHERE rowid > ? AND kind IN ({placeholders(kinds)})
                    ORDER BY rowid
                    LIMIT ?;
                    """,
                    [last, *kinds, int(batch_size)],
                ).fetchall()
                if not rows:
                    return applied
                ts = to_db_ts(utc_now())
                for r in rows:
                    event = InteractionEvent(
                        event_id=r["event_id"],
                        user_id=r["user_id"],
                        item_id=r["item_id"],
                        kind=r["kind"],
                        created_at=from_db_ts(r["created_at"]),
                    )
                    if self._count(conn, event, bool(outcome_for(event.kind)), ts):
                        applied += 1
                conn.execute(
                    """
                    INSERT INTO bandit_progress (name, last_rowid) VALUES ('events', ?)
                    ON CONFLICT(name) DO UPDATE SET last_rowid = excluded.last_rowid;
                    """,
                    (int(rows[-1]["rowid"]),),
                )
            if len(rows) < batch_size:
                return applied

    def prune_applied(self, before: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM bandit_applied WHERE applied_at < ?;", (to_db_ts(before),))
            return int(cur.rowcount or 0)


class BanditUpdater:
    """Applies interaction events to bandit stats off the serving path.

    `submit` never blocks: when the queue is full the event is dropped here
    and logged. Events are durable in the event log, and the worker's
    `BanditStatsStore.replay` job counts anything this updater missed.
    """

    def __init__(self, store: BanditStatsStore, maxsize: int = 10000) -> None:
        self.store = store
        self._queue: "queue.Queue[Optional[InteractionEvent]]" = queue.Queue(maxsize=maxsize)
        self._thread: Optional[threading.Thread] = None
        self.applied = 0
        self.dropped = 0

    def submit(self, event: InteractionEvent) -> bool:
        if outcome_for(event.kind) is None:
            return False
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            self.dropped += 1
            logger.warning(f"Bandit update queue full; dropped {event.kind} on {event.item_id}")
            return False
        return True

    def _apply(self, event: InteractionEvent) -> None:
        try:
            if self.store.apply_event(event):
                self.applied += 1
        except Exception as exc:  # noqa: BLE001
            logger.error(f"Bandit update failed for {event.kind} on {event.item_id}: {exc}")

    def drain(self) -> int:
        """Apply everything queued so far on the calling thread."""
        n = 0
        while True:
            try:
                event = self._queue.get_nowait()
            except queue.Empty:
                return n
            if event is not None:
                self._apply(event)
                n += 1
            self._queue.task_done()

    def _run(self) -> None:
        while True:
            event = self._queue.get()
            try:
                if event is None:
                    return
                self._apply(event)
            finally:
                self._queue.task_done()

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._run, name="bandit-updater", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        if self._thread is None:
            return
        self._queue.put(None)
        self._thread.join(timeout=timeout)
        self._thread = None
