from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List

SCHEMA: List[str] = [
    # ---------- Items + engagement snapshot ----------
    """
    CREATE TABLE IF NOT EXISTS items (
        item_id TEXT PRIMARY KEY,
        author_id TEXT NOT NULL,
        created_at TEXT NOT NULL,
        like_count INTEGER NOT NULL DEFAULT 0,
        repost_count INTEGER NOT NULL DEFAULT 0,
        reply_count INTEGER NOT NULL DEFAULT 0,
        is_visible INTEGER NOT NULL DEFAULT 1,
        text TEXT
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_items_created_at ON items(created_at);",
    "CREATE INDEX IF NOT EXISTS idx_items_author_created ON items(author_id, created_at);",
    """
    CREATE TABLE IF NOT EXISTS item_aggregates (
        item_id TEXT NOT NULL,
        kind TEXT NOT NULL,
        count INTEGER NOT NULL DEFAULT 0,
        refreshed_at TEXT NOT NULL,
        PRIMARY KEY (item_id, kind)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS item_revisions (
        item_id TEXT PRIMARY KEY,
        revision INTEGER NOT NULL DEFAULT 0
    );
    """,
    # ---------- Event log ----------
    """
    CREATE TABLE IF NOT EXISTS impressions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        item_id TEXT NOT NULL,
        created_at TEXT NOT NULL,
        page_id TEXT,
        position INTEGER,
        reasons TEXT
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_impressions_user_item ON impressions(user_id, item_id, created_at);",
    "CREATE INDEX IF NOT EXISTS idx_impressions_created_at ON impressions(created_at);",
    "CREATE INDEX IF NOT EXISTS idx_impressions_page ON impressions(page_id);",
    """
    CREATE TABLE IF NOT EXISTS interaction_events (
        event_id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        item_id TEXT NOT NULL,
        kind TEXT NOT NULL,
        created_at TEXT NOT NULL,
        dwell_ms INTEGER
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_events_item_kind ON interaction_events(item_id, kind);",
    "CREATE INDEX IF NOT EXISTS idx_events_user_kind ON interaction_events(user_id, kind);",
    "CREATE INDEX IF NOT EXISTS idx_events_created_at ON interaction_events(created_at);",
    # ---------- Social graph ----------
    """
    CREATE TABLE IF NOT EXISTS follows (
        follower_id TEXT NOT NULL,
        followee_id TEXT NOT NULL,
        created_at TEXT NOT NULL,
        PRIMARY KEY (follower_id, followee_id)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS graph_proximity (
        user_id TEXT NOT NULL,
        other_id TEXT NOT NULL,
        weight REAL NOT NULL,
        computed_at TEXT NOT NULL,
        PRIMARY KEY (user_id, other_id)
    );
    """,
    # ---------- Bandit ----------
    """
    CREATE TABLE IF NOT EXISTS bandit_stats (
        entity_type TEXT NOT NULL,
        entity_id TEXT NOT NULL,
        successes INTEGER NOT NULL DEFAULT 0,
        failures INTEGER NOT NULL DEFAULT 0,
        last_update TEXT NOT NULL,
        PRIMARY KEY (entity_type, entity_id)
    );
    """,
    # Event ids already counted, so live updates and the replay job never double count.
    """
    CREATE TABLE IF NOT EXISTS bandit_applied (
        event_id TEXT PRIMARY KEY,
        applied_at TEXT NOT NULL
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_bandit_applied_at ON bandit_applied(applied_at);",
    # High-water mark (interaction_events rowid) of the replay job.
    """
    CREATE TABLE IF NOT EXISTS bandit_progress (
        name TEXT PRIMARY KEY,
        last_rowid INTEGER NOT NULL
    );
    """,
    # ---------- Engagement relations (counter of record) ----------
    """
    CREATE TABLE IF NOT EXISTS likes (
        user_id TEXT NOT NULL,
        item_id TEXT NOT NULL,
        created_at TEXT NOT NULL,
        PRIMARY KEY (user_id, item_id)
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_likes_item ON likes(item_id);",
    """
    CREATE TABLE IF NOT EXISTS reposts (
        user_id TEXT NOT NULL,
        item_id TEXT NOT NULL,
        created_at TEXT NOT NULL,
        PRIMARY KEY (user_id, item_id)
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_reposts_item ON reposts(item_id);",
    """
    CREATE TABLE IF NOT EXISTS rate_limits (
        key TEXT PRIMARY KEY,
        last_action_at REAL NOT NULL
    );
    """,
    # ---------- Configuration ----------
    """
    CREATE TABLE IF NOT EXISTS reco_config (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        env TEXT NOT NULL,
        version TEXT NOT NULL,
        is_active INTEGER NOT NULL DEFAULT 0,
        description TEXT,
        config TEXT NOT NULL,
        created_at TEXT NOT NULL,
        UNIQUE (env, version)
    );
    """,
    # At most one active version per env, enforced by storage.
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_reco_config_one_active ON reco_config(env) WHERE is_active = 1;",
]


class SQLiteStore:
    """Base for the small SQLite-backed stores.

    Every operation opens its own connection so stores can be shared freely
    between the API threadpool and the background worker process.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        # Better cross-process concurrency.
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """IMMEDIATE transaction: takes the write lock up front so concurrent
        writers serialize instead of failing on lock upgrade."""
        conn = self._connect()
        conn.isolation_level = None
        try:
            conn.execute("BEGIN IMMEDIATE;")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK;")
                raise
            conn.execute("COMMIT;")
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self._connect() as conn:
            for statement in SCHEMA:
                conn.execute(statement)


def placeholders(values) -> str:
    return ",".join(["?"] * len(values))


def bump_revision(conn: sqlite3.Connection, item_id: str) -> int:
    """Increment and return the item's counter revision (caller owns the transaction)."""
    conn.execute(
        """
        INSERT INTO item_revisions (item_id, revision) VALUES (?, 1)
        ON CONFLICT(item_id) DO UPDATE SET revision = revision + 1;
        """,
        (item_id,),
    )
    row = conn.execute("SELECT revision FROM item_revisions WHERE item_id = ?;", (item_id,)).fetchone()
    return int(row["revision"])
