from __future__ import annotations

import base64
import binascii
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from .config import RecoConfig
from .db import SQLiteStore
from .errors import InvalidCursor
from .event_log import row_to_item
from .models import Item
from .persistence import from_db_ts, to_db_ts, utc_now

logger = logging.getLogger(__name__)


def encode_cursor(as_of: datetime, page: int) -> str:
    raw = json.dumps({"as_of": to_db_ts(as_of), "page": int(page)}, separators=(",", ":"))
    return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii").rstrip("=")


def decode_cursor(cursor: str) -> Tuple[datetime, int]:
    try:
        padded = cursor + "=" * (-len(cursor) % 4)
        payload = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8"))
        as_of = from_db_ts(str(payload["as_of"]))
        page = int(payload["page"])
    except (ValueError, KeyError, TypeError, binascii.Error, UnicodeError) as exc:
        raise InvalidCursor(f"malformed cursor: {exc}") from exc
    if page < 1:
        raise InvalidCursor("malformed cursor: page must be >= 1")
    return as_of, page


@dataclass
class CandidatePool:
    items: List[Item] = field(default_factory=list)
    as_of: Optional[datetime] = None
    page: int = 0
    # True when the pool query hit its cap, i.e. more eligible items may exist.
    truncated: bool = False

    @property
    def empty(self) -> bool:
        return not self.items


class CandidateGenerator(SQLiteStore):
    """Bounded pool of recent, visible, not-yet-suppressed items for one user."""

    def __init__(self, db_path: Path, clock: Callable[[], datetime] = utc_now) -> None:
        self._clock = clock
        super().__init__(db_path)

    def generate(self, user_id: Optional[str], config: RecoConfig, cursor: Optional[str] = None) -> CandidatePool:
        now = self._clock()
        if cursor:
            as_of, page = decode_cursor(cursor)
            page += 1
        else:
            as_of, page = now, 1

        pool_cfg = config.quality_pool
        lookback_floor = as_of - timedelta(hours=pool_cfg.lookback_hours)
        limit = int(pool_cfg.limit)

        sql = [
            """
            SELECT i.*
            FROM items i
            WHERE i.is_visible = 1
              AND i.created_at >= ?
              AND i.created_at <= ?
            """
        ]
        params: list = [to_db_ts(lookback_floor), to_db_ts(as_of)]

        if user_id:
            suppress_since = now - timedelta(days=config.suppression.dedupe_days)
            sql.append(
                """
              AND NOT EXISTS (
                  SELECT 1 FROM impressions p
                  WHERE p.user_id = ? AND p.item_id = i.item_id AND p.created_at >= ?
              )
              AND NOT EXISTS (
                  SELECT 1 FROM interaction_events e
                  WHERE e.user_id = ? AND e.item_id = i.item_id AND e.kind = 'hide'
              )
              AND i.author_id NOT IN (
                  SELECT it.author_id
                  FROM interaction_events e
                  JOIN items it ON it.item_id = e.item_id
                  WHERE e.user_id = ? AND e.kind IN ('mute', 'block')
              )
                """
            )
            params.extend([user_id, to_db_ts(suppress_since), user_id, user_id])

        sql.append(
            """
            ORDER BY (i.like_count + 4 * i.repost_count + 5 * i.reply_count) DESC, i.created_at DESC
            LIMIT ?;
            """
        )
        params.append(limit)

        with self._connect() as conn:
            rows = conn.execute("".join(sql), params).fetchall()

        pool = CandidatePool(
            items=[row_to_item(r) for r in rows],
            as_of=as_of,
            page=page,
            truncated=len(rows) >= limit,
        )
        if pool.empty:
            logger.info(f"No candidates for user={user_id} as_of={to_db_ts(as_of)} page={page}")
        return pool
