from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from .candidates import CandidatePool, encode_cursor
from .event_log import EventLog, ItemStore
from .models import FeedItemOut, FeedPageOut, ReasonOut, ViewerState
from .persistence import to_db_ts
from .scoring import ScoredCandidate

logger = logging.getLogger(__name__)


@dataclass
class FeedPage:
    page_id: str
    items: List[ScoredCandidate] = field(default_factory=list)
    next_cursor: Optional[str] = None
    viewer: ViewerState = field(default_factory=ViewerState)
    revisions: Dict[str, int] = field(default_factory=dict)
    config_version: Optional[str] = None

    @property
    def empty(self) -> bool:
        return not self.items

    def to_out(self) -> FeedPageOut:
        return FeedPageOut(
            page_id=self.page_id,
            items=[
                FeedItemOut(
                    id=c.item_id,
                    author_id=c.author_id,
                    created_at=to_db_ts(c.item.created_at),
                    score=c.score,
                    reasons=[ReasonOut(signal=r.signal, weight=r.weight) for r in c.reasons],
                    explore=c.explore,
                    like_count=max(0, c.item.like_count),
                    repost_count=max(0, c.item.repost_count),
                    reply_count=max(0, c.item.reply_count),
                    is_liked=c.item_id in self.viewer.liked,
                    is_reposted=c.item_id in self.viewer.reposted,
                    revision=self.revisions.get(c.item_id, 0),
                    text=c.item.text,
                )
                for c in self.items
            ],
            next_cursor=self.next_cursor,
        )


def new_page_id() -> str:
    return str(uuid.uuid4())


class PageAssembler:
    """Finalizes a page. Recording impressions is the only write it makes."""

    def __init__(self, events: EventLog, items: ItemStore) -> None:
        self.events = events
        self.items = items

    def assemble(
        self,
        user_id: Optional[str],
        ordered: List[ScoredCandidate],
        pool: CandidatePool,
        served_at: datetime,
        config_version: Optional[str] = None,
    ) -> FeedPage:
        page_id = new_page_id()
        ids = [c.item_id for c in ordered]

        if user_id and ordered:
            self.events.record_impressions(
                user_id,
                page_id,
                [(c.item_id, pos, [r.to_dict() for r in c.reasons]) for pos, c in enumerate(ordered)],
                served_at,
            )

        # Later pages rely on suppression to skip what this page served, so
        # anonymous readers (no impressions) get a single page.
        next_cursor = None
        if user_id and pool.as_of is not None and (pool.truncated or len(pool.items) > len(ordered)):
            next_cursor = encode_cursor(pool.as_of, pool.page)

        page = FeedPage(
            page_id=page_id,
            items=list(ordered),
            next_cursor=next_cursor,
            viewer=self.items.viewer_state(user_id, ids),
            revisions=self.items.revisions(ids),
            config_version=config_version,
        )
        logger.info(
            f"Served page {page_id} to user={user_id or 'anonymous'}: "
            f"{len(ordered)} items ({sum(1 for c in ordered if c.explore)} explore), "
            f"config={config_version}"
        )
        return page
