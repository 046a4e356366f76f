"""
Post-ranking reordering: author spacing and follow catch-up.

Page entries are only ever moved, never dropped, except when follow catch-up
pulls in a followed-author entry from outside the page: that entry takes the
place of the lowest-ranked exploit entry so the page keeps its size. When no
entry satisfies the author window the pass relaxes step by step:

  1. author not among the previous `author_repeat_window - 1` placed entries
  2. author differs from the immediately preceding entry
  3. take the best remaining entry (adjacency allowed; the page is never truncated)

Reordering never pushes more than `explore.max_in_top10` explore entries into
the first ten positions.
"""
from __future__ import annotations

import logging
from typing import Callable, List, Optional, Sequence, Set

from .config import RecoConfig
from .exploration import TOP_SLOTS
from .scoring import ScoredCandidate

logger = logging.getLogger(__name__)


def _first(remaining: Sequence[ScoredCandidate], pred: Callable[[ScoredCandidate], bool]) -> Optional[int]:
    for idx, c in enumerate(remaining):
        if pred(c):
            return idx
    return None


def _last_exploit(remaining: Sequence[ScoredCandidate]) -> Optional[int]:
    for idx in range(len(remaining) - 1, -1, -1):
        if not remaining[idx].explore:
            return idx
    return None


def catchup_reserve(
    ranked: Sequence[ScoredCandidate],
    page: Sequence[ScoredCandidate],
    followed_authors: Set[str],
    config: RecoConfig,
) -> List[ScoredCandidate]:
    """Followed-author candidates above the quality floor that did not make the page, best first."""
    if config.follow.catchup_every <= 0 or not followed_authors:
        return []
    on_page = {c.item_id for c in page}
    return [
        c
        for c in ranked
        if c.item_id not in on_page
        and c.author_id in followed_authors
        and c.quality >= config.follow.min_quality_floor
    ]


class DiversityPass:
    def apply(
        self,
        ranked: Sequence[ScoredCandidate],
        followed_authors: Set[str],
        config: RecoConfig,
        reserve: Sequence[ScoredCandidate] = (),
    ) -> List[ScoredCandidate]:
        """Reorder `ranked` for author spacing and follow catch-up.

        `reserve` holds followed-author candidates that are not in `ranked`
        (see `catchup_reserve`); catch-up draws on it only when no followed
        entry is left in the page itself.
        """
        div = config.diversity
        follow = config.follow
        max_explore_top = config.explore.max_in_top10
        lookback = max(0, int(div.author_repeat_window) - 1)

        remaining = list(ranked)
        backup = list(reserve)
        placed: List[ScoredCandidate] = []
        explore_in_top = 0
        since_followed = 0
        relaxed = 0
        pulled = 0

        while remaining:
            pos = len(placed)
            recent = {c.author_id for c in placed[-lookback:]} if lookback else set()
            previous = placed[-1].author_id if placed else None

            def explore_ok(c: ScoredCandidate) -> bool:
                return not (c.explore and pos < TOP_SLOTS and explore_in_top >= max_explore_top)

            chosen: Optional[ScoredCandidate] = None
            idx: Optional[int] = None
            if follow.catchup_every > 0 and since_followed >= follow.catchup_every:

                def catchup_ok(c: ScoredCandidate) -> bool:
                    return (
                        c.author_id in followed_authors
                        and c.quality >= follow.min_quality_floor
                        and explore_ok(c)
                    )

                idx = _first(remaining, lambda c: catchup_ok(c) and c.author_id not in recent)
                if idx is None:
                    idx = _first(remaining, catchup_ok)
                if idx is None and backup:
                    # Swap the best off-page followed entry in for the lowest-ranked exploit entry.
                    drop = _last_exploit(remaining)
                    if drop is not None:
                        remaining.pop(drop)
                        b = _first(backup, lambda c: c.author_id not in recent)
                        chosen = backup.pop(b if b is not None else 0)
                        pulled += 1

            if chosen is None:
                if idx is None and div.avoid_back_to_back_author:
                    idx = _first(remaining, lambda c: explore_ok(c) and c.author_id not in recent)
                    if idx is None:
                        relaxed += 1
                        idx = _first(remaining, lambda c: explore_ok(c) and c.author_id != previous)

                if idx is None:
                    idx = _first(remaining, explore_ok)
                if idx is None:
                    idx = 0
                chosen = remaining.pop(idx)

            placed.append(chosen)
            if chosen.explore and pos < TOP_SLOTS:
                explore_in_top += 1
            since_followed = 0 if chosen.author_id in followed_authors else since_followed + 1

        if relaxed:
            logger.debug(f"Diversity pass relaxed the author window {relaxed} time(s)")
        if pulled:
            logger.debug(f"Follow catch-up pulled {pulled} off-page item(s) into the page")
        return placed
