from __future__ import annotations

import dataclasses
import logging
import math
import threading
from typing import List, Optional, Sequence, Set, Union

import numpy as np

from .bandit import BanditStatsStore, BetaThompsonSampler
from .config import ExploreConfig
from .event_log import EventLog
from .scoring import Reason, ScoredCandidate

logger = logging.getLogger(__name__)

TOP_SLOTS = 10


def explore_slot_count(limit: int, curiosity_ratio: float) -> int:
    """round(limit * ratio), halves rounded up."""
    return int(math.floor(limit * curiosity_ratio + 0.5))


def explore_positions(limit: int, n_explore: int, max_in_top10: int, top: int = TOP_SLOTS) -> List[int]:
    """Evenly spaced explore slots in a page of `limit`, with at most
    `max_in_top10` of them in the first `top` positions.

    `n_explore` is reduced when the cap leaves too few eligible slots.
    """
    feasible = min(max_in_top10, min(limit, top)) + max(0, limit - top)
    n = max(0, min(int(n_explore), feasible))
    if n == 0:
        return []

    step = limit / (n + 1)
    taken: Set[int] = set()
    in_top = 0
    for j in range(n):
        target = min(limit - 1, int((j + 1) * step))
        eligible = [
            p
            for p in (*range(target, limit), *range(target - 1, -1, -1))
            if p not in taken and (p >= top or in_top < max_in_top10)
        ]
        pos = eligible[0]
        taken.add(pos)
        if pos < top:
            in_top += 1
    return sorted(taken)


class ExplorationSelector:
    """Blends Thompson-sampled explore picks into the exploit-ranked list.

    Per request only: reads bandit stats and the user's impression history,
    never writes. Stats are updated asynchronously by `BanditUpdater`.
    """

    def __init__(
        self,
        stats: BanditStatsStore,
        events: EventLog,
        rng: Union[np.random.Generator, int, None] = None,
    ) -> None:
        self.stats = stats
        self.events = events
        self.rng = rng if isinstance(rng, np.random.Generator) else np.random.default_rng(rng)
        # numpy Generators are not thread-safe; requests run in a threadpool.
        self._rng_lock = threading.Lock()

    def _sample(self, user_id: Optional[str], pool: Sequence[ScoredCandidate], cfg: ExploreConfig) -> np.ndarray:
        arm_ids = [c.item_id if cfg.arm_type == "item" else c.author_id for c in pool]
        stats = self.stats.get_stats(cfg.arm_type, arm_ids)
        seen = self.events.impression_counts(user_id, [c.item_id for c in pool]) if user_id else {}

        sampler = BetaThompsonSampler(cfg.prior_successes, cfg.prior_failures, rng=self.rng)
        with self._rng_lock:
            theta = sampler.sample([stats[a] for a in arm_ids])
        novelty = np.asarray(
            [cfg.novelty_bonus if seen.get(c.item_id, 0) == 0 else 0.0 for c in pool],
            dtype=np.float64,
        )
        return theta + novelty

    def _pick(self, pool: List[ScoredCandidate], values: np.ndarray, n: int, epsilon: float) -> List[ScoredCandidate]:
        order = np.argsort(-values, kind="mergesort")
        remaining = [(pool[i], float(values[i])) for i in order]
        picks: List[ScoredCandidate] = []
        for _ in range(n):
            if not remaining:
                break
            with self._rng_lock:
                random_pick = self.rng.random() < epsilon
                idx = int(self.rng.integers(len(remaining))) if random_pick else 0
            candidate, value = remaining.pop(idx)
            picks.append(
                dataclasses.replace(
                    candidate,
                    explore=True,
                    reasons=list(candidate.reasons) + [Reason("explore", value)],
                )
            )
        return picks

    def select(
        self,
        user_id: Optional[str],
        ranked: Sequence[ScoredCandidate],
        limit: int,
        cfg: ExploreConfig,
    ) -> List[ScoredCandidate]:
        """Return at most `limit` candidates: exploit picks in rank order with
        explore picks interleaved at evenly spaced positions."""
        page_size = min(int(limit), len(ranked))
        if page_size <= 0:
            return []

        positions = explore_positions(
            page_size, explore_slot_count(page_size, cfg.curiosity_ratio), cfg.max_in_top10
        )
        n_explore = len(positions)
        exploit = list(ranked[: page_size - n_explore])
        if n_explore == 0:
            return exploit

        pool = list(ranked[page_size - n_explore :])
        values = self._sample(user_id, pool, cfg)
        explore = self._pick(pool, values, n_explore, cfg.epsilon)

        merged: List[ScoredCandidate] = []
        explore_iter = iter(explore)
        exploit_iter = iter(exploit)
        slots = set(positions)
        for pos in range(page_size):
            source = explore_iter if pos in slots else exploit_iter
            merged.append(next(source))

        logger.debug(f"Exploration: {n_explore} explore / {len(exploit)} exploit at positions {positions}")
        return merged
