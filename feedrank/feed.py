from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

from .assembler import FeedPage, PageAssembler, new_page_id
from .candidates import CandidateGenerator
from .config import ConfigRegistry
from .diversity import DiversityPass, catchup_reserve
from .exploration import ExplorationSelector
from .graph import GraphProximityCache
from .persistence import utc_now
from .scoring import Scorer

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 50
DEFAULT_PAGE_SIZE = 20


class FeedService:
    """One feed request: candidates -> score -> explore -> diversity -> page."""

    def __init__(
        self,
        registry: ConfigRegistry,
        env: str,
        candidates: CandidateGenerator,
        scorer: Scorer,
        explorer: ExplorationSelector,
        diversity: DiversityPass,
        assembler: PageAssembler,
        graph: GraphProximityCache,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.registry = registry
        self.env = env
        self.candidates = candidates
        self.scorer = scorer
        self.explorer = explorer
        self.diversity = diversity
        self.assembler = assembler
        self.graph = graph
        self._clock = clock

    def get_page(self, user_id: Optional[str], limit: int = DEFAULT_PAGE_SIZE, cursor: Optional[str] = None) -> FeedPage:
        limit = max(1, min(MAX_PAGE_SIZE, int(limit)))
        active = self.registry.get_active(self.env)
        config = active.config

        pool = self.candidates.generate(user_id, config, cursor)
        if pool.empty:
            return FeedPage(page_id=new_page_id(), config_version=active.version)

        now = self._clock()
        followed = self.graph.followed_authors(user_id) if user_id else set()
        ranked = self.scorer.score(user_id, pool.items, config, now, followed_authors=followed)
        merged = self.explorer.select(user_id, ranked, limit, config.explore)
        reserve = catchup_reserve(ranked, merged, followed, config)
        ordered = self.diversity.apply(merged, followed, config, reserve=reserve)
        return self.assembler.assemble(user_id, ordered, pool, served_at=now, config_version=active.version)
