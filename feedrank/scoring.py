"""
Multi-signal rank score.

  freshness = exp(-age_hours / tau_hours)
  quality   = sum(weight[kind] * count[kind])
  relation  = follow_boost (if the author is followed) + graph proximity weight
  score     = freshness * (alpha * quality + beta * relation + gamma * similarity)

Every missing signal (no aggregate row, no proximity edge, no similarity
score) contributes zero; scoring never fails a request.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Mapping, Optional, Sequence, Set

from .config import RecoConfig
from .event_log import ItemStore
from .graph import GraphProximityCache
from .models import Item
from .similarity import NullSimilarity, SimilaritySignal

logger = logging.getLogger(__name__)


@dataclass
class Reason:
    signal: str
    weight: float

    def to_dict(self) -> Dict[str, float]:
        return {"signal": self.signal, "weight": self.weight}


@dataclass
class ScoredCandidate:
    item: Item
    score: float
    freshness: float
    quality: float
    relation: float
    similarity: float
    followed: bool = False
    reasons: List[Reason] = field(default_factory=list)
    explore: bool = False

    @property
    def item_id(self) -> str:
        return self.item.item_id

    @property
    def author_id(self) -> str:
        return self.item.author_id


def _finite(value: Optional[float]) -> float:
    if value is None:
        return 0.0
    value = float(value)
    return value if math.isfinite(value) else 0.0


def engagement_counts(item: Item, aggregates: Optional[Mapping[str, int]]) -> Dict[str, int]:
    """Aggregate counts, falling back to the item's snapshot for kinds not yet refreshed."""
    counts = {"like": item.like_count, "repost": item.repost_count, "comment": item.reply_count}
    for kind, count in (aggregates or {}).items():
        counts[kind] = int(count or 0)
    return counts


def score_item(
    item: Item,
    config: RecoConfig,
    now: datetime,
    counts: Mapping[str, int],
    followed: bool = False,
    proximity: float = 0.0,
    similarity: float = 0.0,
) -> ScoredCandidate:
    age_hours = max(0.0, (now - item.created_at).total_seconds() / 3600.0)
    freshness = math.exp(-age_hours / config.freshness.tau_hours)

    quality = sum(float(w) * float(counts.get(kind, 0) or 0) for kind, w in config.weights.items())
    relation = (config.follow.boost if followed else 0.0) + _finite(proximity)
    similarity = _finite(similarity)

    mixing = config.mixing
    contributions = [
        Reason("quality", freshness * mixing.alpha_quality * quality),
        Reason("relation", freshness * mixing.beta_relation * relation),
        Reason("similarity", freshness * mixing.gamma_similarity * similarity),
    ]
    score = sum(r.weight for r in contributions)
    contributions.sort(key=lambda r: abs(r.weight), reverse=True)

    return ScoredCandidate(
        item=item,
        score=score,
        freshness=freshness,
        quality=quality,
        relation=relation,
        similarity=similarity,
        followed=followed,
        reasons=contributions + [Reason("freshness", freshness)],
    )


def rank_key(c: ScoredCandidate):
    # Highest score first; ties go to the newer item, then a stable id order.
    return (-c.score, -c.item.created_at.timestamp(), c.item_id)


class Scorer:
    def __init__(
        self,
        items: ItemStore,
        graph: GraphProximityCache,
        similarity: Optional[SimilaritySignal] = None,
    ) -> None:
        self.items = items
        self.graph = graph
        self.similarity = similarity or NullSimilarity()

    def _similarity_scores(self, user_id: Optional[str], items: Sequence[Item]) -> Dict[str, float]:
        try:
            return self.similarity.scores(user_id, items)
        except Exception as exc:  # noqa: BLE001
            logger.warning(f"Similarity signal failed; scoring without it: {exc}")
            return {}

    def score(
        self,
        user_id: Optional[str],
        items: Sequence[Item],
        config: RecoConfig,
        now: datetime,
        followed_authors: Optional[Set[str]] = None,
    ) -> List[ScoredCandidate]:
        """Score and sort `items` best-first."""
        if not items:
            return []
        followed_authors = followed_authors or set()
        aggregates = self.items.aggregate_counts([it.item_id for it in items])
        proximity = self.graph.proximity(user_id, [it.author_id for it in items]) if user_id else {}
        similarity = self._similarity_scores(user_id, items)

        scored = [
            score_item(
                it,
                config,
                now,
                engagement_counts(it, aggregates.get(it.item_id)),
                followed=it.author_id in followed_authors,
                proximity=proximity.get(it.author_id, 0.0),
                similarity=similarity.get(it.item_id, 0.0),
            )
            for it in items
        ]
        scored.sort(key=rank_key)
        return scored
