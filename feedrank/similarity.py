"""
Pluggable user/item similarity signal for the scorer.

The scorer treats a missing score as zero, so `NullSimilarity` (the default)
simply disables the gamma term.
"""
from __future__ import annotations

import threading
from collections import OrderedDict
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from .event_log import EventLog, ItemStore
from .models import Item

DEFAULT_EMBEDDING_MODEL = "lumees/lumees-matryoshka-embedding-v1"


class SimilaritySignal:
    def scores(self, user_id: Optional[str], items: Sequence[Item]) -> Dict[str, float]:
        """item_id -> similarity. Items without a score contribute zero."""
        raise NotImplementedError


class NullSimilarity(SimilaritySignal):
    def scores(self, user_id: Optional[str], items: Sequence[Item]) -> Dict[str, float]:
        return {}


class LazySentenceTransformer:
    """Lazily load the SentenceTransformer model on first encode().

    Keeps the API process fast to start and avoids blocking the web server
    while model weights download.
    """

    def __init__(self, model_name: str = DEFAULT_EMBEDDING_MODEL) -> None:
        self.model_name = str(model_name)
        self._model: Any | None = None
        self._lock = threading.Lock()

    def _get_model(self) -> Any:
        if self._model is None:
            with self._lock:
                if self._model is None:
                    from sentence_transformers import SentenceTransformer

                    self._model = SentenceTransformer(self.model_name)
        return self._model

    def encode(self, *args: Any, **kwargs: Any) -> Any:
        return self._get_model().encode(*args, **kwargs)


class EmbeddingSimilarity(SimilaritySignal):
    """Cosine similarity between an item's text embedding and the centroid of
    the user's recently liked/reposted items."""

    def __init__(
        self,
        embed_model,
        events: EventLog,
        items: ItemStore,
        embedding_dim: int = 64,
        history: int = 50,
        cache_size: int = 5000,
    ) -> None:
        self.embed_model = embed_model
        self.events = events
        self.items = items
        self.embedding_dim = int(embedding_dim)
        self.history = int(history)
        self.cache_size = int(cache_size)
        self._cache: "OrderedDict[str, np.ndarray]" = OrderedDict()
        self._lock = threading.Lock()

    def _embed_items(self, items: Sequence[Item]) -> Dict[str, np.ndarray]:
        out: Dict[str, np.ndarray] = {}
        missing: List[Item] = []
        with self._lock:
            for it in items:
                vec = self._cache.get(it.item_id)
                if vec is not None:
                    self._cache.move_to_end(it.item_id)
                    out[it.item_id] = vec
                elif it.text:
                    missing.append(it)
        if missing:
            vecs = self.embed_model.encode(
                [it.text for it in missing],
                truncate_dim=self.embedding_dim,
            )
            vecs = np.asarray(vecs, dtype=np.float64).reshape(len(missing), -1)
            norms = np.linalg.norm(vecs, axis=1, keepdims=True)
            norms[norms == 0] = 1.0
            vecs = vecs / norms
            with self._lock:
                for it, vec in zip(missing, vecs):
                    out[it.item_id] = vec
                    self._cache[it.item_id] = vec
                while len(self._cache) > self.cache_size:
                    self._cache.popitem(last=False)
        return out

    def scores(self, user_id: Optional[str], items: Sequence[Item]) -> Dict[str, float]:
        if not user_id or not items:
            return {}
        liked = self.events.events_for_user(user_id, ("like", "repost"), limit=self.history)
        liked_items = list(self.items.get_items([e.item_id for e in liked]).values())
        liked_vecs = list(self._embed_items(liked_items).values())
        if not liked_vecs:
            return {}

        centroid = np.mean(np.vstack(liked_vecs), axis=0)
        norm = float(np.linalg.norm(centroid))
        if norm == 0.0:
            return {}
        centroid = centroid / norm

        return {item_id: float(np.dot(vec, centroid)) for item_id, vec in self._embed_items(items).items()}
