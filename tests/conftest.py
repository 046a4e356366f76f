"""Shared fixtures: a temporary SQLite database, a controllable clock and item helpers."""

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from feedrank.bandit import BanditStatsStore
from feedrank.config import ConfigRegistry, RecoConfig
from feedrank.event_log import EventLog, ItemStore
from feedrank.graph import GraphProximityCache
from feedrank.models import Item
from feedrank.settings import Settings

NOW = datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc)


class FixedClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class TickClock:
    """Float clock (seconds) for rate limits and cache TTLs."""

    def __init__(self, start: float = 1000.0):
        self.t = start

    def __call__(self) -> float:
        return self.t

    def advance(self, seconds: float) -> float:
        self.t += seconds
        return self.t


def make_item(item_id, author_id="author-1", age_hours=1.0, now=NOW, **kwargs) -> Item:
    return Item(
        item_id=item_id,
        author_id=author_id,
        created_at=now - timedelta(hours=age_hours),
        **kwargs,
    )


def seed_arm(store, entity_type, entity_id, successes=0, failures=0) -> None:
    """Write a bandit arm's counters directly."""
    with store._connect() as conn:
        conn.execute(
            """
            INSERT INTO bandit_stats (entity_type, entity_id, successes, failures, last_update)
            VALUES (?, ?, ?, ?, 'x');
            """,
            (entity_type, entity_id, successes, failures),
        )


def make_settings(tmp_path: Path, **overrides) -> Settings:
    values = dict(
        db_path=tmp_path / "feedrank.sqlite3",
        env="test",
        config_cache_path=tmp_path / "reco_config_lkg.json",
        config_refresh_s=0.0,
        toggle_rate_limit_s=0.0,
        auth_secret="test-secret",
        admin_token="admin-token",
        impression_retention_days=90,
        aggregate_refresh_interval_s=300.0,
        prune_interval_s=86400.0,
        reconcile_interval_s=3600.0,
        graph_refresh_interval_s=3600.0,
        bandit_replay_interval_s=60.0,
        embeddings_enabled=False,
        embedding_model="unused",
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "feedrank.sqlite3"


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def items(db_path):
    return ItemStore(db_path)


@pytest.fixture
def events(db_path):
    return EventLog(db_path)


@pytest.fixture
def graph(db_path):
    return GraphProximityCache(db_path)


@pytest.fixture
def bandit_stats(db_path):
    return BanditStatsStore(db_path)


@pytest.fixture
def registry(db_path, tmp_path):
    return ConfigRegistry(db_path, cache_path=tmp_path / "lkg.json", refresh_s=0.0)


@pytest.fixture
def config():
    return RecoConfig()
