"""
Tests for the versioned configuration registry.

Tests cover:
- Typed config documents and their defaults
- Insert/activate/list lifecycle and its errors
- At most one active version per env, also under concurrent activation
- Last-known-good fallback (memory, then disk, then built-in defaults)
"""

import sqlite3
import threading

import pytest

from feedrank.config import DEFAULT_VERSION, ConfigRegistry, RecoConfig, parse_config
from feedrank.errors import ConfigNotFound, ConfigVersionExists, InvalidConfig


def _fail_storage(*args, **kwargs):
    raise sqlite3.OperationalError("database is locked")


# Documents

def test_defaults():
    config = RecoConfig()
    assert config.freshness.tau_hours == 12.0
    assert config.explore.curiosity_ratio == 0.12
    assert config.explore.max_in_top10 == 3
    assert config.diversity.author_repeat_window == 5
    assert config.follow.catchup_every == 12
    assert config.suppression.dedupe_days == 7.0
    assert config.weights["block"] < 0


def test_partial_document_keeps_other_defaults():
    config = parse_config({"freshness": {"tau_hours": 6}, "unknown_section": {"x": 1}})
    assert config.freshness.tau_hours == 6
    assert config.mixing.alpha_quality == 0.6


@pytest.mark.parametrize(
    "document",
    [
        {"freshness": {"tau_hours": 0}},
        {"explore": {"curiosity_ratio": 1.5}},
        {"weights": {"sparkle": 1.0}},
        {"explore": {"arm_type": "topic"}},
    ],
)
def test_invalid_documents(document):
    with pytest.raises(InvalidConfig):
        parse_config(document)


# Lifecycle

def test_insert_activate_list(registry):
    registry.insert_version("prod", "v1", {}, description="first")
    registry.insert_version("prod", "v2", {"freshness": {"tau_hours": 24}})

    registry.activate("prod", "v2")
    active = registry.get_active("prod")
    assert active.version == "v2"
    assert active.config.freshness.tau_hours == 24

    registry.activate("prod", "v1")
    versions = {v.version: v.is_active for v in registry.list_versions("prod")}
    assert versions == {"v1": True, "v2": False}
    assert registry.get_active("prod").version == "v1"


def test_duplicate_version(registry):
    registry.insert_version("prod", "v1", {})
    with pytest.raises(ConfigVersionExists):
        registry.insert_version("prod", "v1", {})
    # Same version name in another env is fine.
    registry.insert_version("staging", "v1", {})


def test_activate_missing_version(registry):
    with pytest.raises(ConfigNotFound):
        registry.activate("prod", "nope")


def test_insert_rejects_invalid_document(registry):
    with pytest.raises(InvalidConfig):
        registry.insert_version("prod", "bad", {"diversity": {"author_repeat_window": 0}})
    assert registry.list_versions("prod") == []


def test_no_active_version_uses_builtin_defaults(registry):
    active = registry.get_active("prod")
    assert active.version == DEFAULT_VERSION
    assert active.config == RecoConfig()


def test_parsed_config_is_reused(registry):
    registry.insert_version("prod", "v1", {})
    registry.activate("prod", "v1")
    assert registry.get_active("prod").config is registry.get_active("prod").config


def test_seed_defaults_is_idempotent(registry):
    registry.seed_defaults("prod")
    registry.seed_defaults("prod")
    assert [(v.version, v.is_active) for v in registry.list_versions("prod")] == [("seed", True)]

    registry.insert_version("prod", "v2", {})
    registry.activate("prod", "v2")
    registry.seed_defaults("prod")
    assert registry.get_active("prod").version == "v2"


# Single active version

def test_storage_rejects_second_active_row(registry):
    registry.insert_version("prod", "v1", {})
    registry.insert_version("prod", "v2", {})
    registry.activate("prod", "v1")

    with pytest.raises(sqlite3.IntegrityError):
        with registry._connect() as conn:
            conn.execute("UPDATE reco_config SET is_active = 1 WHERE env = 'prod' AND version = 'v2';")


def test_concurrent_activation_leaves_one_active(registry):
    names = [f"v{n}" for n in range(8)]
    for name in names:
        registry.insert_version("prod", name, {})
    barrier = threading.Barrier(len(names))
    errors = []

    def activate(name):
        barrier.wait()
        try:
            registry.activate("prod", name)
        except Exception as exc:  # noqa: BLE001
            errors.append(exc)

    threads = [threading.Thread(target=activate, args=(n,)) for n in names]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert sum(v.is_active for v in registry.list_versions("prod")) == 1


# Fallback

def test_falls_back_to_last_known_good_in_memory(registry, monkeypatch):
    registry.insert_version("prod", "v1", {"freshness": {"tau_hours": 3}})
    registry.activate("prod", "v1")
    registry.get_active("prod")

    monkeypatch.setattr(registry, "_load_active", _fail_storage)
    active = registry.get_active("prod")
    assert active.version == "v1"
    assert active.config.freshness.tau_hours == 3


def test_falls_back_to_last_known_good_on_disk(db_path, tmp_path, monkeypatch):
    cache_path = tmp_path / "lkg.json"
    first = ConfigRegistry(db_path, cache_path=cache_path, refresh_s=0)
    first.insert_version("prod", "v1", {"freshness": {"tau_hours": 3}})
    first.activate("prod", "v1")
    first.get_active("prod")
    assert cache_path.exists()

    # A fresh process has nothing in memory.
    second = ConfigRegistry(db_path, cache_path=cache_path, refresh_s=0)
    monkeypatch.setattr(second, "_load_active", _fail_storage)
    active = second.get_active("prod")
    assert active.version == "v1"
    assert active.config.freshness.tau_hours == 3


def test_falls_back_to_builtin_without_history(db_path, monkeypatch):
    registry = ConfigRegistry(db_path, cache_path=None, refresh_s=0)
    monkeypatch.setattr(registry, "_load_active", _fail_storage)
    assert registry.get_active("prod").version == DEFAULT_VERSION


def test_refresh_interval_caches_active(db_path):
    ticks = iter([0.0, 1.0, 100.0])
    registry = ConfigRegistry(db_path, refresh_s=10.0, clock=lambda: next(ticks))
    registry.insert_version("prod", "v1", {})
    registry.insert_version("prod", "v2", {})
    registry.activate("prod", "v1")

    assert registry.get_active("prod").version == "v1"
    # Activation elsewhere (another process) is seen after the refresh interval.
    with registry._connect() as conn:
        conn.execute("UPDATE reco_config SET is_active = 0 WHERE env = 'prod';")
        conn.execute("UPDATE reco_config SET is_active = 1 WHERE env = 'prod' AND version = 'v2';")
    assert registry.get_active("prod").version == "v1"
    assert registry.get_active("prod").version == "v2"
