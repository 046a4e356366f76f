"""
Tests for candidate generation.

Tests cover:
- Lookback window and visibility
- Per-user suppression of recently served items
- Hidden items and muted/blocked authors
- Pool ordering, limit and truncation
- Continuation cursors
"""

from datetime import timedelta

import pytest
from conftest import NOW, make_item

from feedrank.candidates import CandidateGenerator, decode_cursor, encode_cursor
from feedrank.config import RecoConfig
from feedrank.errors import InvalidCursor
from feedrank.models import InteractionEvent


@pytest.fixture
def generator(db_path, clock):
    return CandidateGenerator(db_path, clock=clock)


def _ids(pool):
    return [it.item_id for it in pool.items]


# Eligibility

def test_lookback_and_visibility(generator, items, config):
    items.upsert_item(make_item("fresh", age_hours=2))
    items.upsert_item(make_item("stale", age_hours=72))
    items.upsert_item(make_item("hidden-by-author", age_hours=2, is_visible=False))
    items.upsert_item(make_item("future", age_hours=-1))

    pool = generator.generate("u1", config)
    assert _ids(pool) == ["fresh"]
    assert pool.page == 1
    assert pool.as_of == NOW


def test_recent_impressions_are_suppressed(generator, items, events, config):
    items.upsert_item(make_item("seen"))
    items.upsert_item(make_item("seen-long-ago"))
    items.upsert_item(make_item("unseen"))
    events.record_impressions("u1", "p1", [("seen", 0, [])], NOW - timedelta(days=1))
    events.record_impressions("u1", "p0", [("seen-long-ago", 0, [])], NOW - timedelta(days=8))

    assert set(_ids(generator.generate("u1", config))) == {"seen-long-ago", "unseen"}
    # Other users are unaffected.
    assert set(_ids(generator.generate("u2", config))) == {"seen", "seen-long-ago", "unseen"}


def test_anonymous_users_get_unfiltered_pool(generator, items, events, config):
    items.upsert_item(make_item("a"))
    events.record_impressions("u1", "p1", [("a", 0, [])], NOW)

    assert _ids(generator.generate(None, config)) == ["a"]


def test_negative_signals_exclude_items_and_authors(generator, items, events, config):
    items.upsert_item(make_item("h", author_id="ok"))
    items.upsert_item(make_item("m1", author_id="muted"))
    items.upsert_item(make_item("m2", author_id="muted"))
    items.upsert_item(make_item("b1", author_id="blocked"))
    items.upsert_item(make_item("keep", author_id="ok"))
    events.record_event(InteractionEvent("u1", "h", "hide", NOW))
    events.record_event(InteractionEvent("u1", "m1", "mute", NOW))
    events.record_event(InteractionEvent("u1", "b1", "block", NOW))

    assert _ids(generator.generate("u1", config)) == ["keep"]


def test_empty_pool(generator, config):
    pool = generator.generate("u1", config)
    assert pool.empty
    assert pool.truncated is False


# Ordering

def test_pool_ordered_by_engagement_then_recency(generator, items):
    items.upsert_item(make_item("likes", like_count=10))
    items.upsert_item(make_item("replies", reply_count=3))
    items.upsert_item(make_item("newer", age_hours=0.5))
    items.upsert_item(make_item("older", age_hours=5))

    config = RecoConfig.model_validate({"quality_pool": {"limit": 3}})
    pool = generator.generate("u1", config)

    assert _ids(pool) == ["replies", "likes", "newer"]
    assert pool.truncated is True


# Cursors

def test_cursor_advances_page_and_keeps_as_of(generator, items, config, clock):
    items.upsert_item(make_item("a", age_hours=30))
    cursor = encode_cursor(NOW - timedelta(hours=20), 1)

    clock.advance(hours=1)
    pool = generator.generate("u1", config, cursor=cursor)

    assert pool.page == 2
    assert pool.as_of == NOW - timedelta(hours=20)
    # 30h old is inside a 48h lookback measured from as_of.
    assert _ids(pool) == ["a"]


def test_cursor_excludes_items_created_after_as_of(generator, items, config):
    items.upsert_item(make_item("after", age_hours=1))
    cursor = encode_cursor(NOW - timedelta(hours=2), 1)
    assert generator.generate("u1", config, cursor=cursor).empty


def test_cursor_roundtrip():
    as_of, page = decode_cursor(encode_cursor(NOW, 3))
    assert as_of == NOW
    assert page == 3


@pytest.mark.parametrize("bad", ["not-base64!!", "e30", encode_cursor(NOW, 0)])
def test_invalid_cursor(generator, config, bad):
    with pytest.raises(InvalidCursor):
        generator.generate("u1", config, cursor=bad)
