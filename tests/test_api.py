"""
Tests for the HTTP API.

Tests cover:
- Feed pages (anonymous, authenticated, suppression, cursors, limits)
- Engagement toggles and interaction events
- Realtime websocket updates
- Admin configuration endpoints
- Error payloads and cache headers
"""

import asyncio

import pytest
from conftest import make_item, make_settings
from fastapi.testclient import TestClient

from feedrank.auth import issue_token
from feedrank.main import build_engine, create_app, serve_realtime
from feedrank.models import EngagementUpdate
from feedrank.realtime import EngagementHub

ADMIN = {"X-Admin-Token": "admin-token"}


def _auth(user_id="u1"):
    return {"Authorization": f"Bearer {issue_token(user_id, 'test-secret')}"}


@pytest.fixture
def engine(tmp_path, clock):
    engine = build_engine(make_settings(tmp_path), clock=clock, rng=0)
    for n in range(3):
        engine.items.upsert_item(
            make_item(f"i{n}", author_id=f"author-{n}", age_hours=n + 1, like_count=3 - n, text=f"post {n}")
        )
    return engine


@pytest.fixture
def client(engine):
    with TestClient(create_app(engine=engine)) as c:
        yield c


# Feed

def test_anonymous_feed(client):
    resp = client.get("/api/feed")
    assert resp.status_code == 200
    body = resp.json()

    assert [it["id"] for it in body["items"]] == ["i0", "i1", "i2"]
    assert body["nextCursor"] is None
    first = body["items"][0]
    assert first["authorId"] == "author-0"
    assert first["text"] == "post 0"
    assert first["isLiked"] is False
    assert first["explore"] is False
    assert first["reasons"][-1]["signal"] == "freshness"
    assert resp.headers["Cache-Control"].startswith("no-store")


def test_anonymous_reads_do_not_suppress(client):
    client.get("/api/feed")
    assert len(client.get("/api/feed").json()["items"]) == 3


def test_authenticated_feed_pages_and_suppression(client, engine):
    first = client.get("/api/feed", params={"limit": 2}, headers=_auth()).json()
    assert [it["id"] for it in first["items"]] == ["i0", "i1"]
    assert first["nextCursor"]

    served = engine.events.page_impressions(first["pageId"])
    assert [row["item_id"] for row in served] == ["i0", "i1"]

    second = client.get(
        "/api/feed", params={"limit": 2, "cursor": first["nextCursor"]}, headers=_auth()
    ).json()
    assert [it["id"] for it in second["items"]] == ["i2"]
    assert second["nextCursor"] is None

    assert client.get("/api/feed", headers=_auth()).json()["items"] == []


def test_viewer_state_on_feed_items(client):
    client.post("/api/engagement/toggle", json={"itemId": "i1", "kind": "like"}, headers=_auth())
    items = {it["id"]: it for it in client.get("/api/feed", headers=_auth()).json()["items"]}

    assert items["i1"]["isLiked"] is True
    assert items["i1"]["likeCount"] == 1
    assert items["i1"]["revision"] == 1
    assert items["i0"]["isLiked"] is False


def test_limit_is_capped(client, engine):
    for n in range(3, 70):
        engine.items.upsert_item(make_item(f"i{n}", author_id=f"author-{n}"))
    assert len(client.get("/api/feed", params={"limit": 500}).json()["items"]) == 50
    assert len(client.get("/api/feed", params={"limit": 0}).json()["items"]) == 1


def test_invalid_cursor(client):
    resp = client.get("/api/feed", params={"cursor": "garbage"}, headers=_auth())
    assert resp.status_code == 400
    body = resp.json()
    assert body["code"] == "INVALID_CURSOR"
    assert body["correlationId"]


def test_bad_token_is_rejected(client):
    resp = client.get("/api/feed", headers={"Authorization": "Bearer not-a-jwt"})
    assert resp.status_code == 401
    assert resp.json()["code"] == "UNAUTHORIZED"


# Engagement

def test_toggle_requires_auth(client):
    resp = client.post("/api/engagement/toggle", json={"itemId": "i0", "kind": "like"})
    assert resp.status_code == 401


def test_toggle_like(client):
    on = client.post("/api/engagement/toggle", json={"itemId": "i0", "kind": "like"}, headers=_auth())
    assert on.status_code == 200
    assert on.json() == {"isActive": True, "count": 1, "revision": 1}

    off = client.post("/api/engagement/toggle", json={"itemId": "i0", "kind": "like"}, headers=_auth())
    assert off.json() == {"isActive": False, "count": 0, "revision": 2}


def test_toggle_unknown_item(client):
    resp = client.post("/api/engagement/toggle", json={"itemId": "nope", "kind": "like"}, headers=_auth())
    assert resp.status_code == 404
    assert resp.json()["code"] == "ITEM_NOT_FOUND"


def test_toggle_invalid_kind(client):
    resp = client.post("/api/engagement/toggle", json={"itemId": "i0", "kind": "bookmark"}, headers=_auth())
    assert resp.status_code == 422


def test_record_event(client, engine):
    resp = client.post(
        "/api/events", json={"itemId": "i0", "kind": "expand", "dwellMs": 1200}, headers=_auth()
    )
    assert resp.status_code == 202
    assert resp.json()["eventId"]

    events = engine.events.events_for_user("u1", ["expand"])
    assert [(e.item_id, e.dwell_ms) for e in events] == [("i0", 1200)]


def test_record_event_unknown_item(client):
    resp = client.post("/api/events", json={"itemId": "nope", "kind": "hide"}, headers=_auth())
    assert resp.status_code == 404


def test_hidden_item_leaves_feed(client):
    client.post("/api/events", json={"itemId": "i0", "kind": "hide"}, headers=_auth("u2"))
    ids = [it["id"] for it in client.get("/api/feed", headers=_auth("u2")).json()["items"]]
    assert "i0" not in ids


# Realtime

def test_realtime_receives_toggle_updates(client):
    with client.websocket_connect("/api/realtime") as ws:
        ws.send_json({"visible": ["i0", "i1"]})
        assert ws.receive_json() == {"subscribed": 2}

        client.post("/api/engagement/toggle", json={"itemId": "i1", "kind": "like"}, headers=_auth())
        update = ws.receive_json()

    assert update == {"itemId": "i1", "likeCount": 1, "repostCount": 0, "replyCount": 0, "revision": 1}


class ClosedSocket:
    """Accepts one visible-set frame, then fails every update send."""

    def __init__(self):
        self.frames = [{"visible": ["i1"]}]
        self.acked = asyncio.Event()

    async def receive_json(self):
        if self.frames:
            return self.frames.pop(0)
        await asyncio.Event().wait()

    async def send_json(self, data):
        if "subscribed" in data:
            self.acked.set()
            return
        raise RuntimeError("socket closed")


@pytest.mark.asyncio
async def test_realtime_session_ends_when_send_fails():
    hub = EngagementHub()
    socket = ClosedSocket()
    session = asyncio.ensure_future(serve_realtime(socket, hub.subscribe([])))
    await asyncio.wait_for(socket.acked.wait(), timeout=1.0)
    assert hub.subscriber_count("i1") == 1

    hub.publish(EngagementUpdate("i1", 1, 0, 0, 1))
    await asyncio.wait_for(session, timeout=1.0)

    assert hub.subscriber_count("i1") == 0


# Admin

def test_admin_requires_token(client):
    assert client.get("/api/admin/config/test").status_code == 403
    assert client.get("/api/admin/config/test", headers={"X-Admin-Token": "wrong"}).status_code == 403


def test_admin_config_lifecycle(client):
    listing = client.get("/api/admin/config/test", headers=ADMIN).json()
    assert listing["activeVersion"] == "seed"

    created = client.post(
        "/api/admin/config",
        json={"env": "test", "version": "v2", "description": "faster decay", "config": {"freshness": {"tau_hours": 1}}},
        headers=ADMIN,
    )
    assert created.status_code == 201, created.text
    assert created.json()["isActive"] is False

    activated = client.post("/api/admin/config/test/v2/activate", headers=ADMIN)
    assert activated.json() == {"env": "test", "activeVersion": "v2"}

    listing = client.get("/api/admin/config/test", headers=ADMIN).json()
    assert listing["activeVersion"] == "v2"
    assert [v["version"] for v in listing["versions"]] == ["seed", "v2"]
    assert client.get("/api/health").json()["configVersion"] == "v2"


def test_admin_config_errors(client):
    body = {"env": "test", "version": "v2", "config": {}}
    assert client.post("/api/admin/config", json=body, headers=ADMIN).status_code == 201

    dup = client.post("/api/admin/config", json=body, headers=ADMIN)
    assert dup.status_code == 409
    assert dup.json()["code"] == "CONFIG_VERSION_EXISTS"

    bad = client.post(
        "/api/admin/config",
        json={"env": "test", "version": "v3", "config": {"explore": {"curiosity_ratio": 2}}},
        headers=ADMIN,
    )
    assert bad.status_code == 422
    assert bad.json()["code"] == "INVALID_CONFIG"

    missing = client.post("/api/admin/config/test/v9/activate", headers=ADMIN)
    assert missing.status_code == 404


def test_health(client):
    body = client.get("/api/health").json()
    assert body == {"status": "ok", "env": "test", "configVersion": "seed"}
