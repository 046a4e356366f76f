from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

import numpy as np
from fastapi import Depends, FastAPI, Header, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from .assembler import PageAssembler
from .auth import user_from_authorization
from .bandit import BanditStatsStore, BanditUpdater
from .candidates import CandidateGenerator
from .config import ConfigRegistry
from .diversity import DiversityPass
from .engagement import EngagementToggleService
from .errors import FeedrankError, ItemNotFound, Unauthenticated
from .event_log import EventLog, ItemStore
from .exploration import ExplorationSelector
from .feed import DEFAULT_PAGE_SIZE, FeedService
from .graph import GraphProximityCache
from .models import (
    ConfigIn,
    ConfigVersionOut,
    EngagementUpdateOut,
    EventIn,
    FeedPageOut,
    InteractionEvent,
    ToggleIn,
    ToggleOut,
)
from .persistence import utc_now
from .realtime import EngagementHub, Subscription
from .scoring import Scorer
from .settings import LoggingConfig, Settings
from .similarity import EmbeddingSimilarity, LazySentenceTransformer, NullSimilarity, SimilaritySignal

logger = logging.getLogger(__name__)


@dataclass
class Engine:
    settings: Settings
    items: ItemStore
    events: EventLog
    graph: GraphProximityCache
    registry: ConfigRegistry
    bandit_stats: BanditStatsStore
    bandit_updater: BanditUpdater
    hub: EngagementHub
    toggles: EngagementToggleService
    feed: FeedService


def build_engine(
    settings: Settings,
    clock: Callable[[], datetime] = utc_now,
    rng: Union[np.random.Generator, int, None] = None,
    similarity: Optional[SimilaritySignal] = None,
) -> Engine:
    db_path = settings.db_path
    items = ItemStore(db_path)
    events = EventLog(db_path)
    graph = GraphProximityCache(db_path)
    registry = ConfigRegistry(db_path, cache_path=settings.config_cache_path, refresh_s=settings.config_refresh_s)
    bandit_stats = BanditStatsStore(db_path)
    bandit_updater = BanditUpdater(bandit_stats)
    hub = EngagementHub()
    toggles = EngagementToggleService(
        db_path,
        hub=hub,
        bandit_updater=bandit_updater,
        rate_limit_s=settings.toggle_rate_limit_s,
    )

    if similarity is None:
        if settings.embeddings_enabled:
            similarity = EmbeddingSimilarity(LazySentenceTransformer(settings.embedding_model), events, items)
        else:
            similarity = NullSimilarity()

    feed = FeedService(
        registry=registry,
        env=settings.env,
        candidates=CandidateGenerator(db_path, clock=clock),
        scorer=Scorer(items, graph, similarity),
        explorer=ExplorationSelector(bandit_stats, events, rng=rng),
        diversity=DiversityPass(),
        assembler=PageAssembler(events, items),
        graph=graph,
        clock=clock,
    )
    return Engine(
        settings=settings,
        items=items,
        events=events,
        graph=graph,
        registry=registry,
        bandit_stats=bandit_stats,
        bandit_updater=bandit_updater,
        hub=hub,
        toggles=toggles,
        feed=feed,
    )


async def serve_realtime(websocket, sub: Subscription) -> None:
    """Stream hub updates to one websocket until either direction fails.

    Clients send `{"visible": [ids]}` frames; each is acknowledged with
    `{"subscribed": n}`.
    """

    async def pump() -> None:
        while True:
            update = await sub.get()
            out = EngagementUpdateOut(
                item_id=update.item_id,
                like_count=update.like_count,
                repost_count=update.repost_count,
                reply_count=update.reply_count,
                revision=update.revision,
            )
            await websocket.send_json(out.model_dump(by_alias=True))

    async def receive() -> None:
        while True:
            message = await websocket.receive_json()
            visible = message.get("visible") if isinstance(message, dict) else None
            if isinstance(visible, list):
                sub.update([str(i) for i in visible])
                await websocket.send_json({"subscribed": len(sub.item_ids)})

    tasks = {asyncio.ensure_future(pump()), asyncio.ensure_future(receive())}
    try:
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            exc = None if task.cancelled() else task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                logger.info(f"Realtime session ended: {exc!r}")
    finally:
        sub.close()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


def create_app(settings: Optional[Settings] = None, engine: Optional[Engine] = None) -> FastAPI:
    """App factory: `uvicorn --factory feedrank.main:create_app`."""
    if engine is None:
        engine = build_engine(settings or Settings.from_env())
    settings = engine.settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        engine.registry.seed_defaults(settings.env)
        engine.bandit_updater.start()
        logger.info(f"feedrank API up: env={settings.env} db={settings.db_path}")
        try:
            yield
        finally:
            engine.bandit_updater.stop()

    app = FastAPI(title="feedrank", lifespan=lifespan)
    app.state.engine = engine

    @app.middleware("http")
    async def no_cache_api_responses(request: Request, call_next):
        """Feed pages are per-request and consume suppression; never cache them."""
        response = await call_next(request)
        if request.url.path.startswith("/api/"):
            response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate, max-age=0"
            response.headers["Pragma"] = "no-cache"
            response.headers["Expires"] = "0"
        return response

    @app.exception_handler(FeedrankError)
    async def feedrank_error_handler(request: Request, exc: FeedrankError) -> JSONResponse:
        correlation_id = str(uuid.uuid4())
        log = logger.error if exc.status_code >= 500 else logger.info
        log(f"{request.method} {request.url.path} -> {exc.status_code} {exc.code}: {exc.message} [{correlation_id}]")
        return JSONResponse(
            status_code=exc.status_code,
            content={"code": exc.code, "message": exc.message, "correlationId": correlation_id},
        )

    # ---------- Dependencies ----------

    def optional_user(authorization: Optional[str] = Header(None)) -> Optional[str]:
        return user_from_authorization(authorization, settings.auth_secret)

    def required_user(user_id: Optional[str] = Depends(optional_user)) -> str:
        if not user_id:
            raise Unauthenticated("authentication required")
        return user_id

    def require_admin(x_admin_token: Optional[str] = Header(None)) -> None:
        if not settings.admin_token or x_admin_token != settings.admin_token:
            raise HTTPException(status_code=403, detail="admin token required")

    # ---------- Feed ----------

    @app.get("/api/feed", response_model=FeedPageOut, response_model_by_alias=True)
    def get_feed(
        cursor: Optional[str] = None,
        limit: int = DEFAULT_PAGE_SIZE,
        user_id: Optional[str] = Depends(optional_user),
    ) -> FeedPageOut:
        return engine.feed.get_page(user_id, limit=limit, cursor=cursor).to_out()

    # ---------- Engagement ----------

    @app.post("/api/engagement/toggle", response_model=ToggleOut, response_model_by_alias=True)
    def toggle_engagement(body: ToggleIn, user_id: str = Depends(required_user)) -> ToggleOut:
        result = engine.toggles.toggle(user_id, body.item_id, body.kind)
        return ToggleOut(is_active=result.is_active, count=result.count, revision=result.revision)

    @app.post("/api/events", status_code=202)
    def record_event(body: EventIn, user_id: str = Depends(required_user)) -> Dict[str, Any]:
        if engine.items.get_item(body.item_id) is None:
            raise ItemNotFound(f"item {body.item_id} not found")
        event = engine.events.record_event(
            InteractionEvent(
                user_id=user_id,
                item_id=body.item_id,
                kind=body.kind,
                created_at=utc_now(),
                dwell_ms=body.dwell_ms,
            )
        )
        engine.bandit_updater.submit(event)
        return {"eventId": event.event_id}

    @app.websocket("/api/realtime")
    async def realtime(websocket: WebSocket) -> None:
        await websocket.accept()
        await serve_realtime(websocket, engine.hub.subscribe([]))

    # ---------- Admin: configuration ----------

    def _version_out(v) -> ConfigVersionOut:
        return ConfigVersionOut(
            env=v.env,
            version=v.version,
            is_active=v.is_active,
            description=v.description,
            created_at=v.created_at,
        )

    @app.post(
        "/api/admin/config",
        status_code=201,
        response_model=ConfigVersionOut,
        response_model_by_alias=True,
        dependencies=[Depends(require_admin)],
    )
    def insert_config(body: ConfigIn) -> ConfigVersionOut:
        return _version_out(engine.registry.insert_version(body.env, body.version, body.config, body.description))

    @app.post("/api/admin/config/{env}/{version}/activate", dependencies=[Depends(require_admin)])
    def activate_config(env: str, version: str) -> Dict[str, str]:
        engine.registry.activate(env, version)
        return {"env": env, "activeVersion": version}

    @app.get("/api/admin/config/{env}", dependencies=[Depends(require_admin)])
    def list_configs(env: str) -> Dict[str, Any]:
        versions: List[ConfigVersionOut] = [_version_out(v) for v in engine.registry.list_versions(env)]
        active = next((v.version for v in versions if v.is_active), None)
        return {
            "env": env,
            "activeVersion": active,
            "versions": [v.model_dump(by_alias=True) for v in versions],
        }

    @app.get("/api/health")
    def health() -> Dict[str, Any]:
        active = engine.registry.get_active(settings.env)
        return {"status": "ok", "env": settings.env, "configVersion": active.version}

    return app


def run() -> None:
    import uvicorn

    LoggingConfig.configure_logging()
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)


if __name__ == "__main__":
    run()
