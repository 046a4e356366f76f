from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

EventKind = Literal[
    "like",
    "unlike",
    "comment",
    "repost",
    "expand",
    "profile_visit",
    "follow_after_view",
    "hide",
    "mute",
    "block",
]
ToggleKind = Literal["like", "repost"]
ArmType = Literal["item", "author"]

EVENT_KINDS = (
    "like",
    "unlike",
    "comment",
    "repost",
    "expand",
    "profile_visit",
    "follow_after_view",
    "hide",
    "mute",
    "block",
)
# Kinds with an aggregate count (unlike only ever cancels a like).
AGGREGATE_KINDS = tuple(k for k in EVENT_KINDS if k != "unlike")
SUCCESS_KINDS = frozenset({"like", "comment", "repost", "expand", "profile_visit", "follow_after_view"})
FAILURE_KINDS = frozenset({"hide", "mute", "block"})


@dataclass
class Item:
    item_id: str
    author_id: str
    created_at: datetime
    like_count: int = 0
    repost_count: int = 0
    reply_count: int = 0
    is_visible: bool = True
    text: Optional[str] = None


@dataclass
class InteractionEvent:
    user_id: str
    item_id: str
    kind: EventKind
    created_at: datetime
    dwell_ms: Optional[int] = None
    event_id: Optional[str] = None


@dataclass
class Impression:
    user_id: str
    item_id: str
    created_at: datetime
    page_id: Optional[str] = None
    position: Optional[int] = None
    reasons: Optional[List[Dict[str, Any]]] = None


@dataclass
class GraphProximityEdge:
    user_id: str
    other_id: str
    weight: float


@dataclass
class BanditArmStat:
    entity_type: ArmType
    entity_id: str
    successes: int = 0
    failures: int = 0


@dataclass
class ToggleResult:
    is_active: bool
    count: int
    revision: int = 0


@dataclass
class EngagementUpdate:
    item_id: str
    like_count: int
    repost_count: int
    reply_count: int
    revision: int


@dataclass
class ViewerState:
    liked: set = field(default_factory=set)
    reposted: set = field(default_factory=set)


# ---------- Wire models ----------


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ReasonOut(WireModel):
    signal: str
    weight: float


class FeedItemOut(WireModel):
    id: str
    author_id: str
    created_at: str
    score: float
    reasons: List[ReasonOut]
    explore: bool
    like_count: int
    repost_count: int
    reply_count: int
    is_liked: bool = False
    is_reposted: bool = False
    revision: int = 0
    text: Optional[str] = None


class FeedPageOut(WireModel):
    page_id: str
    items: List[FeedItemOut]
    next_cursor: Optional[str] = None


class ToggleIn(WireModel):
    item_id: str
    kind: ToggleKind


class ToggleOut(WireModel):
    is_active: bool
    count: int
    revision: int = 0


class EventIn(WireModel):
    item_id: str
    kind: EventKind
    dwell_ms: Optional[int] = None


class EngagementUpdateOut(WireModel):
    item_id: str
    like_count: int
    repost_count: int
    reply_count: int
    revision: int


class ConfigIn(WireModel):
    env: str
    version: str
    description: Optional[str] = None
    config: Dict[str, Any] = Field(default_factory=dict)


class ConfigVersionOut(WireModel):
    env: str
    version: str
    is_active: bool
    description: Optional[str] = None
    created_at: str
