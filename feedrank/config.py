"""
Versioned, environment-scoped ranking configuration.

A RecoConfig document is immutable once inserted. Activation flips a single
`is_active` flag inside one IMMEDIATE transaction, and a partial unique index
makes "two active versions for one env" unrepresentable in storage.

Readers get a parsed `RecoConfig` that is cached per (env, version), so the
JSON document is parsed once per version, not once per request.
"""
from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .db import SQLiteStore
from .errors import ConfigNotFound, ConfigVersionExists, InvalidConfig
from .models import AGGREGATE_KINDS
from .persistence import atomic_write_json, read_json, to_db_ts, utc_now

logger = logging.getLogger(__name__)

DEFAULT_VERSION = "builtin-default"


class _Section(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)


class FreshnessConfig(_Section):
    tau_hours: float = Field(12.0, gt=0)


class MixingConfig(_Section):
    alpha_quality: float = 0.6
    beta_relation: float = 0.25
    gamma_similarity: float = 0.15


class FollowConfig(_Section):
    boost: float = 0.2
    # 0 disables the catch-up rule.
    catchup_every: int = Field(12, ge=0)
    min_quality_floor: float = 0.0


class ExploreConfig(_Section):
    curiosity_ratio: float = Field(0.12, ge=0.0, le=1.0)
    epsilon: float = Field(0.05, ge=0.0, le=1.0)
    novelty_bonus: float = 0.25
    max_in_top10: int = Field(3, ge=0, le=10)
    prior_successes: float = Field(1.0, gt=0)
    prior_failures: float = Field(3.0, gt=0)
    arm_type: Literal["item", "author"] = "item"


class DiversityConfig(_Section):
    avoid_back_to_back_author: bool = True
    author_repeat_window: int = Field(5, ge=1)


class SuppressionConfig(_Section):
    dedupe_days: float = Field(7.0, ge=0)


class QualityPoolConfig(_Section):
    lookback_hours: float = Field(48.0, gt=0)
    limit: int = Field(5000, ge=1)


DEFAULT_WEIGHTS: Dict[str, float] = {
    "like": 1.0,
    "comment": 5.0,
    "repost": 4.0,
    "expand": 1.5,
    "profile_visit": 3.0,
    "follow_after_view": 8.0,
    "hide": -12.0,
    "mute": -25.0,
    "block": -50.0,
}


class RecoConfig(_Section):
    freshness: FreshnessConfig = FreshnessConfig()
    weights: Dict[str, float] = Field(default_factory=lambda: dict(DEFAULT_WEIGHTS))
    mixing: MixingConfig = MixingConfig()
    follow: FollowConfig = FollowConfig()
    explore: ExploreConfig = ExploreConfig()
    diversity: DiversityConfig = DiversityConfig()
    suppression: SuppressionConfig = SuppressionConfig()
    quality_pool: QualityPoolConfig = QualityPoolConfig()

    @field_validator("weights")
    @classmethod
    def _known_kinds(cls, value: Dict[str, float]) -> Dict[str, float]:
        unknown = sorted(set(value) - set(AGGREGATE_KINDS))
        if unknown:
            raise ValueError(f"unknown engagement kinds in weights: {unknown}")
        return value


@dataclass(frozen=True)
class ActiveConfig:
    env: str
    version: str
    config: RecoConfig


@dataclass(frozen=True)
class ConfigVersion:
    env: str
    version: str
    is_active: bool
    description: Optional[str]
    created_at: str


def parse_config(document: Dict[str, Any]) -> RecoConfig:
    try:
        return RecoConfig.model_validate(document or {})
    except ValidationError as exc:
        raise InvalidConfig(str(exc)) from exc


class ConfigRegistry(SQLiteStore):
    """Versioned config store with atomic per-env activation and a
    last-known-good fallback for reads."""

    def __init__(
        self,
        db_path: Path,
        cache_path: Optional[Path] = None,
        refresh_s: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.cache_path = Path(cache_path) if cache_path is not None else None
        self.refresh_s = float(refresh_s)
        self._clock = clock
        self._lock = threading.Lock()
        # (env, version) -> parsed config
        self._parsed: Dict[tuple, RecoConfig] = {}
        # env -> (active config, checked_at)
        self._current: Dict[str, tuple] = {}
        # env -> last config successfully read from storage
        self._last_good: Dict[str, ActiveConfig] = {}
        super().__init__(db_path)

    # ---------- Administration ----------

    def insert_version(
        self,
        env: str,
        version: str,
        document: Dict[str, Any],
        description: Optional[str] = None,
    ) -> ConfigVersion:
        parse_config(document)
        created_at = to_db_ts(utc_now())
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO reco_config (env, version, is_active, description, config, created_at)
                    VALUES (?, ?, 0, ?, ?, ?);
                    """,
                    (env, version, description, json.dumps(document), created_at),
                )
        except sqlite3.IntegrityError as exc:
            raise ConfigVersionExists(f"config {env}/{version} already exists") from exc
        logger.info(f"Inserted config version {env}/{version}")
        return ConfigVersion(env, version, False, description, created_at)

    def activate(self, env: str, version: str) -> None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT id FROM reco_config WHERE env = ? AND version = ?;",
                (env, version),
            ).fetchone()
            if row is None:
                raise ConfigNotFound(f"config {env}/{version} not found")
            # Deactivate first: the partial unique index rejects two active rows.
            conn.execute(
                "UPDATE reco_config SET is_active = 0 WHERE env = ? AND is_active = 1 AND id != ?;",
                (env, int(row["id"])),
            )
            conn.execute("UPDATE reco_config SET is_active = 1 WHERE id = ?;", (int(row["id"]),))
        with self._lock:
            self._current.pop(env, None)
        logger.info(f"Activated config version {env}/{version}")

    def list_versions(self, env: str) -> List[ConfigVersion]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT env, version, is_active, description, created_at
                FROM reco_config
                WHERE env = ?
                ORDER BY id;
                """,
                (env,),
            ).fetchall()
        return [
            ConfigVersion(
                env=r["env"],
                version=r["version"],
                is_active=bool(r["is_active"]),
                description=r["description"],
                created_at=r["created_at"],
            )
            for r in rows
        ]

    def seed_defaults(self, env: str, version: str = "seed") -> None:
        """Insert and activate the default document if `env` has no active version."""
        document = RecoConfig().model_dump()
        with self._transaction() as conn:
            active = conn.execute(
                "SELECT 1 FROM reco_config WHERE env = ? AND is_active = 1;", (env,)
            ).fetchone()
            if active is not None:
                return
            conn.execute(
                """
                INSERT OR IGNORE INTO reco_config (env, version, is_active, description, config, created_at)
                VALUES (?, ?, 0, ?, ?, ?);
                """,
                (env, version, "default knobs", json.dumps(document), to_db_ts(utc_now())),
            )
            conn.execute(
                "UPDATE reco_config SET is_active = 1 WHERE env = ? AND version = ?;",
                (env, version),
            )
        with self._lock:
            self._current.pop(env, None)

    # ---------- Reads ----------

    def get_active(self, env: str) -> ActiveConfig:
        now = self._clock()
        with self._lock:
            cached = self._current.get(env)
        if cached is not None and now - cached[1] < self.refresh_s:
            return cached[0]

        try:
            active = self._load_active(env)
        except (sqlite3.Error, InvalidConfig, ValueError) as exc:
            active = self._fallback(env, exc)
            # Do not cache the fallback: retry storage on the next read.
            return active

        with self._lock:
            self._current[env] = (active, now)
            previous = self._last_good.get(env)
            self._last_good[env] = active
        if previous is None or previous.version != active.version:
            self._write_last_known_good(active)
        return active

    def _load_active(self, env: str) -> ActiveConfig:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT version, config FROM reco_config WHERE env = ? AND is_active = 1;",
                (env,),
            ).fetchone()
        if row is None:
            logger.warning(f"No active config for env={env}; using built-in defaults")
            return ActiveConfig(env=env, version=DEFAULT_VERSION, config=RecoConfig())

        version = str(row["version"])
        key = (env, version)
        with self._lock:
            parsed = self._parsed.get(key)
        if parsed is None:
            parsed = parse_config(json.loads(row["config"]))
            with self._lock:
                self._parsed[key] = parsed
        return ActiveConfig(env=env, version=version, config=parsed)

    def _fallback(self, env: str, exc: Exception) -> ActiveConfig:
        with self._lock:
            last_good = self._last_good.get(env)
        if last_good is not None:
            logger.error(
                f"Config read failed for env={env} ({exc}); "
                f"serving last-known-good version {last_good.version}"
            )
            return last_good

        if self.cache_path is not None:
            payload = read_json(self.cache_path) or {}
            entry = payload.get("envs", {}).get(env)
            if isinstance(entry, dict):
                try:
                    parsed = parse_config(entry.get("config", {}))
                    version = str(entry.get("version", DEFAULT_VERSION))
                    logger.error(
                        f"Config read failed for env={env} ({exc}); "
                        f"serving on-disk last-known-good version {version}"
                    )
                    return ActiveConfig(env=env, version=version, config=parsed)
                except InvalidConfig as disk_exc:
                    logger.error(f"On-disk last-known-good config is invalid: {disk_exc}")

        logger.error(f"Config read failed for env={env} ({exc}); serving built-in defaults")
        return ActiveConfig(env=env, version=DEFAULT_VERSION, config=RecoConfig())

    def _write_last_known_good(self, active: ActiveConfig) -> None:
        if self.cache_path is None or active.version == DEFAULT_VERSION:
            return
        try:
            payload = read_json(self.cache_path) or {}
            envs = payload.get("envs", {}) if isinstance(payload.get("envs"), dict) else {}
            envs[active.env] = {
                "version": active.version,
                "config": active.config.model_dump(),
            }
            atomic_write_json(self.cache_path, {"envs": envs})
        except OSError as exc:
            logger.warning(f"Could not persist last-known-good config: {exc}")
