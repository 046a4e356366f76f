"""
Process-level settings read from the environment, plus logging setup.

Ranking parameters are NOT here: they live in versioned RecoConfig documents
(see feedrank.config) so they can be re-tuned without a redeploy.
"""
from __future__ import annotations

import logging
import math
import os
from dataclasses import dataclass
from pathlib import Path

DATA_DIR = Path(os.getenv("FEEDRANK_DATA_DIR", str(Path.cwd() / "data")))


def _env_float(name: str, default: float, lo: float = 0.0, hi: float = math.inf) -> float:
    try:
        value = float(os.getenv(name, str(default)))
    except ValueError:
        value = default
    if not math.isfinite(value):
        value = default
    return max(lo, min(hi, value))


def _env_int(name: str, default: int, lo: int = 0) -> int:
    try:
        value = int(os.getenv(name, str(default)))
    except ValueError:
        value = default
    return max(lo, value)


@dataclass(frozen=True)
class Settings:
    db_path: Path
    env: str
    config_cache_path: Path
    config_refresh_s: float
    toggle_rate_limit_s: float
    auth_secret: str
    admin_token: str
    impression_retention_days: int
    aggregate_refresh_interval_s: float
    prune_interval_s: float
    reconcile_interval_s: float
    graph_refresh_interval_s: float
    bandit_replay_interval_s: float
    embeddings_enabled: bool
    embedding_model: str

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            db_path=Path(os.getenv("FEEDRANK_DB_PATH", str(DATA_DIR / "feedrank.sqlite3"))),
            env=os.getenv("FEEDRANK_ENV", "staging"),
            config_cache_path=Path(
                os.getenv("FEEDRANK_CONFIG_CACHE_PATH", str(DATA_DIR / "reco_config_lkg.json"))
            ),
            config_refresh_s=_env_float("FEEDRANK_CONFIG_REFRESH_S", 5.0),
            toggle_rate_limit_s=_env_float("FEEDRANK_TOGGLE_RATE_LIMIT_S", 1.0),
            auth_secret=os.getenv("FEEDRANK_AUTH_SECRET", ""),
            admin_token=os.getenv("FEEDRANK_ADMIN_TOKEN", ""),
            impression_retention_days=_env_int("FEEDRANK_IMPRESSION_RETENTION_DAYS", 90, lo=1),
            aggregate_refresh_interval_s=_env_float("FEEDRANK_AGGREGATE_REFRESH_S", 300.0, lo=1.0),
            prune_interval_s=_env_float("FEEDRANK_PRUNE_INTERVAL_S", 86400.0, lo=1.0),
            reconcile_interval_s=_env_float("FEEDRANK_RECONCILE_INTERVAL_S", 3600.0, lo=1.0),
            graph_refresh_interval_s=_env_float("FEEDRANK_GRAPH_REFRESH_S", 3600.0, lo=1.0),
            bandit_replay_interval_s=_env_float("FEEDRANK_BANDIT_REPLAY_S", 60.0, lo=1.0),
            embeddings_enabled=os.getenv("FEEDRANK_EMBEDDINGS", "0").strip().lower() in ("1", "true", "yes"),
            embedding_model=os.getenv("FEEDRANK_EMBEDDING_MODEL", "lumees/lumees-matryoshka-embedding-v1"),
        )


class LoggingConfig:
    """Logging configuration for the ranking service."""

    LEVEL = logging.INFO
    FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

    @staticmethod
    def configure_logging():
        logging.basicConfig(
            level=LoggingConfig.LEVEL,
            format=LoggingConfig.FORMAT
        )
