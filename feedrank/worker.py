from __future__ import annotations

import argparse
import time
from dataclasses import dataclass, replace
from datetime import timedelta
from pathlib import Path
from typing import Callable, List, Optional

from .aggregates import AggregateRefresher
from .bandit import BanditStatsStore
from .config import ConfigRegistry
from .engagement import EngagementToggleService
from .event_log import EventLog
from .graph import GraphProximityCache
from .persistence import utc_now
from .settings import LoggingConfig, Settings

# Aggregates only matter for items still inside any plausible lookback window.
AGGREGATE_HORIZON = timedelta(days=7)


@dataclass
class Job:
    name: str
    interval_s: float
    run: Callable[[], str]
    last_run: Optional[float] = None

    def due(self, now: float) -> bool:
        return self.last_run is None or now - self.last_run >= self.interval_s


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Background jobs: aggregates, pruning, reconciliation, graph proximity, bandit replay.")
    p.add_argument("--db-path", type=Path, default=None, help="Override FEEDRANK_DB_PATH.")
    p.add_argument("--sleep-s", type=float, default=1.0, help="Scheduler tick.")
    p.add_argument(
        "--once",
        action="store_true",
        help="Run every job once, then exit.",
    )
    p.add_argument(
        "--only",
        action="append",
        choices=["aggregates", "prune", "reconcile", "graph", "bandit"],
        help="Run only the named job(s). Repeatable.",
    )
    p.add_argument(
        "--seed-config",
        action="store_true",
        help="Activate the default ranking config for FEEDRANK_ENV if none is active.",
    )
    return p


def build_jobs(settings: Settings) -> List[Job]:
    refresher = AggregateRefresher(settings.db_path)
    events = EventLog(settings.db_path)
    toggles = EngagementToggleService(settings.db_path, rate_limit_s=settings.toggle_rate_limit_s)
    graph = GraphProximityCache(settings.db_path)
    bandit = BanditStatsStore(settings.db_path)

    def refresh_aggregates() -> str:
        stats = refresher.refresh(since=utc_now() - AGGREGATE_HORIZON)
        return f"rows={stats.rows} reply_changes={len(stats.reply_count_changes)}"

    def prune() -> str:
        cutoff = utc_now() - timedelta(days=settings.impression_retention_days)
        deleted = events.prune_impressions(cutoff)
        limits = toggles.prune_rate_limits()
        applied = bandit.prune_applied(cutoff)
        return f"impressions_deleted={deleted} rate_limits_deleted={limits} bandit_marks_deleted={applied}"

    def reconcile() -> str:
        return f"corrected={len(toggles.reconcile_counts())}"

    def recompute_graph() -> str:
        return f"edges={graph.recompute()}"

    def replay_bandit() -> str:
        return f"applied={bandit.replay()}"

    return [
        Job("aggregates", settings.aggregate_refresh_interval_s, refresh_aggregates),
        Job("prune", settings.prune_interval_s, prune),
        Job("reconcile", settings.reconcile_interval_s, reconcile),
        Job("graph", settings.graph_refresh_interval_s, recompute_graph),
        Job("bandit", settings.bandit_replay_interval_s, replay_bandit),
    ]


def run_due(jobs: List[Job], now: float) -> int:
    """Run every due job; a failing job is reported and retried on its next interval."""
    ran = 0
    for job in jobs:
        if not job.due(now):
            continue
        job.last_run = now
        try:
            detail = job.run()
            print(f"[worker] {job.name}: {detail}")
        except Exception as exc:  # noqa: BLE001
            print(f"[worker] {job.name} failed: {exc!r}")
        ran += 1
    return ran


def main() -> int:
    args = build_parser().parse_args()
    LoggingConfig.configure_logging()

    settings = Settings.from_env()
    if args.db_path is not None:
        settings = replace(settings, db_path=args.db_path)

    if args.seed_config:
        ConfigRegistry(settings.db_path).seed_defaults(settings.env)
        print(f"[worker] seeded default config for env={settings.env}")

    jobs = build_jobs(settings)
    if args.only:
        jobs = [j for j in jobs if j.name in set(args.only)]

    print(f"[worker] db={settings.db_path} env={settings.env}")
    print("[worker] jobs=" + ", ".join(f"{j.name}/{j.interval_s:g}s" for j in jobs))

    if args.once:
        run_due(jobs, time.monotonic())
        print("[worker] single pass complete; exiting.")
        return 0

    try:
        while True:
            run_due(jobs, time.monotonic())
            time.sleep(float(args.sleep_s))
    except KeyboardInterrupt:
        print("[worker] stopped.")
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
