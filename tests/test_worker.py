"""
Tests for the background worker.

Tests cover:
- Job scheduling (due intervals)
- Every job runs against a real database
- A failing job is reported and does not stop the others
- One-shot CLI run
"""

from conftest import NOW, make_item, make_settings

from feedrank.config import ConfigRegistry
from feedrank.event_log import EventLog, ItemStore
from feedrank.graph import GraphProximityCache
from feedrank.models import InteractionEvent
from feedrank.worker import Job, build_jobs, build_parser, main, run_due


def test_job_due():
    job = Job("x", 10.0, lambda: "ok")
    assert job.due(0.0)
    job.last_run = 100.0
    assert not job.due(105.0)
    assert job.due(110.0)


def test_run_due_runs_every_job(tmp_path, capsys):
    settings = make_settings(tmp_path)
    items = ItemStore(settings.db_path)
    items.upsert_item(make_item("i1"))
    with items._connect() as conn:
        conn.execute("UPDATE items SET like_count = 5 WHERE item_id = 'i1';")
    GraphProximityCache(settings.db_path).add_follow("u1", "a")
    EventLog(settings.db_path).record_event(InteractionEvent("u1", "i1", "like", NOW))

    jobs = build_jobs(settings)
    assert [j.name for j in jobs] == ["aggregates", "prune", "reconcile", "graph", "bandit"]
    assert run_due(jobs, now=0.0) == 5
    assert run_due(jobs, now=1.0) == 0

    out = capsys.readouterr().out
    assert "[worker] reconcile: corrected=1" in out
    assert "[worker] graph: edges=1" in out
    assert "[worker] bandit: applied=1" in out
    assert items.get_item("i1").like_count == 0


def test_failing_job_is_reported(capsys):
    def boom():
        raise RuntimeError("disk full")

    jobs = [Job("bad", 1.0, boom), Job("good", 1.0, lambda: "fine")]
    assert run_due(jobs, now=0.0) == 2

    out = capsys.readouterr().out
    assert "[worker] bad failed: RuntimeError('disk full')" in out
    assert "[worker] good: fine" in out


def test_parser_only_is_repeatable():
    args = build_parser().parse_args(["--once", "--only", "prune", "--only", "graph"])
    assert args.once is True
    assert args.only == ["prune", "graph"]


def test_main_once_with_seed(tmp_path, monkeypatch, capsys):
    db_path = tmp_path / "worker.sqlite3"
    monkeypatch.setenv("FEEDRANK_ENV", "ci")
    monkeypatch.setattr(
        "sys.argv",
        ["feedrank-worker", "--db-path", str(db_path), "--once", "--only", "aggregates", "--seed-config"],
    )

    assert main() == 0

    out = capsys.readouterr().out
    assert "[worker] aggregates:" in out
    assert "single pass complete" in out
    assert ConfigRegistry(db_path).get_active("ci").version == "seed"
