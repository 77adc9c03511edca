from __future__ import annotations

import datetime as dt

import pytest

from memkeep.config import MemkeepConfig
from memkeep.errors import InsufficientHistoryError, InvalidArgumentError, NotFoundError
from memkeep.notify import LIFECYCLE_COMPLETED, MemoryEvent
from memkeep.store import LifecycleParams, MemoryStore, Policy
from memkeep.store import lifecycle as store_lifecycle
from memkeep.store.lifecycle import SCHEDULED_POLICIES, branch_plan_suffix
from memkeep.store.tags import AUTO_DECAYED, AUTO_PRUNED
from memkeep.store.utils import to_iso


def _days_ago(clock, days: float) -> str:
    return to_iso(clock() - dt.timedelta(days=days))


def test_auto_promote_raises_frequently_read_memories(store: MemoryStore, set_columns) -> None:
    store.store("proj", "hot", "x", priority=45)
    store.store("proj", "already", "x", priority=50)
    store.store("proj", "cold", "x", priority=10)
    store.store("proj", "shelved", "x", priority=10)
    set_columns("proj", "hot", access_count=10)
    set_columns("proj", "already", access_count=20)
    set_columns("proj", "cold", access_count=9)
    set_columns("proj", "shelved", access_count=50)
    store.archive("proj", "shelved")

    results = store.run_lifecycle("proj", ["auto_promote"])

    assert results["auto_promote"].affected == 1
    assert store.get("proj", "hot").priority == 55
    assert store.get("proj", "already").priority == 50
    assert store.get("proj", "cold").priority == 10
    assert store.get("proj", "shelved", include_archived=True).priority == 10


def test_auto_demote_lowers_unhelpful_memories(store: MemoryStore, set_columns) -> None:
    store.store("proj", "bad", "x", priority=5)
    store.store("proj", "mixed", "x", priority=40)
    store.store("proj", "floor", "x", priority=0)
    set_columns("proj", "bad", unhelpful_count=3, helpful_count=1)
    set_columns("proj", "mixed", unhelpful_count=3, helpful_count=3)
    set_columns("proj", "floor", unhelpful_count=5)

    results = store.run_lifecycle("proj", ["auto_demote"])

    assert results["auto_demote"].affected == 1
    assert store.get("proj", "bad").priority == 0
    assert store.get("proj", "mixed").priority == 40


def test_auto_prune_archives_low_relevance_and_spares_pins(
    store: MemoryStore, clock, set_columns
) -> None:
    for key, priority in (("forgotten", 0), ("pinned", 0), ("important", 80)):
        store.store("proj", key, "x", priority=priority, tags=["notes"])
    set_columns("proj", "forgotten", created_at=_days_ago(clock, 200))
    set_columns("proj", "pinned", created_at=_days_ago(clock, 200))
    store.pin("proj", "pinned")

    results = store.run_lifecycle("proj", ["auto_prune"])

    assert results["auto_prune"].affected == 1
    pruned = store.get("proj", "forgotten", include_archived=True)
    assert pruned.is_archived
    assert pruned.tags == ["notes", AUTO_PRUNED]
    assert not store.get("proj", "pinned").is_archived
    assert not store.get("proj", "important").is_archived


def test_auto_archive_unhealthy(store: MemoryStore, clock, set_columns) -> None:
    for key in ("decayed", "pinned", "fresh"):
        store.store("proj", key, "x")
    for key in ("decayed", "pinned"):
        set_columns("proj", key, created_at=_days_ago(clock, 400), unhelpful_count=10)
    store.pin("proj", "pinned")

    results = store.run_lifecycle("proj", ["auto_archive_unhealthy"])

    assert results["auto_archive_unhealthy"].affected == 1
    decayed = store.get("proj", "decayed", include_archived=True)
    assert decayed.is_archived
    assert AUTO_DECAYED in decayed.tags
    assert not store.get("proj", "pinned").is_archived
    assert not store.get("proj", "fresh").is_archived


def test_cleanup_expired_deletes_past_expiry(store: MemoryStore, clock) -> None:
    store.store("proj", "temp", "x", expires_at=clock() + dt.timedelta(days=1))
    store.store("proj", "later", "x", expires_at=clock() + dt.timedelta(days=30))
    store.store("proj", "forever", "x")

    clock.advance(days=2)
    results = store.run_lifecycle("proj", ["cleanup_expired"])

    assert results["cleanup_expired"].affected == 1
    with pytest.raises(NotFoundError):
        store.get("proj", "temp", include_archived=True)
    assert {m.key for m in store.list_memories("proj")} == {"later", "forever"}


def test_cleanup_expired_locks(store: MemoryStore, clock) -> None:
    store.acquire_lock("proj", "short", holder="a", ttl_s=1)
    store.acquire_lock("proj", "long", holder="a", ttl_s=600)

    clock.advance(seconds=5)
    results = store.run_lifecycle("proj", ["cleanup_expired_locks"])

    assert results["cleanup_expired_locks"].affected == 1
    remaining = store.conn.execute("SELECT memory_key FROM memory_locks").fetchall()
    assert [row["memory_key"] for row in remaining] == ["long"]


def test_cleanup_old_versions_keeps_newest(store: MemoryStore) -> None:
    for n in range(5):
        store.store("proj", "k", f"content {n}")

    params = store.lifecycle_params(max_versions=2)
    results = store.run_lifecycle("proj", ["cleanup_old_versions"], params)

    assert results["cleanup_old_versions"].affected == 3
    assert [v.version for v in store.list_versions("proj", "k")] == [5, 4]
    store.rollback("proj", "k")
    with pytest.raises(InsufficientHistoryError):
        store.rollback("proj", "k", 3)


def test_purge_archived_respects_age_and_pins(store: MemoryStore, clock) -> None:
    for key in ("old", "old-pinned", "recent", "active"):
        store.store("proj", key, "x")
    store.archive("proj", "old")
    store.archive("proj", "old-pinned")
    store.pin("proj", "old-pinned")

    clock.advance(days=91)
    store.archive("proj", "recent")
    results = store.run_lifecycle("proj", ["purge_archived"])

    assert results["purge_archived"].affected == 1
    remaining = {m.key for m in store.list_memories("proj", include_archived=True)}
    assert remaining == {"old-pinned", "recent", "active"}


def test_archive_merged_branches(store: MemoryStore) -> None:
    base = branch_plan_suffix("feature/login")
    assert base == "agent/context/branch_plan/feature%2Flogin"
    store.store("proj", base, "plan")
    store.store("proj", f"team/{base}/notes", "notes")
    store.store("proj", f"{base}-v2", "other branch")
    store.store("proj", "agent/context/branch_plan/main", "main plan")
    store.store("proj", f"{base}/pinned", "keep")
    store.pin("proj", f"{base}/pinned")

    params = store.lifecycle_params(merged_branches=["feature/login"])
    results = store.run_lifecycle("proj", ["archive_merged_branches"], params)

    assert results["archive_merged_branches"].affected == 2
    assert results["archive_merged_branches"].details == "Archived branch plans for: feature/login"
    active = {m.key for m in store.list_memories("proj")}
    assert active == {f"{base}-v2", "agent/context/branch_plan/main", f"{base}/pinned"}


def test_archive_merged_branches_without_branches(store: MemoryStore) -> None:
    store.store("proj", branch_plan_suffix("dev"), "plan")

    result = store.run_lifecycle("proj", ["archive_merged_branches"])["archive_merged_branches"]

    assert result.affected == 0
    assert result.details == "No merged branches provided"


def test_unknown_policy_is_reported_not_raised(store: MemoryStore) -> None:
    results = store.run_lifecycle("proj", ["bogus", "auto_promote"])

    assert results["bogus"].affected == 0
    assert results["bogus"].details == "Unknown policy: bogus"
    assert results["auto_promote"].ok


def test_failing_policy_is_isolated_and_rolled_back(
    store: MemoryStore, monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture
) -> None:
    store.store("proj", "k", "x", priority=20)

    def explode(store: MemoryStore, project_id: str, params: LifecycleParams):
        store.conn.execute("UPDATE memories SET priority = 99")
        raise RuntimeError("boom")

    monkeypatch.setattr(store_lifecycle, "_auto_promote", explode)
    with caplog.at_level("ERROR"):
        results = store.run_lifecycle("proj", ["auto_promote", "auto_demote"])

    assert results["auto_promote"].error == "boom"
    assert not results["auto_promote"].ok
    assert results["auto_demote"].ok
    assert store.get("proj", "k").priority == 20
    assert "lifecycle policy auto_promote failed" in caplog.text


def test_deadline_skips_remaining_policies(store: MemoryStore) -> None:
    results = store.run_lifecycle("proj", ["auto_promote", "auto_demote"], timeout_s=0)

    assert all(result.skipped for result in results.values())
    assert results["auto_demote"].to_dict() == {
        "affected": 0,
        "details": "Skipped: deadline exceeded",
        "skipped": True,
    }


def test_run_lifecycle_unknown_project(store: MemoryStore) -> None:
    with pytest.raises(NotFoundError):
        store.run_lifecycle("ghost", ["auto_promote"])


def test_scheduled_lifecycle_runs_safe_set(store: MemoryStore) -> None:
    run = store.run_scheduled_lifecycle("proj")

    assert list(run.results) == [str(policy) for policy in SCHEDULED_POLICIES]
    assert run.ran_at == store.now_iso()
    assert all(result.ok for result in run.results.values())
    assert set(run.to_dict()) == {"ran_at", "results"}


def test_lifecycle_emits_completed_event(db_path, clock) -> None:
    events: list[MemoryEvent] = []
    store = MemoryStore(db_path, clock=clock, notifier=events.append)
    try:
        store.create_org("acme")
        store.create_project("proj", "acme")
        store.run_lifecycle("proj", ["auto_promote"], actor="cron")
    finally:
        store.close()

    assert events[-1].event == LIFECYCLE_COMPLETED
    assert events[-1].actor == "cron"
    assert events[-1].payload == {"auto_promote": {"affected": 0}}


def test_suggest_cleanup_is_read_only(store: MemoryStore, clock, set_columns) -> None:
    store.store("proj", "stale", "x")
    store.store("proj", "fresh", "x")
    store.store("proj", "expired", "x", expires_at=clock() - dt.timedelta(hours=1))
    set_columns("proj", "stale", updated_at=_days_ago(clock, 60))

    suggestions = store.suggest_cleanup("proj", stale_days=30)

    assert [m.key for m in suggestions.stale] == ["stale"]
    assert [m.key for m in suggestions.expired] == ["expired"]
    assert len(store.list_memories("proj")) == 3


def test_health_report_lists_least_healthy_first(store: MemoryStore, set_columns) -> None:
    store.store("proj", "sick", "x")
    store.store("proj", "well", "x")
    set_columns("proj", "sick", unhelpful_count=10)
    set_columns("proj", "well", access_count=10, helpful_count=5)

    reports = store.health_report("proj")

    assert [r.key for r in reports] == ["sick", "well"]
    assert reports[0].health_score < reports[1].health_score
    assert set(reports[0].factors) == {"age", "access", "feedback", "freshness"}


def test_relevance_distribution(store: MemoryStore) -> None:
    for key, priority in (("a", 80), ("b", 40), ("c", 15), ("d", 5)):
        store.store("proj", key, "x", priority=priority)

    assert store.relevance_distribution("proj") == {
        "excellent": 1,
        "good": 1,
        "fair": 1,
        "poor": 1,
    }


def test_params_from_config_and_overrides() -> None:
    config = MemkeepConfig(access_threshold=3, max_versions_per_memory=7)

    params = LifecycleParams.from_config(
        config, access_threshold=None, merged_branches=["a", "b"], health_threshold=20.0
    )

    assert params.access_threshold == 3
    assert params.max_versions == 7
    assert params.merged_branches == ("a", "b")
    assert params.health_threshold == 20.0
    assert Policy("auto_prune") is Policy.AUTO_PRUNE


def test_archive_merged_branches_reports_no_match(store: MemoryStore) -> None:
    store.store("proj", branch_plan_suffix("main"), "plan")

    params = store.lifecycle_params(merged_branches=["feature/gone"])
    result = store.run_lifecycle("proj", ["archive_merged_branches"], params)

    assert result["archive_merged_branches"].affected == 0
    assert result["archive_merged_branches"].details == (
        "No branch plans matched the merged branches"
    )


@pytest.mark.parametrize(
    "override",
    [
        {"access_threshold": -1},
        {"feedback_threshold": -1},
        {"archive_purge_days": -1},
        {"max_versions": 0},
        {"priority_step": -5},
        {"priority_step": 101},
        {"access_threshold": 2.5},
        {"max_versions": True},
        {"relevance_threshold": -0.1},
        {"relevance_threshold": float("nan")},
        {"health_threshold": float("inf")},
        {"decay_rate": -0.01},
        {"pin_boost": float("nan")},
    ],
)
def test_params_reject_malformed_thresholds(override: dict[str, object]) -> None:
    with pytest.raises(InvalidArgumentError):
        LifecycleParams(**override)  # type: ignore[arg-type]
    with pytest.raises(InvalidArgumentError):
        LifecycleParams.from_config(MemkeepConfig(), **override)


def test_negative_purge_age_never_reaches_the_database(store: MemoryStore) -> None:
    store.store("proj", "keep-me", "x")
    store.archive("proj", "keep-me")

    with pytest.raises(InvalidArgumentError, match="archive_purge_days"):
        store.run_lifecycle(
            "proj", ["purge_archived"], store.lifecycle_params(archive_purge_days=-1)
        )

    assert store.get("proj", "keep-me", include_archived=True).is_archived


def test_params_accept_boundaries() -> None:
    params = LifecycleParams(
        access_threshold=0,
        archive_purge_days=0,
        max_versions=1,
        priority_step=100,
        relevance_threshold=0,
        health_threshold=100.0,
    )
    assert params.priority_step == 100
