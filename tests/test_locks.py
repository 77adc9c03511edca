from __future__ import annotations

import threading
from pathlib import Path

import pytest

from memkeep.config import MemkeepConfig
from memkeep.errors import ConflictError, ForbiddenError, InvalidArgumentError, NotFoundError
from memkeep.store import MemoryStore


def test_lock_is_exclusive_until_released(store: MemoryStore) -> None:
    first = store.acquire_lock("proj", "k", holder="agent-a", ttl_s=30)
    assert first.acquired
    assert first.lock.locked_by == "agent-a"

    second = store.acquire_lock("proj", "k", holder="agent-b")
    assert not second.acquired
    assert second.lock.locked_by == "agent-a"
    assert second.lock.expires_at == first.lock.expires_at

    store.release_lock("proj", "k", holder="agent-a")
    assert store.get_lock("proj", "k") is None
    assert store.acquire_lock("proj", "k", holder="agent-b").acquired


def test_lock_does_not_require_existing_memory(store: MemoryStore) -> None:
    assert store.acquire_lock("proj", "not/yet/written", holder="a").acquired


def test_expired_lock_can_be_taken(store: MemoryStore, clock) -> None:
    store.acquire_lock("proj", "k", holder="agent-a", ttl_s=1)

    clock.advance(seconds=2)
    assert store.get_lock("proj", "k") is None

    result = store.acquire_lock("proj", "k", holder="agent-b")
    assert result.acquired
    assert result.lock.locked_by == "agent-b"


def test_default_ttl_comes_from_config(store: MemoryStore, clock) -> None:
    result = store.acquire_lock("proj", "k")

    clock.advance(seconds=59)
    assert store.get_lock("proj", "k") == result.lock
    clock.advance(seconds=1)
    assert store.get_lock("proj", "k") is None


def test_release_checks_holder(store: MemoryStore) -> None:
    with pytest.raises(NotFoundError):
        store.release_lock("proj", "k")

    store.acquire_lock("proj", "k", holder="agent-a")
    with pytest.raises(ForbiddenError) as excinfo:
        store.release_lock("proj", "k", holder="agent-b")
    assert excinfo.value.holder == "agent-a"

    # Releasing without naming a holder is an administrative override.
    store.release_lock("proj", "k")
    assert store.get_lock("proj", "k") is None


@pytest.mark.parametrize("ttl_s", [0, -5, 3601, True, float("nan"), float("inf")])
def test_acquire_rejects_bad_ttl(store: MemoryStore, ttl_s) -> None:
    with pytest.raises(InvalidArgumentError):
        store.acquire_lock("proj", "k", ttl_s=ttl_s)


def test_locked_context_manager(store: MemoryStore) -> None:
    with store.locked("proj", "k", holder="agent-a") as lock:
        assert lock.locked_by == "agent-a"
        assert not store.acquire_lock("proj", "k", holder="agent-b").acquired
        with pytest.raises(ConflictError, match="agent-a"):
            with store.locked("proj", "k", holder="agent-b"):
                pass

    assert store.get_lock("proj", "k") is None


def test_locked_tolerates_lock_taken_over_after_expiry(
    store: MemoryStore, clock, caplog: pytest.LogCaptureFixture
) -> None:
    with caplog.at_level("WARNING"):
        with store.locked("proj", "k", holder="agent-a", ttl_s=1):
            clock.advance(seconds=5)
            assert store.acquire_lock("proj", "k", holder="agent-b").acquired

    assert store.get_lock("proj", "k").locked_by == "agent-b"
    assert "expired before release" in caplog.text


def test_concurrent_acquire_has_single_winner(tmp_path: Path) -> None:
    db_path = tmp_path / "mem.sqlite"
    config = MemkeepConfig(db_timeout_s=30)
    setup = MemoryStore(db_path, config=config)
    setup.create_org("acme")
    setup.create_project("proj", "acme")
    setup.close()

    workers = 8
    barrier = threading.Barrier(workers)
    outcomes: list[bool] = []
    errors: list[BaseException] = []
    guard = threading.Lock()

    def contend(holder: str) -> None:
        store = MemoryStore(db_path, config=config)
        try:
            barrier.wait()
            result = store.acquire_lock("proj", "shared", holder=holder, ttl_s=60)
            with guard:
                outcomes.append(result.acquired)
        except BaseException as exc:  # noqa: BLE001
            with guard:
                errors.append(exc)
        finally:
            store.close()

    threads = [threading.Thread(target=contend, args=(f"agent-{n}",)) for n in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)

    assert errors == []
    assert sorted(outcomes) == [False] * (workers - 1) + [True]
