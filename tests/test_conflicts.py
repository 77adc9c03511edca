from __future__ import annotations

import pytest

from memkeep.errors import InvalidArgumentError
from memkeep.store import MemoryStore
from memkeep.store.types import ConflictStrategy


@pytest.fixture
def stale_read(store: MemoryStore, clock) -> str:
    """Store "server" after the caller's read time and return that read time."""
    read_at = store.now_iso()
    clock.advance(seconds=5)
    store.store("proj", "k", "server")
    clock.advance(seconds=5)
    return read_at


def test_reject_keeps_current_content(store: MemoryStore, stale_read: str) -> None:
    result = store.store_safe("proj", "k", "client", stale_read, "reject")

    assert result.conflict
    assert not result.stored
    assert result.strategy is ConflictStrategy.REJECT
    assert result.current_content == "server"
    assert result.proposed_content == "client"
    assert store.get("proj", "k").content == "server"
    assert len(store.list_versions("proj", "k")) == 1


def test_last_write_wins_overwrites(store: MemoryStore, stale_read: str) -> None:
    result = store.store_safe("proj", "k", "client", stale_read, "last_write_wins")

    assert result.conflict
    assert result.stored
    assert store.get("proj", "k").content == "client"


def test_append_merges_with_separator(store: MemoryStore, stale_read: str) -> None:
    result = store.store_safe("proj", "k", "client", stale_read, ConflictStrategy.APPEND)

    assert result.conflict
    assert result.stored
    assert result.memory is not None
    assert result.memory.content == "server\n---\nclient"
    assert store.list_versions("proj", "k")[0].version == 2


def test_return_both_changes_nothing(store: MemoryStore, stale_read: str) -> None:
    result = store.store_safe("proj", "k", "client", stale_read, "return_both")

    assert result.conflict
    assert not result.stored
    assert result.current_content == "server"
    assert result.proposed_content == "client"
    assert result.if_unmodified_since == stale_read
    assert "Merge" in result.message
    assert store.get("proj", "k").content == "server"
    assert result.to_dict()["strategy"] == "return_both"


def test_no_conflict_when_unchanged_since_read(store: MemoryStore, clock) -> None:
    memory = store.store("proj", "k", "server").memory
    clock.advance(seconds=5)

    result = store.store_safe("proj", "k", "client", memory.updated_at, "reject")

    assert not result.conflict
    assert result.stored
    assert store.get("proj", "k").content == "client"


def test_missing_key_is_created(store: MemoryStore) -> None:
    result = store.store_safe(
        "proj", "new", "client", "2020-01-01T00:00:00Z", priority=30, created_by="agent"
    )

    assert result.stored
    assert result.memory is not None
    assert result.memory.priority == 30
    assert result.memory.created_by == "agent"


def test_invalid_arguments(store: MemoryStore, stale_read: str) -> None:
    with pytest.raises(InvalidArgumentError, match="strategy"):
        store.store_safe("proj", "k", "client", stale_read, "merge_magic")
    with pytest.raises(InvalidArgumentError):
        store.store_safe("proj", "k", "client", "yesterday")
    with pytest.raises(InvalidArgumentError, match="if_unmodified_since is required"):
        store.store_safe("proj", "k", "client", None)  # type: ignore[arg-type]
