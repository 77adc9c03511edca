from __future__ import annotations

import datetime as dt
import logging
import sqlite3
from collections.abc import Iterable, Sequence
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from .. import db
from ..errors import InvalidArgumentError, NotFoundError
from ..notify import (
    MEMORY_CREATED,
    MEMORY_DELETED,
    MEMORY_UPDATED,
    MemoryEvent,
    dedup_warnings,
    dispatch_best_effort,
)
from . import conflicts as store_conflicts
from . import quota as store_quota
from . import tags as store_tags
from . import versions as store_versions
from .types import ChangeType, Memory, Scope, StoreResult
from .utils import normalize_timestamp

if TYPE_CHECKING:
    from ._store import MemoryStore

logger = logging.getLogger(__name__)

MAX_KEY_LENGTH = 256

MEMORY_COLUMNS = """
    id, project_id, key, content, metadata_json, tags_json, related_keys_json,
    scope, priority, access_count, last_accessed_at, helpful_count, unhelpful_count,
    pinned_at, archived_at, expires_at, created_by, created_at, updated_at
"""


def memory_from_row(row: sqlite3.Row) -> Memory:
    return Memory(
        id=row["id"],
        project_id=row["project_id"],
        key=row["key"],
        content=row["content"],
        metadata=db.from_json(row["metadata_json"]),
        tags=db.from_json_list(row["tags_json"]),
        related_keys=db.from_json_list(row["related_keys_json"]),
        scope=row["scope"],
        priority=int(row["priority"] or 0),
        access_count=int(row["access_count"] or 0),
        last_accessed_at=row["last_accessed_at"],
        helpful_count=int(row["helpful_count"] or 0),
        unhelpful_count=int(row["unhelpful_count"] or 0),
        pinned_at=row["pinned_at"],
        archived_at=row["archived_at"],
        expires_at=row["expires_at"],
        created_by=row["created_by"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def validate_key(key: str) -> str:
    if not isinstance(key, str) or not key.strip():
        raise InvalidArgumentError("key must be a non-empty string")
    if len(key) > MAX_KEY_LENGTH:
        raise InvalidArgumentError(f"key must be at most {MAX_KEY_LENGTH} characters")
    return key


def validate_priority(priority: int | None) -> int | None:
    if priority is None:
        return None
    if isinstance(priority, bool) or not isinstance(priority, int):
        raise InvalidArgumentError("priority must be an integer")
    if not 0 <= priority <= 100:
        raise InvalidArgumentError("priority must be between 0 and 100")
    return priority


def validate_scope(scope: str | None) -> str | None:
    if scope is None:
        return None
    try:
        return str(Scope(scope))
    except ValueError as exc:
        raise InvalidArgumentError(f"scope must be one of: {', '.join(Scope)}") from exc


def fetch_memory(store: MemoryStore, project_id: str, key: str) -> Memory | None:
    row = store.conn.execute(
        f"SELECT {MEMORY_COLUMNS} FROM memories WHERE project_id = ? AND key = ?",
        (project_id, key),
    ).fetchone()
    return memory_from_row(row) if row else None


def fetch_memories(
    store: MemoryStore, project_id: str, keys: Iterable[str]
) -> dict[str, Memory]:
    wanted = list(dict.fromkeys(keys))
    if not wanted:
        return {}
    placeholders = ", ".join("?" for _ in wanted)
    rows = store.conn.execute(
        f"SELECT {MEMORY_COLUMNS} FROM memories "
        f"WHERE project_id = ? AND key IN ({placeholders})",
        (project_id, *wanted),
    ).fetchall()
    return {row["key"]: memory_from_row(row) for row in rows}


def require_memory(
    store: MemoryStore,
    project_id: str,
    key: str,
    *,
    include_archived: bool = False,
) -> Memory:
    memory = fetch_memory(store, project_id, key)
    if memory is None or (memory.is_archived and not include_archived):
        raise NotFoundError(f'Memory "{key}" not found')
    return memory


def write_memory(
    store: MemoryStore,
    project_id: str,
    key: str,
    content: str,
    *,
    metadata: dict[str, Any] | None = None,
    priority: int | None = None,
    tags: Iterable[str] | None = None,
    expires_at: str | dt.datetime | None = None,
    scope: str | None = None,
    created_by: str | None = None,
) -> StoreResult:
    """Create or update `key`; the caller owns the surrounding transaction."""
    validate_key(key)
    if not isinstance(content, str):
        raise InvalidArgumentError("content must be a string")
    priority = validate_priority(priority)
    scope = validate_scope(scope)
    expires = normalize_timestamp(expires_at, field="expires_at")
    normalized_tags = store_tags.normalize_tags(tags) if tags is not None else None
    now = store.now_iso()

    existing = fetch_memory(store, project_id, key)
    if existing is None:
        quota = store_quota.check_create(store, project_id)
        memory_id = uuid4().hex
        store.conn.execute(
            """
            INSERT INTO memories(
                id, project_id, key, content, metadata_json, tags_json, related_keys_json,
                scope, priority, expires_at, created_by, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, '[]', ?, ?, ?, ?, ?, ?)
            """,
            (
                memory_id,
                project_id,
                key,
                content,
                db.to_json(metadata),
                db.to_json(normalized_tags or []),
                scope or str(Scope.PROJECT),
                priority or 0,
                expires,
                created_by,
                now,
                now,
            ),
        )
        store_versions.insert_version(
            store,
            memory_id,
            1,
            content=content,
            metadata_json=db.to_json(metadata),
            changed_by=created_by,
            change_type=ChangeType.CREATED,
            created_at=now,
        )
        memory = require_memory(store, project_id, key, include_archived=True)
        return StoreResult(memory=memory, created=True, version=1, quota=quota)

    if existing.is_archived:
        # Reactivation takes a slot back from the org, so it is gated like a create.
        quota = store_quota.check_create(store, project_id)
    else:
        quota = store_quota.snapshot(store, project_id)

    assignments = ["content = ?", "updated_at = ?", "archived_at = NULL"]
    params: list[Any] = [content, now]
    if metadata is not None:
        assignments.append("metadata_json = ?")
        params.append(db.to_json(metadata))
    if priority is not None:
        assignments.append("priority = ?")
        params.append(priority)
    if normalized_tags is not None:
        assignments.append("tags_json = ?")
        params.append(db.to_json(normalized_tags))
    if expires is not None:
        assignments.append("expires_at = ?")
        params.append(expires)
    if scope is not None:
        assignments.append("scope = ?")
        params.append(scope)

    version = store_versions.latest_version_number(store, existing.id) + 1
    store_versions.insert_version(
        store,
        existing.id,
        version,
        content=content,
        metadata_json=db.to_json(metadata if metadata is not None else existing.metadata),
        changed_by=created_by,
        change_type=ChangeType.UPDATED,
        created_at=now,
    )
    store.conn.execute(
        f"UPDATE memories SET {', '.join(assignments)} WHERE id = ?",
        (*params, existing.id),
    )
    memory = require_memory(store, project_id, key, include_archived=True)
    return StoreResult(memory=memory, created=False, version=version, quota=quota)


def after_write(store: MemoryStore, result: StoreResult, *, actor: str | None) -> StoreResult:
    """Run the post-commit collaborators for a write; never raises."""
    memory = result.memory
    if result.created:
        result.warnings.extend(
            dedup_warnings(store.similarity_check, memory.project_id, memory.key, memory.content)
        )
    if result.quota is not None:
        if result.quota.is_soft_full:
            result.warnings.append(
                f"Project is at its soft limit ({result.quota.project_used} of "
                f"{int(result.quota.project_soft_limit)} memories). Consider archiving stale entries."
            )
        elif result.quota.is_approaching:
            result.warnings.append(
                f"Project is approaching its soft limit ({result.quota.project_used} of "
                f"{int(result.quota.project_soft_limit)} memories)."
            )
    dispatch_best_effort(
        store.notifier,
        MemoryEvent(
            event=MEMORY_CREATED if result.created else MEMORY_UPDATED,
            project_id=memory.project_id,
            key=memory.key,
            actor=actor,
            payload={"version": result.version},
        ),
    )
    return result


def store_memory(
    store: MemoryStore,
    project_id: str,
    key: str,
    content: str,
    *,
    metadata: dict[str, Any] | None = None,
    priority: int | None = None,
    tags: Iterable[str] | None = None,
    expires_at: str | dt.datetime | None = None,
    scope: str | None = None,
    created_by: str | None = None,
) -> StoreResult:
    with store.transaction():
        result = write_memory(
            store,
            project_id,
            key,
            content,
            metadata=metadata,
            priority=priority,
            tags=tags,
            expires_at=expires_at,
            scope=scope,
            created_by=created_by,
        )
    return after_write(store, result, actor=created_by)


def get_memory(
    store: MemoryStore,
    project_id: str,
    key: str,
    *,
    include_archived: bool = False,
) -> Memory:
    memory = require_memory(store, project_id, key, include_archived=include_archived)
    bump_access(store, project_id, [memory])
    return memory


def bump_access(store: MemoryStore, project_id: str, memories: Sequence[Memory]) -> None:
    """Count a read of `memories`; failures are logged, never raised."""
    if not memories:
        return
    now = store.now_iso()
    try:
        # Skipped rather than queued when another writer holds the lock.
        with store.transaction(wait=False):
            store.conn.executemany(
                """
                UPDATE memories
                SET access_count = access_count + 1, last_accessed_at = ?
                WHERE id = ?
                """,
                [(now, memory.id) for memory in memories],
            )
    except sqlite3.Error as exc:
        keys = ", ".join(memory.key for memory in memories)
        logger.warning("access bump failed for %s/%s", project_id, keys, exc_info=exc)


def update_memory(
    store: MemoryStore,
    project_id: str,
    key: str,
    *,
    content: str | None = None,
    metadata: dict[str, Any] | None = None,
    priority: int | None = None,
    tags: Iterable[str] | None = None,
    expires_at: str | dt.datetime | None = None,
    changed_by: str | None = None,
    if_match: str | None = None,
) -> StoreResult:
    if all(value is None for value in (content, metadata, priority, tags, expires_at)):
        raise InvalidArgumentError("No fields to update")
    with store.transaction():
        current = require_memory(store, project_id, key)
        store_conflicts.check_if_match(store, current, if_match)
        result = write_memory(
            store,
            project_id,
            key,
            current.content if content is None else content,
            metadata=metadata,
            priority=priority,
            tags=tags,
            expires_at=expires_at,
            created_by=changed_by,
        )
    return after_write(store, result, actor=changed_by)


def delete_memory(
    store: MemoryStore,
    project_id: str,
    key: str,
    *,
    if_match: str | None = None,
    deleted_by: str | None = None,
) -> None:
    with store.transaction():
        current = require_memory(store, project_id, key, include_archived=True)
        store_conflicts.check_if_match(store, current, if_match)
        store.conn.execute("DELETE FROM memories WHERE id = ?", (current.id,))
    dispatch_best_effort(
        store.notifier,
        MemoryEvent(event=MEMORY_DELETED, project_id=project_id, key=key, actor=deleted_by),
    )


def list_memories(
    store: MemoryStore,
    project_id: str,
    *,
    include_archived: bool = False,
    tag: str | None = None,
    limit: int = 100,
    offset: int = 0,
) -> list[Memory]:
    clauses = ["project_id = ?"]
    params: list[Any] = [project_id]
    if not include_archived:
        clauses.append("archived_at IS NULL")
    if tag:
        clauses.append(
            "EXISTS (SELECT 1 FROM json_each(CASE WHEN json_valid(tags_json) "
            "THEN tags_json ELSE '[]' END) WHERE json_each.value = ?)"
        )
        params.append(store_tags.normalize_tag(tag))
    rows = store.conn.execute(
        f"""
        SELECT {MEMORY_COLUMNS} FROM memories
        WHERE {" AND ".join(clauses)}
        ORDER BY priority DESC, updated_at DESC, key ASC
        LIMIT ? OFFSET ?
        """,
        (*params, max(0, int(limit)), max(0, int(offset))),
    ).fetchall()
    return [memory_from_row(row) for row in rows]


def set_pinned(store: MemoryStore, project_id: str, key: str, pinned: bool) -> Memory:
    with store.transaction():
        memory = require_memory(store, project_id, key, include_archived=True)
        if pinned and memory.pinned_at is None:
            store.conn.execute(
                "UPDATE memories SET pinned_at = ? WHERE id = ?", (store.now_iso(), memory.id)
            )
        elif not pinned and memory.pinned_at is not None:
            store.conn.execute("UPDATE memories SET pinned_at = NULL WHERE id = ?", (memory.id,))
        return require_memory(store, project_id, key, include_archived=True)


def set_archived(store: MemoryStore, project_id: str, key: str, archived: bool) -> Memory:
    with store.transaction():
        memory = require_memory(store, project_id, key, include_archived=True)
        if archived and memory.archived_at is None:
            store.conn.execute(
                "UPDATE memories SET archived_at = ? WHERE id = ?", (store.now_iso(), memory.id)
            )
        elif not archived and memory.archived_at is not None:
            store_quota.check_create(store, project_id)
            store.conn.execute("UPDATE memories SET archived_at = NULL WHERE id = ?", (memory.id,))
        return require_memory(store, project_id, key, include_archived=True)


def record_feedback(store: MemoryStore, project_id: str, key: str, *, helpful: bool) -> Memory:
    column = "helpful_count" if helpful else "unhelpful_count"
    with store.transaction():
        memory = require_memory(store, project_id, key)
        store.conn.execute(
            f"UPDATE memories SET {column} = {column} + 1 WHERE id = ?", (memory.id,)
        )
        return require_memory(store, project_id, key, include_archived=True)


def _write_related(store: MemoryStore, memory: Memory, related: list[str]) -> None:
    store.conn.execute(
        "UPDATE memories SET related_keys_json = ? WHERE id = ?",
        (db.to_json(related), memory.id),
    )


def link_memories(
    store: MemoryStore, project_id: str, key: str, other_key: str, *, linked: bool
) -> tuple[Memory, Memory]:
    if key == other_key:
        raise InvalidArgumentError("A memory cannot be linked to itself")
    with store.transaction():
        left = require_memory(store, project_id, key, include_archived=True)
        right = require_memory(store, project_id, other_key, include_archived=True)
        if linked:
            _write_related(store, left, store_tags.append_unique(left.related_keys, other_key))
            _write_related(store, right, store_tags.append_unique(right.related_keys, key))
        else:
            _write_related(store, left, [k for k in left.related_keys if k != other_key])
            _write_related(store, right, [k for k in right.related_keys if k != key])
        return (
            require_memory(store, project_id, key, include_archived=True),
            require_memory(store, project_id, other_key, include_archived=True),
        )
