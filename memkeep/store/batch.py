"""Multi-key reads and mutations within one project.

A batch runs in a single transaction: either every matched memory changes or
none does. Keys that do not exist are reported back instead of failing the
batch, unless nothing matched at all.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import TYPE_CHECKING, Any, Final

from .. import db
from ..errors import InvalidArgumentError, NotFoundError
from ..notify import MEMORY_DELETED, MemoryEvent, dispatch_best_effort
from . import quota as store_quota
from . import records as store_records
from . import tags as store_tags
from .types import BatchAction, BatchResult, Memory

if TYPE_CHECKING:
    from ._store import MemoryStore

MAX_BATCH_KEYS: Final = 100
MAX_BULK_KEYS: Final = 50


def _validate_keys(keys: Iterable[str], limit: int) -> list[str]:
    if isinstance(keys, str):
        raise InvalidArgumentError("keys must be a list of keys")
    unique = list(dict.fromkeys(keys))
    if not 1 <= len(unique) <= limit:
        raise InvalidArgumentError(f"keys must have 1-{limit} entries")
    for key in unique:
        store_records.validate_key(key)
    return unique


def _parse_action(action: BatchAction | str) -> BatchAction:
    try:
        return BatchAction(action)
    except ValueError as exc:
        choices = ", ".join(BatchAction)
        raise InvalidArgumentError(f'Unknown action "{action}". Valid: {choices}') from exc


def _validate_value(action: BatchAction, value: Any) -> Any:
    match action:
        case BatchAction.SET_PRIORITY:
            if value is None:
                raise InvalidArgumentError("set_priority needs a priority between 0 and 100")
            return store_records.validate_priority(value)
        case BatchAction.ADD_TAGS:
            if isinstance(value, str) or not isinstance(value, Iterable):
                raise InvalidArgumentError("add_tags needs a list of tags")
            tags = store_tags.normalize_tags(value)
            if not tags:
                raise InvalidArgumentError("add_tags needs at least one valid tag")
            return tags
        case BatchAction.SET_SCOPE:
            if value is None:
                raise InvalidArgumentError("set_scope needs a scope")
            return store_records.validate_scope(value)
        case _:
            return None


def _update_ids(
    store: MemoryStore, assignment: str, params: Sequence[Any], ids: list[str]
) -> int:
    if not ids:
        return 0
    placeholders = ", ".join("?" for _ in ids)
    cur = store.conn.execute(
        f"UPDATE memories SET {assignment} WHERE id IN ({placeholders})",
        (*params, *ids),
    )
    return int(cur.rowcount or 0)


def _apply(
    store: MemoryStore,
    project_id: str,
    action: BatchAction,
    targets: list[Memory],
    value: Any,
) -> int:
    now = store.now_iso()
    match action:
        case BatchAction.ARCHIVE:
            ids = [m.id for m in targets if not m.is_archived]
            return _update_ids(store, "archived_at = ?", [now], ids)
        case BatchAction.UNARCHIVE:
            ids = [m.id for m in targets if m.is_archived]
            if ids:
                store_quota.check_create(store, project_id, count=len(ids))
            return _update_ids(store, "archived_at = NULL", [], ids)
        case BatchAction.DELETE:
            placeholders = ", ".join("?" for _ in targets)
            cur = store.conn.execute(
                f"DELETE FROM memories WHERE id IN ({placeholders})",
                [m.id for m in targets],
            )
            return int(cur.rowcount or 0)
        case BatchAction.PIN:
            ids = [m.id for m in targets if not m.is_pinned]
            return _update_ids(store, "pinned_at = ?", [now], ids)
        case BatchAction.UNPIN:
            ids = [m.id for m in targets if m.is_pinned]
            return _update_ids(store, "pinned_at = NULL", [], ids)
        case BatchAction.SET_PRIORITY:
            ids = [m.id for m in targets if m.priority != value]
            return _update_ids(store, "priority = ?", [value], ids)
        case BatchAction.SET_SCOPE:
            ids = [m.id for m in targets if m.scope != value]
            return _update_ids(store, "scope = ?", [value], ids)
        case BatchAction.ADD_TAGS:
            affected = 0
            for memory in targets:
                merged = store_tags.normalize_tags([*memory.tags, *value])
                if merged != memory.tags:
                    _update_ids(store, "tags_json = ?", [db.to_json(merged)], [memory.id])
                    affected += 1
            return affected


def batch_update(
    store: MemoryStore,
    project_id: str,
    keys: Iterable[str],
    action: BatchAction | str,
    value: Any = None,
    *,
    actor: str | None = None,
) -> BatchResult:
    resolved = _parse_action(action)
    wanted = _validate_keys(keys, MAX_BATCH_KEYS)
    value = _validate_value(resolved, value)
    store_quota.project_org(store, project_id)

    with store.transaction():
        found = store_records.fetch_memories(store, project_id, wanted)
        if not found:
            raise NotFoundError("No matching memories found")
        targets = [found[key] for key in wanted if key in found]
        affected = _apply(store, project_id, resolved, targets, value)

    if resolved is BatchAction.DELETE:
        for memory in targets:
            dispatch_best_effort(
                store.notifier,
                MemoryEvent(
                    event=MEMORY_DELETED, project_id=project_id, key=memory.key, actor=actor
                ),
            )
    return BatchResult(
        action=resolved,
        requested=len(wanted),
        matched=len(targets),
        affected=affected,
        missing=[key for key in wanted if key not in found],
    )


def get_many(
    store: MemoryStore,
    project_id: str,
    keys: Iterable[str],
    *,
    include_archived: bool = False,
) -> dict[str, Memory]:
    """Return the requested memories that exist, keyed and ordered as requested."""
    wanted = _validate_keys(keys, MAX_BULK_KEYS)
    store_quota.project_org(store, project_id)
    found = store_records.fetch_memories(store, project_id, wanted)
    memories = {
        key: found[key]
        for key in wanted
        if key in found and (include_archived or not found[key].is_archived)
    }
    store_records.bump_access(store, project_id, list(memories.values()))
    return memories
