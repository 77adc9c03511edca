from __future__ import annotations

from rich import print
from rich.markup import escape

from ..errors import MemoryStoreError
from ..store.types import Memory
from .common import exit_with_error, format_limit, parse_metadata_or_exit, print_json


_PAST_TENSE = {
    "pin": "Pinned",
    "unpin": "Unpinned",
    "archive": "Archived",
    "unarchive": "Unarchived",
}


def _print_memory(memory: Memory) -> None:
    flags = []
    if memory.is_pinned:
        flags.append("pinned")
    if memory.is_archived:
        flags.append("archived")
    suffix = f" ({', '.join(flags)})" if flags else ""
    print(f"[bold]{escape(memory.key)}[/bold]{suffix} priority={memory.priority}")
    if memory.tags:
        print(f"tags: {escape(', '.join(memory.tags))}")
    print(escape(memory.content))


def store_cmd(
    *,
    store_from_path,
    db_path: str | None,
    project: str,
    key: str,
    content: str,
    priority: int | None,
    tags: list[str] | None,
    metadata: str | None,
    expires_at: str | None,
    scope: str | None,
    actor: str | None,
) -> None:
    """Create or update a memory."""

    parsed_metadata = parse_metadata_or_exit(metadata)
    store = store_from_path(db_path)
    try:
        result = store.store(
            project,
            key,
            content,
            metadata=parsed_metadata,
            priority=priority,
            tags=tags or None,
            expires_at=expires_at,
            scope=scope,
            created_by=actor,
        )
    except MemoryStoreError as exc:
        exit_with_error(exc)
    finally:
        store.close()

    action = "Created" if result.created else "Updated"
    print(f"{action} {escape(key)} (version {result.version})")
    for warning in result.warnings:
        print(f"[yellow]{escape(warning)}[/yellow]")


def get_cmd(
    *,
    store_from_path,
    db_path: str | None,
    project: str,
    key: str,
    include_archived: bool,
    as_json: bool,
) -> None:
    """Print a memory."""

    store = store_from_path(db_path)
    try:
        memory = store.get(project, key, include_archived=include_archived)
    except MemoryStoreError as exc:
        exit_with_error(exc)
    finally:
        store.close()
    if as_json:
        print_json(memory.to_dict())
        return
    _print_memory(memory)


def update_cmd(
    *,
    store_from_path,
    db_path: str | None,
    project: str,
    key: str,
    content: str | None,
    priority: int | None,
    tags: list[str] | None,
    metadata: str | None,
    expires_at: str | None,
    if_match: str | None,
    actor: str | None,
) -> None:
    """Update fields of an existing memory."""

    parsed_metadata = parse_metadata_or_exit(metadata)
    store = store_from_path(db_path)
    try:
        result = store.update(
            project,
            key,
            content=content,
            metadata=parsed_metadata,
            priority=priority,
            tags=tags or None,
            expires_at=expires_at,
            changed_by=actor,
            if_match=if_match,
        )
        etag = store.entity_tag(project, key)
    except MemoryStoreError as exc:
        exit_with_error(exc)
    finally:
        store.close()
    print(f"Updated {escape(key)} (version {result.version}, etag {escape(etag)})")


def delete_cmd(
    *,
    store_from_path,
    db_path: str | None,
    project: str,
    key: str,
    if_match: str | None,
    actor: str | None,
) -> None:
    """Hard-delete a memory and its history."""

    store = store_from_path(db_path)
    try:
        store.delete(project, key, if_match=if_match, deleted_by=actor)
    except MemoryStoreError as exc:
        exit_with_error(exc)
    finally:
        store.close()
    print(f"Deleted {escape(key)}")


def list_cmd(
    *,
    store_from_path,
    db_path: str | None,
    project: str,
    include_archived: bool,
    tag: str | None,
    limit: int,
    offset: int,
    as_json: bool,
) -> None:
    """List memories in a project."""

    store = store_from_path(db_path)
    try:
        memories = store.list_memories(
            project, include_archived=include_archived, tag=tag, limit=limit, offset=offset
        )
    finally:
        store.close()
    if as_json:
        print_json([memory.to_dict() for memory in memories])
        return
    if not memories:
        print("[yellow]No memories found.[/yellow]")
        return
    for memory in memories:
        marker = " [dim](archived)[/dim]" if memory.is_archived else ""
        pin = " [cyan]pinned[/cyan]" if memory.is_pinned else ""
        print(f"- {escape(memory.key)} p={memory.priority} hits={memory.access_count}{pin}{marker}")


def toggle_cmd(
    *,
    store_from_path,
    db_path: str | None,
    project: str,
    key: str,
    action: str,
) -> None:
    """Pin, unpin, archive or unarchive a memory."""

    store = store_from_path(db_path)
    try:
        operation = {
            "pin": store.pin,
            "unpin": store.unpin,
            "archive": store.archive,
            "unarchive": store.unarchive,
        }[action]
        operation(project, key)
    except MemoryStoreError as exc:
        exit_with_error(exc)
    finally:
        store.close()
    print(f"{_PAST_TENSE[action]} {escape(key)}")


def feedback_cmd(
    *,
    store_from_path,
    db_path: str | None,
    project: str,
    key: str,
    helpful: bool,
) -> None:
    """Record helpful or unhelpful feedback."""

    store = store_from_path(db_path)
    try:
        memory = store.feedback(project, key, helpful=helpful)
    except MemoryStoreError as exc:
        exit_with_error(exc)
    finally:
        store.close()
    print(
        f"{escape(key)}: helpful={memory.helpful_count} unhelpful={memory.unhelpful_count}"
    )


def link_cmd(
    *,
    store_from_path,
    db_path: str | None,
    project: str,
    key: str,
    other_key: str,
    unlink: bool,
) -> None:
    """Link or unlink two memories in both directions."""

    store = store_from_path(db_path)
    try:
        if unlink:
            left, _ = store.unlink(project, key, other_key)
        else:
            left, _ = store.link(project, key, other_key)
    except MemoryStoreError as exc:
        exit_with_error(exc)
    finally:
        store.close()
    related = ", ".join(left.related_keys) or "none"
    print(f"{escape(key)} related: {escape(related)}")


def history_cmd(
    *,
    store_from_path,
    db_path: str | None,
    project: str,
    key: str,
    limit: int,
) -> None:
    """Show the version history of a memory."""

    store = store_from_path(db_path)
    try:
        versions = store.list_versions(project, key, limit=limit)
    except MemoryStoreError as exc:
        exit_with_error(exc)
    finally:
        store.close()
    for version in versions:
        actor = f" by {escape(version.changed_by)}" if version.changed_by else ""
        first_line = version.content.splitlines()[0] if version.content else ""
        print(
            f"v{version.version} {version.change_type} {version.created_at}{actor}: "
            f"{escape(first_line[:80])}"
        )


def rollback_cmd(
    *,
    store_from_path,
    db_path: str | None,
    project: str,
    key: str,
    steps: int,
    to_version: int | None,
    timeout_s: float | None,
    actor: str | None,
) -> None:
    """Restore an earlier version as a new version."""

    store = store_from_path(db_path)
    try:
        if to_version is not None:
            result = store.restore_version(project, key, to_version, changed_by=actor)
        else:
            result = store.rollback(project, key, steps, changed_by=actor, timeout_s=timeout_s)
    except MemoryStoreError as exc:
        exit_with_error(exc)
    finally:
        store.close()
    print(
        f"Restored {escape(key)} to v{result.restored_version} "
        f"(recorded as v{result.new_version})"
    )


def diff_cmd(
    *,
    store_from_path,
    db_path: str | None,
    project: str,
    key: str,
    v1: int,
    v2: int | None,
    timeout_s: float | None,
    as_json: bool,
) -> None:
    """Line diff between two versions, or a version and the current content."""

    store = store_from_path(db_path)
    try:
        result = store.diff(project, key, v1, v2, timeout_s=timeout_s)
    except MemoryStoreError as exc:
        exit_with_error(exc)
    finally:
        store.close()
    if as_json:
        print_json(result.to_dict())
        return
    print(f"[bold]{escape(key)}[/bold] {result.from_label} -> {result.to_label}")
    for line in result.lines:
        text = escape(line["line"])
        if line["type"] == "add":
            print(f"[green]+ {text}[/green]")
        elif line["type"] == "remove":
            print(f"[red]- {text}[/red]")
        else:
            print(f"  {text}")
    summary = result.summary
    print(
        f"[dim]{summary['added']} added, {summary['removed']} removed, "
        f"{summary['unchanged']} unchanged[/dim]"
    )


def store_safe_cmd(
    *,
    store_from_path,
    db_path: str | None,
    project: str,
    key: str,
    content: str,
    if_unmodified_since: str,
    strategy: str,
    actor: str | None,
) -> None:
    """Store only if the memory has not changed since the given time."""

    store = store_from_path(db_path)
    try:
        result = store.store_safe(
            project, key, content, if_unmodified_since, strategy, created_by=actor
        )
    except MemoryStoreError as exc:
        exit_with_error(exc)
    finally:
        store.close()
    color = "yellow" if result.conflict else "green"
    print(f"[{color}]{escape(result.message)}[/{color}]")
    if result.conflict and not result.stored:
        print_json(
            {
                "current_content": result.current_content,
                "current_updated_at": result.current_updated_at,
                "proposed_content": result.proposed_content,
            }
        )


def capacity_cmd(
    *,
    store_from_path,
    db_path: str | None,
    project: str,
    as_json: bool,
) -> None:
    """Show project and org usage against plan limits."""

    store = store_from_path(db_path)
    try:
        snapshot = store.capacity(project)
    except MemoryStoreError as exc:
        exit_with_error(exc)
    finally:
        store.close()
    if as_json:
        print_json(snapshot.to_dict())
        return
    print("[bold]Capacity[/bold]")
    print(f"- Project: {snapshot.project_used} of {format_limit(snapshot.project_soft_limit)} (soft)")
    print(f"- Organization: {snapshot.org_used} of {format_limit(snapshot.org_hard_limit)} (hard)")
    if snapshot.is_hard_full:
        print("[red]Organization limit reached: new keys are rejected.[/red]")
    elif snapshot.is_soft_full:
        print("[yellow]Project is over its soft limit.[/yellow]")
    elif snapshot.is_approaching:
        print("[yellow]Project is approaching its soft limit.[/yellow]")


def get_many_cmd(
    *,
    store_from_path,
    db_path: str | None,
    project: str,
    keys: list[str],
    include_archived: bool,
    as_json: bool,
) -> None:
    """Print several memories at once."""

    store = store_from_path(db_path)
    try:
        memories = store.get_many(project, keys, include_archived=include_archived)
    except MemoryStoreError as exc:
        exit_with_error(exc)
    finally:
        store.close()
    if as_json:
        print_json(
            {
                "memories": {key: memory.to_dict() for key, memory in memories.items()},
                "found": len(memories),
                "requested": len(dict.fromkeys(keys)),
            }
        )
        return
    for memory in memories.values():
        _print_memory(memory)
    missing = [key for key in dict.fromkeys(keys) if key not in memories]
    if missing:
        print(f"[yellow]Not found: {escape(', '.join(missing))}[/yellow]")


def batch_cmd(
    *,
    store_from_path,
    db_path: str | None,
    project: str,
    action: str,
    keys: list[str],
    priority: int | None,
    tags: list[str] | None,
    scope: str | None,
    actor: str | None,
    as_json: bool,
) -> None:
    """Apply one action to several memories in a single transaction."""

    value = {"set_priority": priority, "add_tags": tags, "set_scope": scope}.get(action)
    store = store_from_path(db_path)
    try:
        result = store.batch(project, keys, action, value, actor=actor)
    except MemoryStoreError as exc:
        exit_with_error(exc)
    finally:
        store.close()
    if as_json:
        print_json(result.to_dict())
        return
    print(
        f"{escape(str(result.action))}: {result.affected} affected, "
        f"{result.matched} of {result.requested} matched"
    )
    if result.missing:
        print(f"[yellow]Not found: {escape(', '.join(result.missing))}[/yellow]")


def traverse_cmd(
    *,
    store_from_path,
    db_path: str | None,
    project: str,
    key: str,
    depth: int,
    include_archived: bool,
    as_json: bool,
) -> None:
    """Walk related memories breadth-first."""

    store = store_from_path(db_path)
    try:
        result = store.traverse(project, key, depth, include_archived=include_archived)
    except MemoryStoreError as exc:
        exit_with_error(exc)
    finally:
        store.close()
    if as_json:
        print_json(result.to_dict())
        return
    for node in result.nodes:
        first_line = node.content.splitlines()[0] if node.content else ""
        print(f"{'  ' * node.depth}- [bold]{escape(node.key)}[/bold] {escape(first_line[:60])}")
    if result.max_depth_reached:
        print("[dim]More related memories beyond the depth limit.[/dim]")
