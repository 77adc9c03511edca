from __future__ import annotations

import dataclasses
from typing import Any

import typer
from rich import print

from . import __version__
from .commands.common import (
    configure_logging,
    print_json,
    read_config_or_exit,
    store_from_path,
    write_config_or_exit,
)
from .commands.lifecycle_cmds import (
    health_cmd,
    lifecycle_run_cmd,
    lifecycle_scheduled_cmd,
    suggest_cleanup_cmd,
)
from .commands.lock_cmds import lock_acquire_cmd, lock_release_cmd, lock_status_cmd
from .commands.maintenance_cmds import (
    init_db_cmd,
    org_create_cmd,
    org_set_plan_cmd,
    project_create_cmd,
    project_list_cmd,
    stats_cmd,
)
from .commands.memory_cmds import (
    batch_cmd,
    capacity_cmd,
    delete_cmd,
    diff_cmd,
    feedback_cmd,
    get_cmd,
    get_many_cmd,
    history_cmd,
    link_cmd,
    list_cmd,
    rollback_cmd,
    store_cmd,
    store_safe_cmd,
    toggle_cmd,
    traverse_cmd,
    update_cmd,
)
from .config import MemkeepConfig, get_config_path, load_config
from .store import BatchAction, MemoryStore
from .store.lifecycle import Policy

app = typer.Typer(help="memkeep: versioned project memory for coding agents")
org_app = typer.Typer(help="Manage organizations and plans")
project_app = typer.Typer(help="Manage projects")
lock_app = typer.Typer(help="Advisory memory locks")
lifecycle_app = typer.Typer(help="Scoring and lifecycle policies")
db_app = typer.Typer(help="Database maintenance")
app.add_typer(org_app, name="org")
app.add_typer(project_app, name="project")
app.add_typer(lock_app, name="lock")
app.add_typer(lifecycle_app, name="lifecycle")
app.add_typer(db_app, name="db")

DB_HELP = "Path to SQLite database"
PROJECT_HELP = "Project id"


def _store(db_path: str | None) -> MemoryStore:
    return store_from_path(db_path)


def _db_option() -> Any:
    return typer.Option(None, "--db-path", envvar="MEMKEEP_DB", help=DB_HELP)


def _project_option() -> Any:
    return typer.Option(..., "--project", "-p", envvar="MEMKEEP_PROJECT", help=PROJECT_HELP)


@app.callback()
def main_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    configure_logging(verbose)


@app.command()
def store(
    key: str,
    content: str,
    priority: int = typer.Option(None, help="Priority 0-100"),
    tags: list[str] = typer.Option(None, "--tag", help="Repeat for multiple tags"),
    metadata: str = typer.Option(None, help="JSON object"),
    expires_at: str = typer.Option(None, help="ISO-8601 expiry"),
    scope: str = typer.Option(None, help="project or shared"),
    actor: str = typer.Option(None, help="Who is writing"),
    project: str = _project_option(),
    db_path: str = _db_option(),
) -> None:
    """Create or update a memory."""
    store_cmd(
        store_from_path=_store,
        db_path=db_path,
        project=project,
        key=key,
        content=content,
        priority=priority,
        tags=tags,
        metadata=metadata,
        expires_at=expires_at,
        scope=scope,
        actor=actor,
    )


@app.command()
def get(
    key: str,
    include_archived: bool = typer.Option(False, help="Return archived memories too"),
    as_json: bool = typer.Option(False, "--json", help="Print JSON"),
    project: str = _project_option(),
    db_path: str = _db_option(),
) -> None:
    """Print a memory (counts as an access)."""
    get_cmd(
        store_from_path=_store,
        db_path=db_path,
        project=project,
        key=key,
        include_archived=include_archived,
        as_json=as_json,
    )


@app.command()
def update(
    key: str,
    content: str = typer.Option(None, help="New content"),
    priority: int = typer.Option(None, help="Priority 0-100"),
    tags: list[str] = typer.Option(None, "--tag", help="Replace tags; repeat for multiple"),
    metadata: str = typer.Option(None, help="JSON object"),
    expires_at: str = typer.Option(None, help="ISO-8601 expiry"),
    if_match: str = typer.Option(None, help="Entity tag the memory must still have"),
    actor: str = typer.Option(None, help="Who is writing"),
    project: str = _project_option(),
    db_path: str = _db_option(),
) -> None:
    """Update fields of an existing memory."""
    update_cmd(
        store_from_path=_store,
        db_path=db_path,
        project=project,
        key=key,
        content=content,
        priority=priority,
        tags=tags,
        metadata=metadata,
        expires_at=expires_at,
        if_match=if_match,
        actor=actor,
    )


@app.command()
def delete(
    key: str,
    if_match: str = typer.Option(None, help="Entity tag the memory must still have"),
    actor: str = typer.Option(None, help="Who is deleting"),
    project: str = _project_option(),
    db_path: str = _db_option(),
) -> None:
    """Hard-delete a memory and its history."""
    delete_cmd(
        store_from_path=_store,
        db_path=db_path,
        project=project,
        key=key,
        if_match=if_match,
        actor=actor,
    )


@app.command("list")
def list_memories(
    include_archived: bool = typer.Option(False, help="Include archived memories"),
    tag: str = typer.Option(None, help="Only memories with this tag"),
    limit: int = typer.Option(100, help="Max results"),
    offset: int = typer.Option(0, help="Skip this many results"),
    as_json: bool = typer.Option(False, "--json", help="Print JSON"),
    project: str = _project_option(),
    db_path: str = _db_option(),
) -> None:
    """List memories in a project."""
    list_cmd(
        store_from_path=_store,
        db_path=db_path,
        project=project,
        include_archived=include_archived,
        tag=tag,
        limit=limit,
        offset=offset,
        as_json=as_json,
    )


@app.command()
def pin(key: str, project: str = _project_option(), db_path: str = _db_option()) -> None:
    """Pin a memory so lifecycle policies never archive or purge it."""
    toggle_cmd(store_from_path=_store, db_path=db_path, project=project, key=key, action="pin")


@app.command()
def unpin(key: str, project: str = _project_option(), db_path: str = _db_option()) -> None:
    """Remove a pin."""
    toggle_cmd(store_from_path=_store, db_path=db_path, project=project, key=key, action="unpin")


@app.command()
def archive(key: str, project: str = _project_option(), db_path: str = _db_option()) -> None:
    """Archive a memory (frees quota, keeps history)."""
    toggle_cmd(
        store_from_path=_store, db_path=db_path, project=project, key=key, action="archive"
    )


@app.command()
def unarchive(key: str, project: str = _project_option(), db_path: str = _db_option()) -> None:
    """Reactivate an archived memory."""
    toggle_cmd(
        store_from_path=_store, db_path=db_path, project=project, key=key, action="unarchive"
    )


@app.command()
def feedback(
    key: str,
    helpful: bool = typer.Option(True, "--helpful/--unhelpful", help="Feedback direction"),
    project: str = _project_option(),
    db_path: str = _db_option(),
) -> None:
    """Record whether a memory was helpful."""
    feedback_cmd(
        store_from_path=_store, db_path=db_path, project=project, key=key, helpful=helpful
    )


@app.command()
def link(
    key: str,
    other_key: str,
    remove: bool = typer.Option(False, "--remove", help="Unlink instead of link"),
    project: str = _project_option(),
    db_path: str = _db_option(),
) -> None:
    """Relate two memories to each other."""
    link_cmd(
        store_from_path=_store,
        db_path=db_path,
        project=project,
        key=key,
        other_key=other_key,
        unlink=remove,
    )


@app.command()
def history(
    key: str,
    limit: int = typer.Option(50, help="Max versions"),
    project: str = _project_option(),
    db_path: str = _db_option(),
) -> None:
    """Show the version history of a memory."""
    history_cmd(store_from_path=_store, db_path=db_path, project=project, key=key, limit=limit)


@app.command()
def rollback(
    key: str,
    steps: int = typer.Option(1, help="How many versions to go back"),
    to_version: int = typer.Option(None, help="Restore this exact version instead"),
    timeout_s: float = typer.Option(None, help="Give up after this many seconds"),
    actor: str = typer.Option(None, help="Who is restoring"),
    project: str = _project_option(),
    db_path: str = _db_option(),
) -> None:
    """Restore an earlier version; the restore is itself a new version."""
    rollback_cmd(
        store_from_path=_store,
        db_path=db_path,
        project=project,
        key=key,
        steps=steps,
        to_version=to_version,
        timeout_s=timeout_s,
        actor=actor,
    )


@app.command()
def diff(
    key: str,
    v1: int = typer.Argument(..., help="Base version"),
    v2: int = typer.Argument(None, help="Target version (defaults to current content)"),
    timeout_s: float = typer.Option(None, help="Give up after this many seconds"),
    as_json: bool = typer.Option(False, "--json", help="Print JSON"),
    project: str = _project_option(),
    db_path: str = _db_option(),
) -> None:
    """Line diff between versions."""
    diff_cmd(
        store_from_path=_store,
        db_path=db_path,
        project=project,
        key=key,
        v1=v1,
        v2=v2,
        timeout_s=timeout_s,
        as_json=as_json,
    )


@app.command("store-safe")
def store_safe(
    key: str,
    content: str,
    if_unmodified_since: str = typer.Option(..., help="updated_at the caller last saw"),
    strategy: str = typer.Option(
        "reject", help="reject, last_write_wins, append or return_both"
    ),
    actor: str = typer.Option(None, help="Who is writing"),
    project: str = _project_option(),
    db_path: str = _db_option(),
) -> None:
    """Store with an optimistic-concurrency check."""
    store_safe_cmd(
        store_from_path=_store,
        db_path=db_path,
        project=project,
        key=key,
        content=content,
        if_unmodified_since=if_unmodified_since,
        strategy=strategy,
        actor=actor,
    )


@app.command()
def capacity(
    as_json: bool = typer.Option(False, "--json", help="Print JSON"),
    project: str = _project_option(),
    db_path: str = _db_option(),
) -> None:
    """Show usage against plan limits."""
    capacity_cmd(store_from_path=_store, db_path=db_path, project=project, as_json=as_json)


@app.command("get-many")
def get_many(
    keys: list[str] = typer.Argument(..., help="Up to 50 keys"),
    include_archived: bool = typer.Option(False, help="Return archived memories too"),
    as_json: bool = typer.Option(False, "--json", help="Print JSON"),
    project: str = _project_option(),
    db_path: str = _db_option(),
) -> None:
    """Print several memories by key."""
    get_many_cmd(
        store_from_path=_store,
        db_path=db_path,
        project=project,
        keys=keys,
        include_archived=include_archived,
        as_json=as_json,
    )


@app.command()
def batch(
    action: str = typer.Argument(..., help=f"Any of: {', '.join(BatchAction)}"),
    keys: list[str] = typer.Argument(..., help="Up to 100 keys"),
    priority: int = typer.Option(None, help="Priority for set_priority"),
    tags: list[str] = typer.Option(None, "--tag", help="Tags for add_tags"),
    scope: str = typer.Option(None, help="Scope for set_scope"),
    actor: str = typer.Option(None, help="Who is acting"),
    as_json: bool = typer.Option(False, "--json", help="Print JSON"),
    project: str = _project_option(),
    db_path: str = _db_option(),
) -> None:
    """Apply one action to several memories at once."""
    batch_cmd(
        store_from_path=_store,
        db_path=db_path,
        project=project,
        action=action,
        keys=keys,
        priority=priority,
        tags=tags or None,
        scope=scope,
        actor=actor,
        as_json=as_json,
    )


@app.command()
def traverse(
    key: str,
    depth: int = typer.Option(2, help="Hops to follow (1-5)"),
    include_archived: bool = typer.Option(False, help="Follow archived memories too"),
    as_json: bool = typer.Option(False, "--json", help="Print JSON"),
    project: str = _project_option(),
    db_path: str = _db_option(),
) -> None:
    """Walk related memories outward from KEY."""
    traverse_cmd(
        store_from_path=_store,
        db_path=db_path,
        project=project,
        key=key,
        depth=depth,
        include_archived=include_archived,
        as_json=as_json,
    )


@lock_app.command("acquire")
def lock_acquire(
    key: str,
    holder: str = typer.Option(None, help="Lock holder id"),
    ttl_s: float = typer.Option(None, help="Lock lifetime in seconds"),
    project: str = _project_option(),
    db_path: str = _db_option(),
) -> None:
    """Take the lock on a key (exit code 2 when someone else holds it)."""
    lock_acquire_cmd(
        store_from_path=_store,
        db_path=db_path,
        project=project,
        key=key,
        holder=holder,
        ttl_s=ttl_s,
    )


@lock_app.command("release")
def lock_release(
    key: str,
    holder: str = typer.Option(None, help="Only release if held by this holder"),
    project: str = _project_option(),
    db_path: str = _db_option(),
) -> None:
    """Release the lock on a key."""
    lock_release_cmd(
        store_from_path=_store, db_path=db_path, project=project, key=key, holder=holder
    )


@lock_app.command("status")
def lock_status(
    key: str, project: str = _project_option(), db_path: str = _db_option()
) -> None:
    """Show who holds the lock on a key."""
    lock_status_cmd(store_from_path=_store, db_path=db_path, project=project, key=key)


@lifecycle_app.command("run")
def lifecycle_run(
    policies: list[str] = typer.Argument(..., help=f"Any of: {', '.join(Policy)}"),
    merged_branch: list[str] = typer.Option(
        None, "--merged-branch", help="Branch whose plan memories should be archived"
    ),
    access_threshold: int = typer.Option(None, help="auto_promote access count"),
    feedback_threshold: int = typer.Option(None, help="auto_demote unhelpful count"),
    relevance_threshold: float = typer.Option(None, help="auto_prune relevance cutoff"),
    health_threshold: float = typer.Option(None, help="auto_archive_unhealthy cutoff"),
    max_versions: int = typer.Option(None, help="cleanup_old_versions retention"),
    archive_purge_days: int = typer.Option(None, help="purge_archived age in days"),
    timeout_s: float = typer.Option(None, help="Skip remaining policies after this"),
    as_json: bool = typer.Option(False, "--json", help="Print JSON"),
    project: str = _project_option(),
    db_path: str = _db_option(),
) -> None:
    """Run lifecycle policies."""
    lifecycle_run_cmd(
        store_from_path=_store,
        db_path=db_path,
        project=project,
        policies=policies,
        merged_branches=merged_branch,
        access_threshold=access_threshold,
        feedback_threshold=feedback_threshold,
        relevance_threshold=relevance_threshold,
        health_threshold=health_threshold,
        max_versions=max_versions,
        archive_purge_days=archive_purge_days,
        timeout_s=timeout_s,
        as_json=as_json,
    )


@lifecycle_app.command("scheduled")
def lifecycle_scheduled(
    as_json: bool = typer.Option(False, "--json", help="Print JSON"),
    project: str = _project_option(),
    db_path: str = _db_option(),
) -> None:
    """Run the safe automatic set; meant for cron."""
    lifecycle_scheduled_cmd(
        store_from_path=_store, db_path=db_path, project=project, as_json=as_json
    )


@lifecycle_app.command("suggest")
def lifecycle_suggest(
    stale_days: int = typer.Option(30, help="Not updated within this many days"),
    limit: int = typer.Option(20, help="Max stale memories"),
    project: str = _project_option(),
    db_path: str = _db_option(),
) -> None:
    """Suggest cleanup candidates without changing anything."""
    suggest_cleanup_cmd(
        store_from_path=_store,
        db_path=db_path,
        project=project,
        stale_days=stale_days,
        limit=limit,
    )


@lifecycle_app.command("health")
def lifecycle_health(
    limit: int = typer.Option(50, help="Max memories"),
    as_json: bool = typer.Option(False, "--json", help="Print JSON"),
    project: str = _project_option(),
    db_path: str = _db_option(),
) -> None:
    """Health scores, lowest first, plus the relevance distribution."""
    health_cmd(
        store_from_path=_store, db_path=db_path, project=project, limit=limit, as_json=as_json
    )


@org_app.command("create")
def org_create(
    org_id: str,
    plan: str = typer.Option(None, help="Plan id (defaults to config default_plan)"),
    db_path: str = _db_option(),
) -> None:
    """Register an organization (idempotent)."""
    org_create_cmd(store_from_path=_store, db_path=db_path, org_id=org_id, plan_id=plan)


@org_app.command("set-plan")
def org_set_plan(org_id: str, plan: str, db_path: str = _db_option()) -> None:
    """Move an organization to another plan."""
    org_set_plan_cmd(store_from_path=_store, db_path=db_path, org_id=org_id, plan_id=plan)


@project_app.command("create")
def project_create(project_id: str, org_id: str, db_path: str = _db_option()) -> None:
    """Register a project under an organization (idempotent)."""
    project_create_cmd(
        store_from_path=_store, db_path=db_path, project_id=project_id, org_id=org_id
    )


@project_app.command("list")
def project_list(
    org_id: str = typer.Option(None, "--org", help="Only projects of this organization"),
    db_path: str = _db_option(),
) -> None:
    """List registered projects."""
    project_list_cmd(store_from_path=_store, db_path=db_path, org_id=org_id)


@db_app.command("init")
def db_init(db_path: str = _db_option()) -> None:
    """Create the SQLite database (no-op if it already exists)."""
    init_db_cmd(store_from_path=_store, db_path=db_path)


@db_app.command("stats")
def db_stats(db_path: str = _db_option()) -> None:
    """Show database size and row counts."""
    stats_cmd(store_from_path=_store, db_path=db_path)


@app.command()
def config(
    set_values: list[str] = typer.Option(
        None, "--set", help="key=value to write into the config file"
    ),
) -> None:
    """Show the effective configuration, or update the config file."""
    if set_values:
        data = read_config_or_exit()
        known = {field.name for field in dataclasses.fields(MemkeepConfig)}
        for item in set_values:
            name, sep, value = item.partition("=")
            if not sep or name not in known:
                print(f"[red]Unknown setting: {item}[/red]")
                raise typer.Exit(code=1)
            data[name] = value
        write_config_or_exit(data)
        print(f"Updated {get_config_path()}")
        return
    print(f"[dim]{get_config_path()}[/dim]")
    print_json(dataclasses.asdict(load_config()))


@app.command("version")
def version() -> None:
    """Print version."""

    print(__version__)


def main() -> None:
    app()
