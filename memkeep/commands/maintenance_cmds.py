from __future__ import annotations

from pathlib import Path

from rich import print
from rich.markup import escape

from ..db import SCHEMA_VERSION, schema_user_version
from ..errors import MemoryStoreError
from ..plans import limits_for_plan
from .common import exit_with_error, format_limit


def init_db_cmd(*, store_from_path, db_path: str | None) -> None:
    """Create the SQLite database (no-op if it already exists)."""

    store = store_from_path(db_path)
    try:
        print(f"Initialized database at {store.db_path}")
    finally:
        store.close()


def _format_bytes(size: int) -> str:
    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    if size < 1024 * 1024 * 1024:
        return f"{size / 1024 / 1024:.1f} MB"
    return f"{size / 1024 / 1024 / 1024:.1f} GB"


def stats_cmd(*, store_from_path, db_path: str | None) -> None:
    """Show database size and row counts."""

    store = store_from_path(db_path)
    try:
        counts = {
            table: int(store.conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0])
            for table in ("organizations", "projects", "memories", "memory_versions", "memory_locks")
        }
        archived = int(
            store.conn.execute(
                "SELECT COUNT(*) FROM memories WHERE archived_at IS NOT NULL"
            ).fetchone()[0]
        )
        version = schema_user_version(store.conn)
        path = Path(store.db_path)
    finally:
        store.close()

    size = path.stat().st_size if path.exists() else 0
    print("[bold]Database[/bold]")
    print(f"- Path: {path}")
    print(f"- Size: {_format_bytes(size)}")
    print(f"- Schema: v{version} (current v{SCHEMA_VERSION})")
    print(f"- Organizations: {counts['organizations']}")
    print(f"- Projects: {counts['projects']}")
    print(f"- Memories: {counts['memories']} (archived {archived})")
    print(f"- Versions: {counts['memory_versions']}")
    print(f"- Locks: {counts['memory_locks']}")


def org_create_cmd(
    *, store_from_path, db_path: str | None, org_id: str, plan_id: str | None
) -> None:
    store = store_from_path(db_path)
    try:
        store.create_org(org_id, plan_id)
        org = store.get_org(org_id)
    except MemoryStoreError as exc:
        exit_with_error(exc)
    finally:
        store.close()
    limits = limits_for_plan(org["plan_id"])
    print(
        f"Organization {escape(org_id)} on plan {org['plan_id']} "
        f"({format_limit(limits.soft_limit_per_project)} per project, "
        f"{format_limit(limits.hard_limit_org)} total)"
    )


def org_set_plan_cmd(
    *, store_from_path, db_path: str | None, org_id: str, plan_id: str
) -> None:
    store = store_from_path(db_path)
    try:
        store.set_org_plan(org_id, plan_id)
    except MemoryStoreError as exc:
        exit_with_error(exc)
    finally:
        store.close()
    print(f"Organization {escape(org_id)} moved to plan {plan_id}")


def project_create_cmd(
    *, store_from_path, db_path: str | None, project_id: str, org_id: str
) -> None:
    store = store_from_path(db_path)
    try:
        store.create_project(project_id, org_id)
    except MemoryStoreError as exc:
        exit_with_error(exc)
    finally:
        store.close()
    print(f"Project {escape(project_id)} registered under {escape(org_id)}")


def project_list_cmd(*, store_from_path, db_path: str | None, org_id: str | None) -> None:
    store = store_from_path(db_path)
    try:
        projects = store.list_projects(org_id)
    finally:
        store.close()
    if not projects:
        print("[yellow]No projects registered.[/yellow]")
        return
    for project in projects:
        print(f"- {escape(project['id'])} (org {escape(project['org_id'])})")
