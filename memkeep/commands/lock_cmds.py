from __future__ import annotations

import typer
from rich import print
from rich.markup import escape

from ..errors import MemoryStoreError
from .common import exit_with_error


def lock_acquire_cmd(
    *,
    store_from_path,
    db_path: str | None,
    project: str,
    key: str,
    holder: str | None,
    ttl_s: float | None,
) -> None:
    """Try to take the advisory lock on a key."""

    store = store_from_path(db_path)
    try:
        result = store.acquire_lock(project, key, holder=holder, ttl_s=ttl_s)
    except MemoryStoreError as exc:
        exit_with_error(exc)
    finally:
        store.close()
    lock = result.lock
    if result.acquired:
        print(f"[green]Locked {escape(key)} until {lock.expires_at}[/green]")
        return
    print(
        f"[yellow]{escape(key)} is locked by {escape(str(lock.locked_by))} "
        f"until {lock.expires_at}[/yellow]"
    )
    raise typer.Exit(code=2)


def lock_release_cmd(
    *,
    store_from_path,
    db_path: str | None,
    project: str,
    key: str,
    holder: str | None,
) -> None:
    store = store_from_path(db_path)
    try:
        store.release_lock(project, key, holder=holder)
    except MemoryStoreError as exc:
        exit_with_error(exc)
    finally:
        store.close()
    print(f"Released lock on {escape(key)}")


def lock_status_cmd(
    *,
    store_from_path,
    db_path: str | None,
    project: str,
    key: str,
) -> None:
    store = store_from_path(db_path)
    try:
        lock = store.get_lock(project, key)
    finally:
        store.close()
    if lock is None:
        print(f"{escape(key)} is not locked")
        return
    print(f"{escape(key)} is locked by {escape(str(lock.locked_by))} until {lock.expires_at}")
