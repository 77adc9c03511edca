from __future__ import annotations

from rich import print
from rich.markup import escape

from ..errors import MemoryStoreError
from ..store.types import PolicyResult
from .common import exit_with_error, print_json


def _print_results(results: dict[str, PolicyResult]) -> None:
    for name, result in results.items():
        if result.error:
            print(f"[red]- {name}: failed ({escape(result.error)})[/red]")
            continue
        if result.skipped:
            print(f"[yellow]- {name}: skipped[/yellow]")
            continue
        details = f" [dim]{escape(result.details)}[/dim]" if result.details else ""
        print(f"- {name}: {result.affected} affected{details}")


def lifecycle_run_cmd(
    *,
    store_from_path,
    db_path: str | None,
    project: str,
    policies: list[str],
    merged_branches: list[str] | None,
    access_threshold: int | None,
    feedback_threshold: int | None,
    relevance_threshold: float | None,
    health_threshold: float | None,
    max_versions: int | None,
    archive_purge_days: int | None,
    timeout_s: float | None,
    as_json: bool,
) -> None:
    """Run lifecycle policies against a project."""

    store = store_from_path(db_path)
    try:
        params = store.lifecycle_params(
            merged_branches=merged_branches or None,
            access_threshold=access_threshold,
            feedback_threshold=feedback_threshold,
            relevance_threshold=relevance_threshold,
            health_threshold=health_threshold,
            max_versions=max_versions,
            archive_purge_days=archive_purge_days,
        )
        results = store.run_lifecycle(project, policies, params, timeout_s=timeout_s)
    except MemoryStoreError as exc:
        exit_with_error(exc)
    finally:
        store.close()
    if as_json:
        print_json({name: result.to_dict() for name, result in results.items()})
        return
    print(f"[bold]Lifecycle[/bold] {escape(project)}")
    _print_results(results)


def lifecycle_scheduled_cmd(
    *,
    store_from_path,
    db_path: str | None,
    project: str,
    as_json: bool,
) -> None:
    """Run the automatic maintenance set (expiry, locks, promote, demote)."""

    store = store_from_path(db_path)
    try:
        run = store.run_scheduled_lifecycle(project)
    except MemoryStoreError as exc:
        exit_with_error(exc)
    finally:
        store.close()
    if as_json:
        print_json(run.to_dict())
        return
    print(f"[bold]Scheduled lifecycle[/bold] ran at {run.ran_at}")
    _print_results(run.results)


def suggest_cleanup_cmd(
    *,
    store_from_path,
    db_path: str | None,
    project: str,
    stale_days: int,
    limit: int,
) -> None:
    """List stale and expired memories without changing anything."""

    store = store_from_path(db_path)
    try:
        suggestions = store.suggest_cleanup(project, stale_days=stale_days, limit=limit)
    except MemoryStoreError as exc:
        exit_with_error(exc)
    finally:
        store.close()
    print(f"[bold]Stale[/bold] (not updated in {stale_days} days)")
    if not suggestions.stale:
        print("- none")
    for memory in suggestions.stale:
        print(
            f"- {escape(memory.key)} hits={memory.access_count} "
            f"updated={memory.updated_at}"
        )
    print("\n[bold]Expired[/bold]")
    if not suggestions.expired:
        print("- none")
    for memory in suggestions.expired:
        print(f"- {escape(memory.key)} expired={memory.expires_at}")


def health_cmd(
    *,
    store_from_path,
    db_path: str | None,
    project: str,
    limit: int,
    as_json: bool,
) -> None:
    """Show the least healthy memories first."""

    store = store_from_path(db_path)
    try:
        reports = store.health_report(project, limit=limit)
        distribution = store.relevance_distribution(project)
    except MemoryStoreError as exc:
        exit_with_error(exc)
    finally:
        store.close()
    if as_json:
        print_json(
            {
                "memories": [report.to_dict() for report in reports],
                "relevance_distribution": distribution,
            }
        )
        return
    print("[bold]Health[/bold] (lowest first)")
    for report in reports:
        factors = report.factors
        pin = " [cyan]pinned[/cyan]" if report.is_pinned else ""
        print(
            f"- {escape(report.key)} {report.health_score:.2f}{pin} "
            f"[dim](age {factors['age']}, access {factors['access']}, "
            f"feedback {factors['feedback']}, freshness {factors['freshness']})[/dim]"
        )
    print(
        "\n[bold]Relevance[/bold] "
        + ", ".join(f"{bucket} {count}" for bucket, count in distribution.items())
    )
