"""Codified CLI - administrative commands for extractions and the project library.

Commands:
- init: Initialize database schema
- merge: Merge one extraction into its project library now
- merge-unmerged: Schedule merges for confirmed, unmerged extractions
- backfill-project-ids: Copy project links from documents and schedule merges
- run-tasks: Drain pending merge tasks
- tasks: List merge tasks
- impact: Show what deleting an extraction would do to the library
- snapshot: Take a manual snapshot of a project library
- snapshots: List a project library's snapshots
- web serve: Run the HTTP API
"""

from __future__ import annotations

import asyncio
from uuid import UUID

import typer
from rich.console import Console
from rich.table import Table

from codified.config import get_config
from codified.core.errors import CodifiedError
from codified.core.logging import configure_logging
from codified.db.connection import close_db, get_session, get_session_factory, init_db
from codified.library.impact import get_delete_impact
from codified.library.merge import merge_to_project_library
from codified.library.snapshots import create_snapshot, get_snapshots_by_project, snapshot_to_dict
from codified.models import BackfillResult
from codified.tasks.backfill import backfill_project_ids, merge_unmerged_extractions
from codified.tasks.dispatch import dispatch_merge_tasks, wait_for_inline_tasks
from codified.tasks.outbox import (
    TASK_STATUSES,
    list_tasks,
    run_pending_tasks,
    scheduled_task_ids,
    task_to_dict,
)

app = typer.Typer(
    name="codified",
    help="Codified - extraction confirmation and project data library",
    no_args_is_help=True,
)
web_cli = typer.Typer(help="Web API")
app.add_typer(web_cli, name="web")

console = Console()


def _run(coro) -> None:
    """Run a command coroutine and release the engine afterwards."""

    async def _main():
        try:
            await coro
        finally:
            await wait_for_inline_tasks()
            await close_db()

    try:
        asyncio.run(_main())
    except CodifiedError as exc:
        console.print(f"[red]✗[/red] {exc}")
        raise typer.Exit(code=1) from exc


def _print_results(results: list[BackfillResult]) -> None:
    if not results:
        return

    table = Table(title="Extractions")
    table.add_column("Extraction", style="cyan")
    table.add_column("Action")
    table.add_column("Detail", style="dim")
    for result in results:
        style = "red" if result.action == "error" else "green"
        table.add_row(result.extraction_id, f"[{style}]{result.action}[/{style}]", result.detail or "")
    console.print(table)


@app.callback()
def main_callback():
    try:
        configure_logging()
    except (KeyError, ValueError) as exc:
        console.print(f"[red]✗[/red] Configuration error: {exc}")
        raise typer.Exit(code=2) from exc


@app.command()
def init(
    drop: bool = typer.Option(False, "--drop", help="Drop existing tables"),
):
    """Initialize database schema."""
    config = get_config()
    console.print(f"[bold]Initializing database:[/bold] {config.db.url}")
    if drop:
        console.print("[yellow]Dropping existing tables...[/yellow]")

    _run(init_db(drop=drop))
    console.print("[bold green]✓[/bold green] Database initialized")


@app.command()
def merge(
    extraction_id: UUID = typer.Argument(..., help="Extraction ID"),
    project_id: UUID | None = typer.Option(None, "--project", help="Target project ID"),
):
    """Merge one extraction into its project library now."""

    async def _merge():
        async with get_session() as session:
            result = await merge_to_project_library(session, extraction_id, project_id)

        if result.already_merged:
            console.print("[yellow]⚠[/yellow] Extraction was already merged; nothing changed")
            return
        console.print(
            f"[bold green]✓[/bold green] Merged {result.merged} items "
            f"({result.created} created, {result.updated} updated)"
        )

    _run(_merge())


@app.command(name="merge-unmerged")
def merge_unmerged_cmd(
    project_id: UUID | None = typer.Option(None, "--project", help="Limit to one project"),
):
    """Schedule merges for confirmed extractions that never reached the library."""

    async def _merge_unmerged():
        async with get_session() as session:
            report = await merge_unmerged_extractions(session, project_id)
            scheduled = scheduled_task_ids(session)

        await dispatch_merge_tasks(scheduled)

        _print_results(report.results)
        console.print(
            f"[bold green]✓[/bold green] {report.unmerged_found} unmerged of "
            f"{report.total_extractions}; {report.merged_count} merges scheduled, "
            f"{report.already_scheduled} re-queued"
        )

    _run(_merge_unmerged())


@app.command(name="backfill-project-ids")
def backfill_project_ids_cmd():
    """Copy missing project links from documents and schedule pending merges."""

    async def _backfill():
        async with get_session() as session:
            report = await backfill_project_ids(session)
            scheduled = scheduled_task_ids(session)

        await dispatch_merge_tasks(scheduled)

        _print_results(report.results)
        console.print(
            f"[bold green]✓[/bold green] {report.project_ids_updated} project ids backfilled, "
            f"{report.merges_scheduled} merges scheduled, {report.already_scheduled} re-queued"
        )

    _run(_backfill())


@app.command(name="run-tasks")
def run_tasks_cmd(
    limit: int | None = typer.Option(None, "--limit", help="Maximum tasks to run"),
):
    """Run pending merge tasks in this process."""

    async def _run_tasks():
        outcomes = await run_pending_tasks(get_session_factory(), limit=limit)
        if not outcomes:
            console.print("No pending merge tasks")
            return

        table = Table(title="Merge Tasks")
        table.add_column("Task", style="cyan")
        table.add_column("Status")
        table.add_column("Detail", style="dim")
        for outcome in outcomes:
            detail = outcome.get("error") or str(outcome.get("result") or "")
            table.add_row(outcome["task_id"], outcome["status"], detail)
        console.print(table)

    _run(_run_tasks())


@app.command()
def tasks(
    status: str | None = typer.Option(None, "--status", help="pending, running, done or failed"),
):
    """List merge tasks, newest first."""
    if status is not None and status not in TASK_STATUSES:
        raise typer.BadParameter(f"status must be one of {', '.join(TASK_STATUSES)}")

    async def _tasks():
        async with get_session() as session:
            rows = [task_to_dict(task) for task in await list_tasks(session, status=status)]

        table = Table(title="Merge Tasks")
        table.add_column("Task", style="cyan")
        table.add_column("Extraction")
        table.add_column("Status")
        table.add_column("Attempts", justify="right")
        table.add_column("Last Error", style="dim")
        for row in rows:
            table.add_row(
                row["id"],
                row["extractionId"],
                row["status"],
                str(row["attempts"]),
                row["lastError"] or "",
            )
        console.print(table)

    _run(_tasks())


@app.command()
def impact(
    extraction_id: UUID = typer.Argument(..., help="Extraction ID"),
):
    """Show what deleting an extraction would do to the project library."""

    async def _impact():
        async with get_session() as session:
            result = await get_delete_impact(session, extraction_id)

        table = Table(title="Delete Impact")
        table.add_column("Metric", style="cyan")
        table.add_column("Count", justify="right", style="green")
        table.add_row("Merged items", str(result.merged_items))
        table.add_row("Would be removed", str(result.would_remove_items))
        table.add_row("Would revert", str(result.would_revert_items))
        console.print(table)

    _run(_impact())


@app.command()
def snapshot(
    project_id: UUID = typer.Argument(..., help="Project ID"),
    description: str | None = typer.Option(None, "--description", help="Snapshot note"),
):
    """Take a manual snapshot of a project data library."""

    async def _snapshot():
        async with get_session() as session:
            taken = await create_snapshot(session, project_id, "manual_save", description=description)
        console.print(f"[green]✓[/green] Snapshot {taken.id}: {taken.item_count} items")

    _run(_snapshot())


@app.command()
def snapshots(
    project_id: UUID = typer.Argument(..., help="Project ID"),
):
    """List a project's library snapshots, newest first."""

    async def _snapshots():
        async with get_session() as session:
            rows = [
                snapshot_to_dict(found, include_items=False)
                for found in await get_snapshots_by_project(session, project_id)
            ]

        table = Table(title="Library Snapshots")
        table.add_column("Snapshot", style="cyan")
        table.add_column("Created")
        table.add_column("Reason")
        table.add_column("Items", justify="right")
        table.add_column("Description", style="dim")
        for row in rows:
            table.add_row(
                row["id"], row["createdAt"], row["reason"], str(row["itemCount"]), row["description"] or ""
            )
        console.print(table)

    _run(_snapshots())


@web_cli.command("serve")
def web_serve(
    host: str = typer.Option("0.0.0.0", help="Host to bind"),
    port: int = typer.Option(8001, help="Port to bind"),
    reload: bool = typer.Option(False, help="Enable autoreload (dev only)"),
):
    """Run the FastAPI HTTP API."""
    import uvicorn

    typer.echo(f"Starting Codified API on http://{host}:{port}")
    uvicorn.run("codified.web.app:app", host=host, port=port, reload=reload, workers=1)


def main():
    """Entry point for CLI."""
    app()


if __name__ == "__main__":
    main()
