"""Typer CLI commands for the workflow orchestrator.

Commands:
    start     - Create a workflow from a script file or a source video
    continue  - Run the next stage of a waiting workflow
    stop      - Stop a running workflow
    status    - Show workflow status and progress
    retry     - Regenerate one character, scene or video
    list      - List workflows and image batches
    merge     - Merge the completed videos again

Each command runs in-process and waits for the background work it started,
so ``continue`` returns once the stage has reached its checkpoint.
"""

import asyncio
import json
import logging
import uuid
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from reelflow.db import init_database, shutdown
from reelflow.errors import ReelflowError
from reelflow.orchestrator.service import WorkflowService
from reelflow.schemas.inputs import StartWorkflowInput
from reelflow.schemas.script import ScriptData
from reelflow.schemas.workflow import ITEM_KINDS, WorkflowDocument
from reelflow.services.generation_client import close_generation_client
from reelflow.services.merge_client import close_merge_client

app = typer.Typer(
    name="reelflow",
    help="Staged short-video generation: script, characters, scenes, videos, merge",
)
console = Console()


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logs")):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


async def _with_service(work, wait: bool = True):
    """Run work(service) against a fresh service, then release resources."""
    await init_database()
    service = WorkflowService()
    try:
        result = await work(service)
        if wait:
            await service.wait_background()
        return result
    finally:
        await service.shutdown()
        await close_generation_client()
        await close_merge_client()
        await shutdown()


def _run(work, wait: bool = True):
    try:
        return asyncio.run(_with_service(work, wait=wait))
    except ReelflowError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1)
    except KeyboardInterrupt:
        console.print()
        console.print("[yellow]Interrupted. In-flight items resume on the next status read.[/yellow]")
        raise typer.Exit(code=130)


def _parse_id(value: str) -> uuid.UUID:
    try:
        return uuid.UUID(value)
    except ValueError:
        console.print(f"[red]Error:[/red] Invalid workflow UUID: {value}")
        raise typer.Exit(code=1)


@app.command()
def start(
    script_file: Optional[Path] = typer.Option(
        None, "--script", "-s", help="JSON file with characters and scenes", exists=True, dir_okay=False
    ),
    video_url: Optional[str] = typer.Option(None, "--video-url", help="Source video to derive a script from"),
    prompt: Optional[str] = typer.Option(None, "--prompt", "-p", help="Instructions for script generation"),
    title: str = typer.Option("", "--title", "-t", help="Workflow title"),
    video_model: str = typer.Option("seedance", "--video-model", help="seedance, hailuo or wan"),
    video_mode: str = typer.Option("first-last-frame", "--video-mode", help="first-last-frame or single-image"),
    image_size: str = typer.Option("1K", "--image-size", help="Image resolution"),
):
    """Create a workflow.

    With --script the workflow waits at script_done; with --video-url the
    script is generated first.
    """
    script_data = None
    if script_file is not None:
        try:
            script_data = ScriptData.model_validate(json.loads(script_file.read_text()))
        except (ValueError, json.JSONDecodeError) as e:
            console.print(f"[red]Error:[/red] Invalid script file: {e}")
            raise typer.Exit(code=1)

    try:
        request = StartWorkflowInput(
            title=title,
            source_video_url=video_url,
            script_prompt=prompt,
            script_data=script_data,
            video_model=video_model,
            video_mode=video_mode,
            image_size=image_size,
        )
    except ValueError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1)

    async def work(service: WorkflowService):
        doc_id = await service.start_workflow(request)
        with console.status("[bold green]Preparing script..."):
            await service.wait_background()
        return await service.store.read(doc_id)

    doc = _run(work)
    console.print(f"[green]Created workflow:[/green] {doc.id}")
    _print_summary(doc)


@app.command(name="continue")
def continue_workflow(
    workflow_id: str = typer.Argument(..., help="Workflow UUID"),
):
    """Run the next stage and wait for it to reach its checkpoint."""
    doc_id = _parse_id(workflow_id)

    async def work(service: WorkflowService):
        doc = await service.continue_workflow(doc_id)
        with console.status(f"[bold green]Running {doc.stage}..."):
            await service.wait_background()
        return await service.get_status(doc_id, repair=False)

    report = _run(work, wait=False)
    _print_summary(report.document, report.progress.percent)


@app.command()
def stop(
    workflow_id: str = typer.Argument(..., help="Workflow UUID"),
):
    """Stop a workflow; pending items stay pending and can be retried."""
    doc_id = _parse_id(workflow_id)
    doc = _run(lambda service: service.stop_workflow(doc_id), wait=False)
    console.print(f"[yellow]Stopped:[/yellow] {doc.id}")


@app.command()
def status(
    workflow_id: str = typer.Argument(..., help="Workflow UUID"),
    repair: bool = typer.Option(
        False,
        "--repair",
        "-r",
        help="Fail interrupted items and resume in-flight ones here. Only when no server runs the workflow",
    ),
):
    """Show workflow status, progress and items.

    A plain status read never changes the workflow, so it is safe while the
    API server is driving it.
    """
    doc_id = _parse_id(workflow_id)

    async def work(service: WorkflowService):
        if not repair:
            return await service.get_status(doc_id, repair=False)
        await service.get_status(doc_id)
        with console.status("[bold green]Resuming in-flight items..."):
            await service.wait_background()
        return await service.get_status(doc_id, repair=False)

    report = _run(work, wait=False)
    _print_summary(report.document, report.progress.percent)
    _print_items(report.document)


@app.command()
def retry(
    workflow_id: str = typer.Argument(..., help="Workflow UUID"),
    kind: str = typer.Argument(..., help="character, scene, video or task"),
    index: int = typer.Argument(..., help="Item position within its collection"),
    prompt: Optional[str] = typer.Option(None, "--prompt", "-p", help="Replacement prompt"),
    video_model: Optional[str] = typer.Option(None, "--video-model", help="Video model override"),
    video_mode: Optional[str] = typer.Option(None, "--video-mode", help="Video mode override"),
):
    """Regenerate one item and wait for the result."""
    doc_id = _parse_id(workflow_id)

    async def work(service: WorkflowService):
        await service.retry_item(
            doc_id, kind, index,
            new_prompt=prompt, video_model_name=video_model, video_mode=video_mode,
        )
        with console.status(f"[bold green]Regenerating {kind} {index}..."):
            await service.wait_background()
        return await service.store.read(doc_id)

    doc = _run(work, wait=False)
    item = doc.item_at(kind, index)
    color = _get_status_color(item.state)
    console.print(f"{kind} {index}: [{color}]{item.state}[/{color}]")
    if item.output_url:
        console.print(f"[green]Output:[/green] {item.output_url}")
    if item.error:
        console.print(f"[red]Error:[/red] {item.error}")


@app.command(name="list")
def list_workflows(
    kind: Optional[str] = typer.Option(None, "--kind", "-k", help="workflow or image_batch"),
    limit: int = typer.Option(50, "--limit", "-n", help="Maximum rows"),
):
    """List workflows, newest first."""
    docs = _run(lambda service: service.list_workflows(kind=kind, limit=limit), wait=False)

    if not docs:
        console.print("[yellow]No workflows found[/yellow]")
        return

    table = Table(show_header=True, header_style="bold blue")
    table.add_column("ID", style="dim")
    table.add_column("Kind")
    table.add_column("Title")
    table.add_column("Stage")
    table.add_column("Status")
    table.add_column("Created")

    for doc in docs:
        title = doc.title if len(doc.title) <= 40 else doc.title[:37] + "..."
        color = _get_status_color(doc.status)
        created = doc.created_at.strftime("%Y-%m-%d %H:%M") if doc.created_at else ""
        table.add_row(
            str(doc.id)[:8] + "...",
            doc.kind,
            title,
            doc.stage,
            f"[{color}]{doc.status}[/{color}]",
            created,
        )

    console.print(table)


@app.command()
def merge(
    workflow_id: str = typer.Argument(..., help="Workflow UUID"),
):
    """Merge the completed videos again."""
    doc_id = _parse_id(workflow_id)

    async def work(service: WorkflowService):
        await service.retry_merge(doc_id)
        with console.status("[bold green]Merging videos..."):
            await service.wait_background()
        return await service.store.read(doc_id)

    doc = _run(work, wait=False)
    if doc.merged_video_url and doc.status == "completed":
        console.print(f"[green]Merged:[/green] {doc.merged_video_url}")
    else:
        console.print(f"[red]Merge failed:[/red] {doc.error_message}")
        raise typer.Exit(code=1)


def _print_summary(doc: WorkflowDocument, percent: Optional[int] = None):
    color = _get_status_color(doc.status)
    lines = [
        f"[bold]ID:[/bold] {doc.id}",
        f"[bold]Kind:[/bold] {doc.kind}",
        f"[bold]Stage:[/bold] {doc.stage}",
        f"[bold]Status:[/bold] [{color}]{doc.status}[/{color}]",
    ]
    if doc.title:
        lines.insert(1, f"[bold]Title:[/bold] {doc.title}")
    if percent is not None:
        lines.append(f"[bold]Progress:[/bold] {percent}%")
    if doc.kind == "workflow":
        lines.append(f"[bold]Video Model:[/bold] {doc.config.video_model} ({doc.config.video_mode})")
    if doc.merged_video_url:
        lines.append(f"[bold]Output:[/bold] [green]{doc.merged_video_url}[/green]")
    if doc.error_message:
        lines.append(f"[bold]Error:[/bold] [red]{doc.error_message}[/red]")

    console.print(Panel("\n".join(lines), title="[bold]Workflow Status[/bold]", border_style="blue"))


def _print_items(doc: WorkflowDocument):
    for kind, (attr, _) in ITEM_KINDS.items():
        items = doc.items(kind)
        if not items:
            continue
        table = Table(title=attr.capitalize(), show_header=True, header_style="bold blue")
        table.add_column("#", justify="right")
        table.add_column("ID", style="dim")
        table.add_column("Status")
        table.add_column("Result")
        for index, item in enumerate(items):
            color = _get_status_color(item.state)
            result = item.output_url or item.error or ""
            table.add_row(str(index), item.id, f"[{color}]{item.state}[/{color}]", result)
        console.print(table)


def _get_status_color(status: str) -> str:
    """Get Rich color for a document or item status."""
    if status in ("completed", "done"):
        return "green"
    elif status in ("failed", "error"):
        return "red"
    elif status in ("running", "generating", "uploading", "submitting", "polling", "processing"):
        return "yellow"
    elif status in ("partial", "stopped"):
        return "magenta"
    elif status in ("pending", "waiting"):
        return "dim"
    else:
        return "white"
