"""CLI commands for clipforge using Typer and Rich.

Implements 4 CLI commands:
- register: Register a pending clip
- render: Render vertical and thumbnail derivatives for a clip
- status: Show clip status and the latest run
- jobs: List the render job ledger for a clip
"""

import asyncio
import logging
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from clipforge import check_credentials
from clipforge.config import settings
from clipforge.db import async_session, init_database, shutdown
from clipforge.orchestrator.pipeline import build_orchestrator
from clipforge.schemas.clip_request import ClipRequest
from clipforge.services.job_store import ClipStore, JobStore

app = typer.Typer(name="clipforge", help="Export-ready clip derivatives from a source video")
console = Console()


@app.callback()
def main(
    log_level: str = typer.Option(settings.server.log_level, "--log-level", help="Logging level"),
):
    """Configure logging for every command."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.command()
def register(
    clip_id: Optional[str] = typer.Option(None, "--id", help="Clip id (generated if omitted)"),
    title: Optional[str] = typer.Option(None, "--title", "-t", help="Clip title"),
    source_media_id: Optional[str] = typer.Option(None, "--source-media-id", help="Source media id"),
):
    """Register a pending clip so it can be rendered."""
    asyncio.run(_register_async(clip_id, title, source_media_id))


async def _register_async(clip_id: Optional[str], title: Optional[str], source_media_id: Optional[str]):
    """Async implementation of register command."""
    await init_database()
    try:
        clips = ClipStore(async_session)
        if clip_id and await clips.get_clip(clip_id):
            console.print(f"[red]Error:[/red] Clip already exists: {clip_id}")
            raise typer.Exit(code=1)
        clip = await clips.create_clip(clip_id, title=title, source_media_id=source_media_id)
        console.print(f"[green]Registered clip:[/green] {clip.id}")
    finally:
        await shutdown()


@app.command()
def render(
    clip_id: str = typer.Argument(..., help="Clip id to render"),
    source_url: str = typer.Option(..., "--source-url", "-u", help="Public URL of the source video"),
    start: float = typer.Option(..., "--start", "-s", help="Clip start in seconds"),
    duration: float = typer.Option(..., "--duration", "-d", help="Clip length in seconds"),
    title: Optional[str] = typer.Option(None, "--title", "-t", help="Title overlay text"),
    hook: Optional[str] = typer.Option(None, "--hook", help="Hook line (title fallback)"),
    transcript: Optional[str] = typer.Option(None, "--transcript", help="Transcript excerpt for captions"),
    fail_fast: Optional[bool] = typer.Option(
        None, "--fail-fast/--no-fail-fast", help="Stop at the first failing render (default from config)",
    ),
    deadline: Optional[float] = typer.Option(None, "--deadline", help="Run deadline in seconds"),
):
    """Render the vertical and thumbnail derivatives of a registered clip.

    Runs captioning, one shared source upload and both renders in-process,
    then prints both derivative URLs or the step-tagged failure.
    """
    try:
        request = ClipRequest(
            clip_id=clip_id,
            source_video_url=source_url,
            start_time=start,
            duration=duration,
            title=title,
            hook=hook,
            transcript=transcript,
        )
    except ValueError as e:
        console.print(f"[red]Error:[/red] Invalid render request: {e}")
        raise typer.Exit(code=1)

    credentials = check_credentials(settings)
    if not credentials["stream"]:
        console.print("[yellow]Warning:[/yellow] Cloudflare Stream credentials are not configured")

    asyncio.run(_render_async(request, fail_fast, deadline))


async def _render_async(request: ClipRequest, fail_fast: Optional[bool], deadline: Optional[float]):
    """Async implementation of render command."""
    await init_database()

    orchestrator = build_orchestrator(settings, async_session)
    if fail_fast is not None:
        orchestrator.fail_fast = fail_fast
    if deadline is not None:
        orchestrator.deadline_seconds = deadline

    try:
        with console.status("[bold green]Rendering clip derivatives..."):
            outcome = await orchestrator.render_clip(request)
    finally:
        await orchestrator.aclose()
        await shutdown()

    if outcome.success:
        console.print("[green]✓[/green] Clip derivatives ready!")
        console.print(f"[green]Vertical:[/green]  {outcome.vertical.url}")
        console.print(f"[green]Thumbnail:[/green] {outcome.thumbnail.url}")
        if outcome.captions is not None:
            console.print(f"[dim]Captions: {len(outcome.captions)} ({outcome.captions.source})[/dim]")
        return

    error = outcome.error
    console.print(f"[red]✗ Render failed at[/red] [bold]{error.step}[/bold]: {error.message}")
    if error.upstream_payload:
        console.print(f"[dim]Upstream payload: {error.upstream_payload}[/dim]")
    for name, result in outcome.results.items():
        console.print(f"[yellow]{name} still rendered:[/yellow] {result.url}")
    raise typer.Exit(code=1)


@app.command()
def status(
    clip_id: str = typer.Argument(..., help="Clip id"),
):
    """Show clip status and the latest render run."""
    asyncio.run(_status_async(clip_id))


async def _status_async(clip_id: str):
    """Async implementation of status command."""
    await init_database()
    try:
        clips = ClipStore(async_session)
        clip = await clips.get_clip(clip_id)
        if clip is None:
            console.print(f"[red]Error:[/red] Clip not found: {clip_id}")
            raise typer.Exit(code=1)
        latest_run = await clips.latest_run(clip_id)
    finally:
        await shutdown()

    status_color = _get_status_color(clip.status)
    info_lines = [
        f"[bold]Clip ID:[/bold] {clip.id}",
        f"[bold]Title:[/bold] {clip.title or '-'}",
        f"[bold]Status:[/bold] [{status_color}]{clip.status}[/{status_color}]",
        f"[bold]Updated:[/bold] {clip.updated_at.strftime('%Y-%m-%d %H:%M:%S')}",
    ]
    if clip.vertical_url:
        info_lines.append(f"[bold]Vertical:[/bold] {clip.vertical_url}")
    if clip.thumbnail_url:
        info_lines.append(f"[bold]Thumbnail:[/bold] {clip.thumbnail_url}")
    if clip.error_message:
        info_lines.append(f"[bold red]Error:[/bold red] {clip.error_message}")

    if latest_run and latest_run.total_duration_seconds is not None:
        info_lines.append(f"[bold]Last Run Duration:[/bold] {latest_run.total_duration_seconds:.1f}s")
        if latest_run.captions_degraded:
            info_lines.append("[yellow]Captions used the transcript fallback[/yellow]")

    panel = Panel(
        "\n".join(info_lines),
        title="[bold]Clip Status[/bold]",
        border_style="blue",
    )
    console.print(panel)


@app.command()
def jobs(
    clip_id: str = typer.Argument(..., help="Clip id"),
):
    """List render jobs and their assets for a clip."""
    asyncio.run(_jobs_async(clip_id))


async def _jobs_async(clip_id: str):
    """Async implementation of jobs command."""
    await init_database()
    try:
        rows = await JobStore(async_session).list_jobs(clip_id)
    finally:
        await shutdown()

    if not rows:
        console.print(f"[yellow]No render jobs found for clip {clip_id}[/yellow]")
        return

    table = Table(show_header=True, header_style="bold blue")
    table.add_column("Job", style="dim")
    table.add_column("Format")
    table.add_column("Status")
    table.add_column("Time")
    table.add_column("Asset / Error")

    for job, assets in rows:
        status_color = _get_status_color(job.status)
        elapsed = job.processing_time_seconds
        if assets:
            detail = assets[0].storage_path
        else:
            detail = job.error_message or ""
        table.add_row(
            str(job.id)[:8] + "...",
            (job.params or {}).get("output_format", "?"),
            f"[{status_color}]{job.status}[/{status_color}]",
            f"{elapsed:.2f}s" if elapsed is not None else "-",
            detail,
        )

    console.print(table)


def _get_status_color(status: str) -> str:
    """Get Rich color for a clip or job status.

    Color coding:
    - ready/completed: green
    - failed: red
    - processing: yellow
    - pending: dim
    """
    if status in ("ready", "completed"):
        return "green"
    elif status == "failed":
        return "red"
    elif status == "processing":
        return "yellow"
    elif status == "pending":
        return "dim"
    else:
        return "white"
