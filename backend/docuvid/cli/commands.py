"""CLI commands for docuvid using Typer and Rich.

Commands:
- submit: Create a thought from a prompt and run its pipeline inline
- resume: Re-trigger the pipeline for an existing video
- status: Show a video's status, scenes and narration
- steps: Show a video's pipeline step log
- list: List recent videos
"""

import asyncio
import logging
import uuid

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from docuvid import validate_dependencies
from docuvid.config import settings
from docuvid.db import init_database
from docuvid.exceptions import InputTooLongError
from docuvid.orchestrator.pipeline import PipelineServices, run_pipeline
from docuvid.orchestrator.state import LAYER_NAMES, PIPELINE_STATES, status_to_layer
from docuvid.orchestrator.store import RunStateStore
from docuvid.pipeline.stages import StageContext, prepare_prompt

app = typer.Typer(name="docuvid", help="Documentary video generation pipeline")
console = Console()

_STATUS_STYLE = {
    "ready": "green",
    "failed": "red",
    "pending": "dim",
}


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging")):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _require_ffmpeg() -> None:
    try:
        validate_dependencies()
    except RuntimeError as e:
        console.print(f"[red]Error:[/red] {str(e)}")
        raise typer.Exit(code=1)


def _parse_uuid(value: str) -> uuid.UUID:
    try:
        return uuid.UUID(value)
    except ValueError:
        console.print(f"[red]Error:[/red] Invalid video UUID: {value}")
        raise typer.Exit(code=1)


@app.command()
def submit(
    prompt: str = typer.Argument(..., help="The thought to turn into a documentary"),
):
    """Create a thought from PROMPT and run the full pipeline in the foreground."""
    _require_ffmpeg()
    try:
        text = prepare_prompt(prompt, settings.pipeline.max_input_chars)
    except InputTooLongError as e:
        console.print(f"[red]Error:[/red] {str(e)}")
        raise typer.Exit(code=1)

    try:
        asyncio.run(_submit_async(text))
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted. Resume later with 'docuvid resume <video_id>'.[/yellow]")
        raise typer.Exit(code=130)


async def _submit_async(prompt: str):
    await init_database()
    store = RunStateStore()
    services = PipelineServices.from_settings()
    try:
        ctx = StageContext(prompt=prompt)
        analysis = await services.executors.analyze_prompt(ctx)
        ctx.analysis = analysis.artifact
        essay = await services.executors.draft_essay(ctx)
        thought = await store.create_thought(prompt, analysis=analysis.artifact, essay=essay.artifact)
        video = await store.upsert_run_for_thought(thought.id)
        console.print(f"[green]Created video:[/green] {video.id}")
        await _run_with_status(store, services, video.id)
    finally:
        await services.close()


@app.command()
def resume(
    video_id: str = typer.Argument(..., help="Video UUID to resume"),
):
    """Resume a failed or interrupted video from its first incomplete layer."""
    _require_ffmpeg()
    parsed = _parse_uuid(video_id)
    try:
        asyncio.run(_resume_async(parsed))
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted. Progress is saved; run resume again to continue.[/yellow]")
        raise typer.Exit(code=130)


async def _resume_async(video_id: uuid.UUID):
    await init_database()
    store = RunStateStore()
    video = await store.get_run(video_id)
    if video is None:
        console.print(f"[red]Error:[/red] Video not found: {video_id}")
        raise typer.Exit(code=1)

    services = PipelineServices.from_settings()
    try:
        await _run_with_status(store, services, video_id)
    finally:
        await services.close()


async def _run_with_status(store: RunStateStore, services: PipelineServices, video_id: uuid.UUID):
    with console.status("[bold green]Starting pipeline...") as status:
        result = await run_pipeline(
            video_id,
            store=store,
            services=services,
            progress_callback=lambda msg: status.update(f"[bold green]{msg}"),
        )

    video = await store.get_run(video_id)
    if result is None:
        console.print(f"[yellow]Video {video_id} is already being processed ({video.pipeline_status}).[/yellow]")
    elif result == "ready":
        console.print("[green]✓[/green] Documentary complete!")
        console.print(f"[green]Output:[/green] {video.final_video_url}")
    else:
        console.print(f"[red]✗ Failed at layer {video.error_layer}:[/red] {video.error_message}")
        console.print(f"[yellow]You can retry with:[/yellow] docuvid resume {video_id}")
        raise typer.Exit(code=1)


@app.command()
def status(
    video_id: str = typer.Argument(..., help="Video UUID"),
):
    """Show status, scenes and narration for a video."""
    asyncio.run(_status_async(_parse_uuid(video_id)))


async def _status_async(video_id: uuid.UUID):
    await init_database()
    detail = await RunStateStore().get_run_detail(video_id)
    if detail is None:
        console.print(f"[red]Error:[/red] Video not found: {video_id}")
        raise typer.Exit(code=1)

    video = detail.video
    layer = status_to_layer(video.pipeline_status, video.error_layer)
    style = _STATUS_STYLE.get(video.pipeline_status, "yellow")
    lines = [
        f"Status: [{style}]{video.pipeline_status}[/{style}] "
        f"- {PIPELINE_STATES.get(video.pipeline_status, 'unknown')}",
        f"Layer: {layer} ({LAYER_NAMES[layer]})",
    ]
    if video.pipeline_status == "failed":
        lines.append(f"Error: {video.error_message}")
    if video.final_video_url:
        lines.append(f"Output: {video.final_video_url}")
    if video.total_duration:
        lines.append(f"Duration: {video.total_duration:.1f}s")
    console.print(Panel("\n".join(lines), title=f"Video {video.id}"))

    table = Table(title="Scenes")
    table.add_column("#", justify="right")
    table.add_column("Status")
    table.add_column("Job")
    table.add_column("Description")
    for scene in detail.scenes:
        scene_style = _STATUS_STYLE.get(scene.status, "yellow")
        table.add_row(
            str(scene.scene_index),
            f"[{scene_style}]{scene.status}[/{scene_style}]",
            scene.external_job_id or "-",
            (scene.error_message or scene.description)[:60],
        )
    console.print(table)

    for segment in detail.segments:
        console.print(f"Narration {segment.segment_type}: {segment.status}")


@app.command()
def steps(
    video_id: str = typer.Argument(..., help="Video UUID"),
):
    """Show the pipeline step log for a video."""
    asyncio.run(_steps_async(_parse_uuid(video_id)))


async def _steps_async(video_id: uuid.UUID):
    await init_database()
    rows = await RunStateStore().list_steps(video_id)
    if not rows:
        console.print("[yellow]No steps recorded.[/yellow]")
        return

    table = Table(title=f"Pipeline steps for {video_id}")
    table.add_column("Layer", justify="right")
    table.add_column("Step")
    table.add_column("Duration", justify="right")
    table.add_column("Outcome")
    table.add_column("At")
    for row in rows:
        payload = row.payload or {}
        outcome = "fallback" if payload.get("used_fallback") else ("ok" if payload.get("ok", True) else "failed")
        table.add_row(
            str(row.layer),
            row.step,
            f"{row.duration_ms / 1000:.1f}s",
            outcome,
            row.created_at.strftime("%Y-%m-%d %H:%M:%S"),
        )
    console.print(table)


@app.command(name="list")
def list_videos(
    limit: int = typer.Option(20, "--limit", "-n", help="Number of videos to show"),
):
    """List recent videos."""
    asyncio.run(_list_async(limit))


async def _list_async(limit: int):
    await init_database()
    videos = await RunStateStore().list_runs(limit=limit)
    if not videos:
        console.print("[yellow]No videos yet.[/yellow]")
        return

    table = Table(title="Videos")
    table.add_column("ID")
    table.add_column("Status")
    table.add_column("Layer", justify="right")
    table.add_column("Created")
    for video in videos:
        style = _STATUS_STYLE.get(video.pipeline_status, "yellow")
        table.add_row(
            str(video.id),
            f"[{style}]{video.pipeline_status}[/{style}]",
            str(status_to_layer(video.pipeline_status, video.error_layer)),
            video.created_at.strftime("%Y-%m-%d %H:%M") if video.created_at else "",
        )
    console.print(table)


if __name__ == "__main__":
    app()
