"""CLI interface for geomigrate: the worker process plus operator commands."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Annotated, Optional, TypeVar

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from geomigrate.config import GeomigrateConfig, load_config
from geomigrate.crawl.models import CrawlConfig
from geomigrate.generation.models import DraftContentType, GenerationConfig
from geomigrate.jobs.control import (
    JobControlError,
    cancel_job,
    enqueue_job,
    request_pause,
    resume_job,
)
from geomigrate.jobs.payloads import (
    AnalyzeJobPayload,
    CrawlJobPayload,
    GenerateJobPayload,
    MatchJobPayload,
)
from geomigrate.jobs.progress import CrawlProgress, parse_progress
from geomigrate.jobs.queue import QueueConnectionError, QueueCounts, SqlWorkQueue, WorkQueue
from geomigrate.matching.matcher import MatchConfig
from geomigrate.shared.embeddings import EmbeddingError
from geomigrate.store.base import NotFoundError
from geomigrate.store.models import Job, JobType
from geomigrate.store.retry import StoreCaller

app = typer.Typer(
    name="geomigrate",
    help="Crawl, analyze, match and regenerate legacy website content.",
)

console = Console()
logger = logging.getLogger(__name__)

T = TypeVar("T")

ConfigOption = Annotated[
    Optional[Path],
    typer.Option("--config", "-c", help="Path to a geomigrate TOML config file."),
]

_NOISY_LOGGERS = ("httpx", "anthropic", "sqlalchemy.engine")


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        from geomigrate import __version__

        console.print(f"geomigrate {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit.",
            callback=version_callback,
            is_eager=True,
        ),
    ] = False,
) -> None:
    """geomigrate - legacy website migration pipeline."""


# ── Helpers ──────────────────────────────────────────────────────


def setup_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
        force=True,
    )
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def _load(config_path: Path | None) -> GeomigrateConfig:
    config = load_config(config_path)
    if not config.queue_url:
        console.print(
            "[red]Error:[/red] No queue connection configured. "
            "Set DATABASE_URL or GEOMIGRATE_QUEUE_URL."
        )
        raise typer.Exit(1)
    return config


def connect(config: GeomigrateConfig) -> tuple[StoreCaller, WorkQueue]:
    """Open the job store and the work queue used by operator commands."""
    from geomigrate.store.pgvector import PgvectorStore

    store = PgvectorStore(config.database.url, embedding_dim=config.database.embedding_dim)
    db = StoreCaller(
        store,
        max_attempts=config.database.retry_attempts,
        delay=config.database.retry_delay_seconds,
    )
    queue = SqlWorkQueue(
        config.queue_url,
        poll_interval=config.queue.poll_interval_seconds,
        visibility_timeout=config.queue.visibility_timeout_seconds,
    )
    return db, queue


def _with_services(
    config: GeomigrateConfig,
    action: Callable[[StoreCaller, WorkQueue], Awaitable[T]],
) -> T:
    async def _run() -> T:
        db, queue = connect(config)
        await queue.connect()
        try:
            return await action(db, queue)
        finally:
            await queue.close()

    try:
        return asyncio.run(_run())
    except QueueConnectionError as exc:
        console.print(f"[red]Error:[/red] {exc}")
        raise typer.Exit(1) from exc
    except (NotFoundError, JobControlError) as exc:
        console.print(f"[red]Error:[/red] {exc}")
        raise typer.Exit(1) from exc


def _print_enqueued(job: Job) -> None:
    console.print(f"[green]Enqueued[/green] {job.job_type.value} job [bold]{job.id}[/bold]")


def _print_job(job: Job) -> None:
    table = Table(title=f"Job {job.id}", show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("Type", job.job_type.value)
    table.add_row("Status", job.status.value)
    table.add_row("Progress", f"{job.progress}%")
    total = "?" if job.total_items is None else str(job.total_items)
    table.add_row("Items", f"{job.processed_items}/{total}")
    if job.error_message:
        table.add_row("Error", job.error_message)

    progress = parse_progress(job.metadata)
    if progress is not None:
        table.add_row("Status message", progress.status_message)
        table.add_row("Errors logged", str(len(progress.errors)))
        if isinstance(progress, CrawlProgress):
            table.add_row("Current URL", progress.current_url or "-")
            table.add_row("Queue size", str(progress.queue_size))
            table.add_row("Links discovered", str(progress.total_links_discovered))
            table.add_row("Failed pages", str(progress.failed_pages))
            table.add_row("Reused pages", str(progress.reused_pages))
        else:
            table.add_row("Failed items", str(progress.failed_items))
    if job.metadata.get("paused"):
        table.add_row("Paused", "yes")
    console.print(table)


# ── Worker process ───────────────────────────────────────────────


@app.command()
def workers(
    config_path: ConfigOption = None,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Debug logging.")] = False,
) -> None:
    """Start one consumer per job type and run until interrupted."""
    setup_logging(verbose)
    config = _load(config_path)

    from geomigrate.jobs.runner import WorkerPool, build_context

    try:
        ctx = build_context(config)
    except (QueueConnectionError, EmbeddingError) as exc:
        console.print(f"[red]Error:[/red] {exc}")
        raise typer.Exit(1) from exc

    try:
        asyncio.run(WorkerPool(ctx).run())
    except QueueConnectionError as exc:
        console.print(f"[red]Error:[/red] {exc}")
        raise typer.Exit(1) from exc


# ── Enqueue commands ─────────────────────────────────────────────


@app.command()
def crawl(
    project_id: Annotated[str, typer.Argument(help="Project the pages belong to.")],
    base_url: Annotated[str, typer.Argument(help="Seed URL of the legacy site.")],
    max_pages: Annotated[Optional[int], typer.Option("--max-pages", min=1)] = None,
    max_depth: Annotated[Optional[int], typer.Option("--max-depth", min=0)] = None,
    include: Annotated[
        Optional[list[str]], typer.Option("--include", help="Glob on the URL path; repeatable.")
    ] = None,
    exclude: Annotated[
        Optional[list[str]], typer.Option("--exclude", help="Glob on the URL path; repeatable.")
    ] = None,
    rate_limit_ms: Annotated[Optional[int], typer.Option("--rate-limit-ms", min=0)] = None,
    config_path: ConfigOption = None,
) -> None:
    """Enqueue a breadth-first crawl of BASE_URL."""
    config = _load(config_path)
    defaults = config.crawl
    payload = CrawlJobPayload(
        project_id=project_id,
        base_url=base_url,
        config=CrawlConfig(
            max_pages=max_pages if max_pages is not None else defaults.max_pages,
            max_depth=max_depth if max_depth is not None else defaults.max_depth,
            include_patterns=include or [],
            exclude_patterns=exclude or [],
            rate_limit_ms=rate_limit_ms if rate_limit_ms is not None else defaults.rate_limit_ms,
        ),
    )
    job = _with_services(
        config, lambda db, queue: enqueue_job(db, queue, JobType.CRAWL, payload, project_id)
    )
    _print_enqueued(job)


@app.command()
def analyze(
    project_id: Annotated[str, typer.Argument(help="Project whose crawled pages to analyze.")],
    page_ids: Annotated[
        Optional[list[str]], typer.Option("--page", help="Limit to these page ids; repeatable.")
    ] = None,
    config_path: ConfigOption = None,
) -> None:
    """Enqueue analysis of crawled pages."""
    config = _load(config_path)
    payload = AnalyzeJobPayload(project_id=project_id, page_ids=page_ids or None)
    job = _with_services(
        config, lambda db, queue: enqueue_job(db, queue, JobType.ANALYZE, payload, project_id)
    )
    _print_enqueued(job)


@app.command()
def match(
    pillar_id: Annotated[str, typer.Argument(help="Pillar to match pages against.")],
    min_relevance: Annotated[
        Optional[float], typer.Option("--min-relevance", min=0.0, max=1.0)
    ] = None,
    max_results: Annotated[Optional[int], typer.Option("--max-results", min=1)] = None,
    config_path: ConfigOption = None,
) -> None:
    """Enqueue matching of analyzed pages to a pillar."""
    config = _load(config_path)
    payload = MatchJobPayload(
        pillar_id=pillar_id,
        config=MatchConfig(
            min_relevance=(
                min_relevance if min_relevance is not None else config.matching.min_relevance
            ),
            max_results=max_results if max_results is not None else config.matching.max_results,
        ),
    )
    job = _with_services(
        config, lambda db, queue: enqueue_job(db, queue, JobType.MATCH, payload)
    )
    _print_enqueued(job)


@app.command()
def generate(
    pillar_id: Annotated[str, typer.Argument(help="Pillar the draft is written for.")],
    source_page_ids: Annotated[
        list[str], typer.Option("--source", "-s", help="Source page id; repeatable.")
    ],
    content_type: Annotated[
        DraftContentType, typer.Option("--type", "-t", help="Draft shape.")
    ] = DraftContentType.PILLAR_PAGE,
    title: Annotated[Optional[str], typer.Option("--title", help="Title to use.")] = None,
    guidance: Annotated[
        Optional[str], typer.Option("--guidance", help="Extra instructions for the writer.")
    ] = None,
    config_path: ConfigOption = None,
) -> None:
    """Enqueue generation of one draft from source pages."""
    config = _load(config_path)
    payload = GenerateJobPayload(
        pillar_id=pillar_id,
        config=GenerationConfig(
            content_type=content_type,
            source_page_ids=source_page_ids,
            title_suggestion=title,
            additional_guidance=guidance,
        ),
    )
    job = _with_services(
        config, lambda db, queue: enqueue_job(db, queue, JobType.GENERATE, payload)
    )
    _print_enqueued(job)


# ── Job control ──────────────────────────────────────────────────


@app.command()
def status(
    job_id: Annotated[str, typer.Argument(help="Job id.")],
    as_json: Annotated[bool, typer.Option("--json", help="Print the raw job record.")] = False,
    config_path: ConfigOption = None,
) -> None:
    """Show a job's status and progress."""
    config = _load(config_path)

    async def _get(db: StoreCaller, queue: WorkQueue) -> Job:
        return await db(db.store.require_job, job_id)

    job = _with_services(config, _get)
    if as_json:
        console.print_json(json.dumps(job.model_dump(mode="json")))
    else:
        _print_job(job)


@app.command()
def cancel(
    job_id: Annotated[str, typer.Argument(help="Job id.")],
    config_path: ConfigOption = None,
) -> None:
    """Cancel a pending or running job."""
    config = _load(config_path)
    _with_services(config, lambda db, queue: cancel_job(db, queue, job_id))
    console.print(f"Cancelled job [bold]{job_id}[/bold]")


@app.command()
def pause(
    job_id: Annotated[str, typer.Argument(help="Job id.")],
    config_path: ConfigOption = None,
) -> None:
    """Ask a running job to pause after its current item."""
    config = _load(config_path)
    _with_services(config, lambda db, queue: request_pause(db, job_id))
    console.print(f"Pause requested for job [bold]{job_id}[/bold]")


@app.command()
def resume(
    job_id: Annotated[str, typer.Argument(help="Job id.")],
    config_path: ConfigOption = None,
) -> None:
    """Re-enqueue a paused job."""
    config = _load(config_path)
    _with_services(config, lambda db, queue: resume_job(db, queue, job_id))
    console.print(f"Resumed job [bold]{job_id}[/bold]")


@app.command()
def health(config_path: ConfigOption = None) -> None:
    """Show message counts for every job queue."""
    config = _load(config_path)

    async def _counts(db: StoreCaller, queue: WorkQueue) -> dict[JobType, QueueCounts]:
        return {jt: await queue.counts(jt) for jt in JobType}

    counts = _with_services(config, _counts)
    table = Table(title="Work queues")
    for column in ("Queue", "Waiting", "Active", "Completed", "Failed"):
        table.add_column(column)
    for jt, c in counts.items():
        table.add_row(jt.value, str(c.waiting), str(c.active), str(c.completed), str(c.failed))
    console.print(table)


if __name__ == "__main__":
    app()
