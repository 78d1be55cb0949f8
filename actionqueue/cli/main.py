import asyncio
import json
import logging
import sys

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from ..batch.bulk_dispatcher import BulkDispatcher
from ..batch.errors import BatchError
from ..batch.handler import BatchOperationHandler
from ..batch.interfaces import ActionDefinition, StaticActionCatalog
from ..batch.rate_limit import InMemoryRateLimitTracker
from ..batch.schemas import BATCH_OPERATION_JOB_TYPE
from ..batch.service import BatchService
from ..config.settings import (
    Settings, config_path, import_object, load_config, load_settings, parse_value, save_config,
)
from ..models.errors import JobError
from ..models.job import ItemStatus, JobStatus
from ..scheduling.job_queue import JobQueue
from ..scheduling.registry import HandlerRegistry
from ..storage.database import Storage
from ..workers.worker import Worker, WorkerManager

console = Console()
logger = logging.getLogger(__name__)

STATUS_STYLES = {
    "queued": "yellow",
    "running": "cyan",
    "completed": "green",
    "failed": "red",
    "cancelled": "magenta",
    "pending": "yellow",
    "skipped": "magenta",
}


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
        force=True,
    )


def fail(message: str) -> None:
    console.print(f"[red]{escape(message)}[/red]")
    sys.exit(1)


def styled(status) -> str:
    value = getattr(status, "value", status)
    style = STATUS_STYLES.get(value, "white")
    return f"[{style}]{value}[/{style}]"


def fmt_time(value) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value else ""


def truncate(value, width: int = 50) -> str:
    if value is None:
        return ""
    text = value if isinstance(value, str) else json.dumps(value)
    return escape(text[:width] + "..." if len(text) > width else text)


def build_registry(settings: Settings, queue: JobQueue) -> HandlerRegistry:
    """Registry with every handler the configuration can compose."""
    registry = HandlerRegistry()
    if settings.gateway_factory:
        gateway = import_object(settings.gateway_factory)()
        credentials = import_object(settings.credential_factory)() if settings.credential_factory else None
        dispatcher = BulkDispatcher(InMemoryRateLimitTracker())
        registry.register(BATCH_OPERATION_JOB_TYPE, BatchOperationHandler(gateway, dispatcher, credentials))
    else:
        logger.warning("No gateway-factory configured; %s jobs will not be handled", BATCH_OPERATION_JOB_TYPE)
    return registry


class AppContext:
    """Lazily built collaborators shared by the commands of one invocation."""

    def __init__(self, settings: Settings, db: str = None):
        self.settings = settings
        self.db = db
        self._storage = None

    @property
    def storage(self) -> Storage:
        if self._storage is None:
            self._storage = Storage(self.db or self.settings.database_url)
        return self._storage

    @property
    def queue(self) -> JobQueue:
        return JobQueue(
            self.storage,
            backoff_base_seconds=self.settings.backoff_base_seconds,
            backoff_max_seconds=self.settings.backoff_max_seconds,
        )


pass_app = click.make_pass_decorator(AppContext)


@click.group()
@click.option('--db', envvar='ACTIONQUEUE_DB', help='Database path or URL (overrides database-url)')
@click.pass_context
def cli(ctx, db):
    """actionqueue - background jobs and batch action dispatch"""
    settings = load_settings()
    setup_logging(settings.log_level)
    ctx.obj = AppContext(settings, db)


@cli.command()
@click.argument('job_type')
@click.option('--input', 'input_json', help='Job input as a JSON object')
@click.option('--tenant', help='Tenant id (omit for system jobs)')
@click.option('--max-attempts', type=int, help='Attempts before the job fails permanently')
@click.option('--timeout', type=int, help='Seconds a running job may take')
@pass_app
def enqueue(app, job_type, input_json, tenant, max_attempts, timeout):
    """Add a new job to the queue"""
    try:
        job_input = json.loads(input_json) if input_json else None
        if job_input is not None and not isinstance(job_input, dict):
            raise ValueError("Job input must be a JSON object")
        job = asyncio.run(app.queue.enqueue({
            "type": job_type,
            "tenant_id": tenant,
            "input": job_input,
            "max_attempts": max_attempts or app.settings.max_attempts,
            "timeout_seconds": timeout or app.settings.timeout_seconds,
        }))
    except ValueError as e:
        fail(f"Error enqueueing job: {e}")
    console.print(f"[green]Job {job.id} enqueued successfully[/green]")


@cli.group()
def worker():
    """Run the worker cycle"""
    pass


@worker.command('run-once')
@click.option('--type', 'job_type', help='Only claim jobs of this type')
@click.option('--limit', type=int, help='Maximum jobs to claim')
@pass_app
def worker_run_once(app, job_type, limit):
    """Run a single worker cycle (for cron-style triggering)"""
    queue = app.queue
    runner = Worker(0, queue, build_registry(app.settings, queue), app.settings.claim_limit)
    result = asyncio.run(runner.run_cycle(job_type, limit))

    console.print(
        f"Claimed [cyan]{result.claimed}[/cyan], succeeded [green]{result.succeeded}[/green], "
        f"failed [red]{result.failed}[/red], throttled [yellow]{result.throttled}[/yellow], "
        f"timed out [magenta]{result.timed_out}[/magenta]"
    )
    if result.jobs:
        table = Table(title="Processed Jobs")
        table.add_column("ID", style="cyan")
        table.add_column("Type", style="magenta")
        table.add_column("Result")
        table.add_column("Error", style="red")
        for outcome in result.jobs:
            table.add_row(outcome.id, outcome.type, outcome.result, truncate(outcome.error))
        console.print(table)


@worker.command('start')
@click.option('--count', default=1, help='Number of workers to start')
@click.option('--interval', type=float, help='Seconds between cycles')
@click.option('--type', 'job_type', help='Only claim jobs of this type')
@pass_app
def worker_start(app, count, interval, job_type):
    """Start workers and run until interrupted"""
    queue = app.queue
    manager = WorkerManager(queue, build_registry(app.settings, queue), app.settings.claim_limit)
    manager.install_signal_handlers()
    manager.start_workers(count, interval or app.settings.poll_interval, job_type)
    console.print(f"[green]Started {count} worker(s)[/green]")
    manager.wait()


@cli.command()
@pass_app
def status(app):
    """Show job counts per status"""
    table = Table(title="Queue Status")
    table.add_column("Status", style="cyan")
    table.add_column("Count", style="magenta")
    for job_status, count in app.storage.count_jobs_by_status().items():
        table.add_row(job_status.value, str(count))
    console.print(table)


@cli.command(name='list')
@click.option('--status', 'job_status', type=click.Choice([s.value for s in JobStatus]), help='Filter by status')
@click.option('--type', 'job_type', help='Filter by job type')
@click.option('--tenant', help='Filter by tenant')
@click.option('--limit', default=20, help='Page size (1-100)')
@click.option('--cursor', help='Id of the last job of the previous page')
@pass_app
def list_jobs(app, job_status, job_type, tenant, limit, cursor):
    """List jobs, newest first"""
    try:
        page = app.storage.list_jobs(
            tenant_id=tenant,
            job_type=job_type,
            status=JobStatus(job_status) if job_status else None,
            cursor=cursor,
            limit=limit,
        )
    except JobError as e:
        fail(e.message)

    if not page.jobs:
        console.print("[yellow]No jobs found[/yellow]")
        return

    table = Table(title=f"Jobs ({page.total_count} total)")
    table.add_column("ID", style="cyan")
    table.add_column("Type", style="magenta")
    table.add_column("Status")
    table.add_column("Progress", style="blue")
    table.add_column("Attempts", style="yellow")
    table.add_column("Created At", style="blue")
    for job in page.jobs:
        table.add_row(
            job.id,
            job.type,
            styled(job.status),
            f"{job.progress}%",
            f"{job.attempts}/{job.max_attempts}",
            fmt_time(job.created_at),
        )
    console.print(table)
    if page.has_more:
        console.print(f"Next page: --cursor {page.next_cursor}")


@cli.command()
@click.argument('job_id')
@pass_app
def show(app, job_id):
    """Show one job and its item counts"""
    job = app.storage.get_job(job_id)
    if job is None:
        fail(f"Job {job_id} not found")

    table = Table(title=f"Job {job.id}", show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Type", job.type)
    table.add_row("Tenant", job.tenant_id or "")
    table.add_row("Status", styled(job.status))
    table.add_row("Progress", f"{job.progress}%")
    table.add_row("Attempts", f"{job.attempts}/{job.max_attempts}")
    table.add_row("Timeout", f"{job.timeout_seconds}s")
    table.add_row("Next Run At", fmt_time(job.next_run_at))
    table.add_row("Started At", fmt_time(job.started_at))
    table.add_row("Completed At", fmt_time(job.completed_at))
    table.add_row("Details", truncate(job.progress_details, 120))
    table.add_row("Output", truncate(job.output, 120))
    table.add_row("Error", truncate(job.error, 120))
    console.print(table)

    counts = app.storage.count_items_by_status(job_id)
    if counts.total:
        console.print(
            f"Items: {counts.total} total, {counts.pending} pending, {counts.running} running, "
            f"{counts.completed} completed, {counts.failed} failed, {counts.skipped} skipped"
        )


@cli.command()
@click.argument('job_id')
@click.option('--status', 'item_status', type=click.Choice([s.value for s in ItemStatus]), help='Filter by status')
@click.option('--limit', default=20, help='Page size (1-100)')
@click.option('--cursor', help='Id of the last item of the previous page')
@pass_app
def items(app, job_id, item_status, limit, cursor):
    """List the items of a batch job"""
    try:
        page = app.storage.list_items(
            job_id,
            status=ItemStatus(item_status) if item_status else None,
            cursor=cursor,
            limit=limit,
        )
    except JobError as e:
        fail(e.message)

    if not page.items:
        console.print("[yellow]No items found[/yellow]")
        return

    table = Table(title=f"Items of {job_id} ({page.total_count} total)")
    table.add_column("#", style="blue")
    table.add_column("ID", style="cyan")
    table.add_column("Status")
    table.add_column("Input", style="magenta")
    table.add_column("Result")
    for item in page.items:
        table.add_row(
            str(item.position),
            item.id,
            styled(item.status),
            truncate(item.input),
            truncate(item.error if item.error else item.output),
        )
    console.print(table)
    if page.has_more:
        console.print(f"Next page: --cursor {page.next_cursor}")


@cli.command()
@click.argument('job_id')
@pass_app
def cancel(app, job_id):
    """Cancel a queued or running job"""
    try:
        asyncio.run(app.queue.cancel_job(job_id))
    except JobError as e:
        fail(e.message)
    console.print(f"[green]Job {job_id} cancelled[/green]")


@cli.command()
@click.argument('job_id')
@pass_app
def retry(app, job_id):
    """Move a failed job back to the queue"""
    try:
        asyncio.run(app.queue.retry_job(job_id))
    except JobError as e:
        fail(e.message)
    console.print(f"[green]Job {job_id} moved back to the queue[/green]")


@cli.command()
@click.argument('job_id')
@pass_app
def delete(app, job_id):
    """Delete a job and its items"""
    try:
        app.storage.delete_job(job_id)
    except JobError as e:
        fail(e.message)
    console.print(f"[green]Job {job_id} deleted[/green]")


@cli.group()
def batch():
    """Submit batch operations"""
    pass


@batch.command('submit')
@click.argument('action_file', type=click.Path(exists=True, dir_okay=False))
@click.argument('items_file', type=click.Path(exists=True, dir_okay=False))
@click.option('--tenant', required=True, help='Tenant submitting the batch')
@click.option('--concurrency', type=int, help='Parallel item invocations (1-20)')
@click.option('--delay-ms', type=int, help='Pause between item invocations (0-5000)')
@click.option('--timeout', type=int, help='Per-item timeout in seconds')
@click.option('--skip-invalid', is_flag=True, help='Enqueue valid items and drop the rest')
@pass_app
def batch_submit(app, action_file, items_file, tenant, concurrency, delay_ms, timeout, skip_invalid):
    """Enqueue a batch job for the action in ACTION_FILE with the items in ITEMS_FILE"""
    try:
        with open(action_file, 'r') as f:
            action = ActionDefinition.model_validate(json.load(f))
        with open(items_file, 'r') as f:
            raw_items = json.load(f)
    except ValueError as e:
        fail(f"Error reading input files: {e}")

    if not isinstance(raw_items, list):
        fail("Items file must contain a JSON array")

    config = {"skip_invalid_items": skip_invalid}
    for key, value in (("concurrency", concurrency), ("delay_ms", delay_ms), ("timeout_seconds", timeout)):
        if value is not None:
            config[key] = value

    validator = import_object(app.settings.validator_factory)() if app.settings.validator_factory else None
    service = BatchService(app.queue, StaticActionCatalog([action]), validator)
    try:
        response = asyncio.run(service.submit_batch(tenant, {
            "integration_slug": action.integration_slug,
            "action_slug": action.slug,
            "items": [item if isinstance(item, dict) and "input" in item else {"input": item} for item in raw_items],
            "config": config,
        }))
    except BatchError as e:
        console.print(f"[red]{e.message}[/red]")
        if e.details:
            console.print_json(data=e.details)
        sys.exit(1)

    route = "bulk" if response.has_bulk_route else "individual"
    console.print(
        f"[green]Batch job {response.job_id} queued with {response.item_count} item(s) ({route} route)[/green]"
    )


@cli.group()
def config():
    """Manage configuration"""
    pass


@config.command('get')
@click.argument('key')
def config_get(key):
    """Get a configuration value"""
    value = load_config().get(key)
    if value is None:
        console.print(f"[yellow]Configuration key '{key}' not found[/yellow]")
    else:
        console.print(f"{key}: {value}")


@config.command('set')
@click.argument('key')
@click.argument('value')
def config_set(key, value):
    """Set a configuration value"""
    current = load_config()
    current[key] = parse_value(value)
    try:
        Settings.model_validate(current)
    except ValueError as e:
        fail(f"Invalid value for {key}: {e}")
    save_config(current)
    console.print(f"[green]Set {key} to {current[key]} in {config_path()}[/green]")


if __name__ == '__main__':
    cli()
