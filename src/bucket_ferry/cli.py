# src/bucket_ferry/cli.py
"""Command-line interface for the bucket-ferry tool."""

import asyncio
import dataclasses
import logging
import sys
from pathlib import Path
from typing import Any, Callable, List, Optional

import click
from dotenv import load_dotenv
from rich.logging import RichHandler
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeRemainingColumn,
    TransferSpeedColumn,
)

from bucket_ferry.backends import StorageBackend, create_backend
from bucket_ferry.config import Config, ProfileRegistry
from bucket_ferry.engine import MigrationEngine
from bucket_ferry.exceptions import BucketFerryError
from bucket_ferry.metrics import MetricsRecorder, MetricsTotals, format_bytes
from bucket_ferry.models import (
    JobRequest,
    JobState,
    MigrationJob,
    ObjectEntry,
    VersionGroup,
    group_versions,
)
from bucket_ferry.report import MigrationReport
from bucket_ferry.signals import GracefulShutdown

logger: logging.Logger = logging.getLogger(__name__)


def setup_logging(level: str) -> None:
    """Configure rich-based logging for the application."""
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )
    # Silence noisy loggers
    for logger_name in ["botocore", "aiobotocore", "azure", "urllib3"]:
        logging.getLogger(logger_name).setLevel(logging.WARNING)


class _State:
    """Objects shared by all subcommands of one invocation."""

    def __init__(self, data_dir: Optional[Path]) -> None:
        self._data_dir: Optional[Path] = data_dir
        self._config: Optional[Config] = None
        self._registry: Optional[ProfileRegistry] = None
        self._metrics: Optional[MetricsRecorder] = None

    @property
    def config(self) -> Config:
        if self._config is None:
            self._config = Config.from_env(self._data_dir)
        return self._config

    @property
    def registry(self) -> ProfileRegistry:
        if self._registry is None:
            self._registry = ProfileRegistry.from_env()
        return self._registry

    @property
    def metrics(self) -> MetricsRecorder:
        if self._metrics is None:
            self._metrics = MetricsRecorder(self.config.metrics)
        return self._metrics

    def backend(self, profile_name: str) -> StorageBackend:
        return create_backend(
            self.registry.get(profile_name), self.metrics, self.config.transfer
        )

    def engine(self, config: Optional[Config] = None) -> MigrationEngine:
        return MigrationEngine(self.registry, config or self.config, self.metrics)


def _run_command(fn: Callable[[], Any]) -> Any:
    """Runs a subcommand body, mapping application errors to exit code 1."""
    try:
        return fn()
    except BucketFerryError as e:
        logger.critical(f"A critical application error occurred: {e}")
        sys.exit(1)
    except Exception:
        logger.critical("An unexpected error caused the application to fail:", exc_info=True)
        sys.exit(1)


async def _with_backend(state: _State, profile: str, action: Callable[[StorageBackend], Any]) -> Any:
    try:
        async with state.backend(profile) as backend:
            return await action(backend)
    finally:
        state.metrics.flush()


@click.group(context_settings=dict(help_option_names=["-h", "--help"]))
@click.option(
    "--data-dir",
    type=click.Path(file_okay=False, dir_okay=True, writable=True, resolve_path=True),
    default=None,
    help="Directory for checkpoints and the usage ledger [default: $FERRY_DATA_DIR or ./data].",
)
@click.option(
    "--log-level",
    default="INFO",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Set the logging level.",
    show_default=True,
)
@click.pass_context
def cli(ctx: click.Context, data_dir: Optional[str], log_level: str) -> None:
    """
    A resumable, cross-vendor object storage migration tool.

    Copies objects between S3-compatible services and Azure Blob Storage,
    checkpointing progress so an interrupted migration can be resumed
    without re-copying completed objects.

    Connection profiles are read from FERRY_PROFILE_<NAME>_ENDPOINT,
    _REGION, _ACCESS_KEY, _SECRET_KEY and _INSECURE environment variables
    (a .env file is honored).
    """
    load_dotenv()
    setup_logging(log_level)
    ctx.obj = _State(Path(data_dir) if data_dir else None)


@cli.command()
@click.argument("profile")
@click.pass_obj
def buckets(state: _State, profile: str) -> None:
    """List the buckets (containers) of PROFILE."""

    async def action(backend: StorageBackend) -> List[str]:
        return await backend.list_buckets()

    names: List[str] = _run_command(
        lambda: asyncio.run(_with_backend(state, profile, action))
    )
    for name in names:
        click.echo(name)


def _format_entry(entry: ObjectEntry, indent: str = "") -> str:
    marker: str = " (delete marker)" if entry.is_delete_marker else ""
    version: str = f"  [{entry.version_id}]" if entry.version_id else ""
    return (
        f"{indent}{entry.last_modified:%Y-%m-%d %H:%M:%S}  {entry.size:>12}  "
        f"{entry.key}{version}{marker}"
    )


@cli.command(name="ls")
@click.argument("profile")
@click.argument("bucket")
@click.option("--prefix", default="", help="Only list keys under this prefix.")
@click.option("--versions", is_flag=True, default=False, help="Include older versions and delete markers.")
@click.pass_obj
def list_objects(state: _State, profile: str, bucket: str, prefix: str, versions: bool) -> None:
    """List the objects of BUCKET in PROFILE."""

    async def action(backend: StorageBackend) -> List[ObjectEntry]:
        return [
            entry
            async for entry in backend.list_all_objects(
                bucket, prefix=prefix, include_versions=versions
            )
        ]

    entries: List[ObjectEntry] = _run_command(
        lambda: asyncio.run(_with_backend(state, profile, action))
    )
    if not versions:
        for entry in entries:
            click.echo(_format_entry(entry))
        return
    groups: List[VersionGroup] = group_versions(entries)
    for group in groups:
        click.echo(_format_entry(group.latest))
        for older in group.older:
            click.echo(_format_entry(older, indent="    "))


@cli.command()
@click.argument("profile")
@click.argument("bucket")
@click.argument("key")
@click.option("--expiry", type=int, default=None, help="Link lifetime in seconds (S3 only).")
@click.pass_obj
def share(state: _State, profile: str, bucket: str, key: str, expiry: Optional[int]) -> None:
    """Print a temporary download link for KEY."""

    async def action(backend: StorageBackend) -> str:
        return await backend.generate_shareable_url(bucket, key, expiry)

    click.echo(_run_command(lambda: asyncio.run(_with_backend(state, profile, action))))


async def _run_with_progress(engine: MigrationEngine, job_id: str, resume: bool) -> MigrationReport:
    """
    Runs a job while rendering its progress, pausing it on SIGINT/SIGTERM.

    Args:
        engine (MigrationEngine): The engine owning the job.
        job_id (str): The job to run.
        resume (bool): Resume from the checkpoint rather than start.

    Returns:
        MigrationReport: The outcome of the run.
    """
    async with GracefulShutdown(on_shutdown=lambda: engine.cancel(job_id)):
        run_task: "asyncio.Task[MigrationReport]" = asyncio.create_task(
            engine.resume(job_id) if resume else engine.run(job_id)
        )
        progress: Progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            DownloadColumn(),
            TransferSpeedColumn(),
            TimeRemainingColumn(),
            TextColumn("([bold cyan]{task.fields[objects]})"),
            transient=True,
        )
        with progress:
            task_id: TaskID = progress.add_task("Starting...", total=None, objects="")

            async def follow() -> None:
                async for snap in engine.subscribe(job_id):
                    progress.update(
                        task_id,
                        description=snap.state.value.capitalize(),
                        total=snap.total_bytes or None,
                        completed=snap.bytes_copied,
                        objects=f"{snap.done_objects}/{snap.total_objects} objects",
                    )

            follower: "asyncio.Task[None]" = asyncio.create_task(follow())
            try:
                return await run_task
            finally:
                follower.cancel()
                await asyncio.gather(follower, return_exceptions=True)


def _finish(report: MigrationReport, report_path: Optional[str]) -> None:
    click.echo(report.summary())
    for failure in report.failures():
        click.echo(f"  failed: {failure.key}: {failure.error}")
    if report_path:
        report.write(Path(report_path))


@cli.command()
@click.argument("source_profile")
@click.argument("source_bucket")
@click.argument("target_profile")
@click.argument("target_bucket")
@click.option("--source-prefix", default="", help="Only copy keys under this prefix.")
@click.option("--target-prefix", default="", help="Prefix for the copied keys.")
@click.option("--concurrency", type=int, default=None, help="Simultaneous transfers [default: 4].")
@click.option("--bandwidth-cap", type=int, default=None, help="Aggregate bytes/second; 0 = unlimited.")
@click.option("--no-verify", is_flag=True, default=False, help="Skip the size/etag check after each copy.")
@click.option("--tolerance", type=int, default=None, help="Failed objects tolerated before the job fails.")
@click.option(
    "--report",
    "report_path",
    type=click.Path(dir_okay=False, writable=True),
    default=None,
    help="Write the per-object outcome manifest (.parquet or .csv).",
)
@click.pass_obj
def migrate(state: _State, report_path: Optional[str], **kwargs: Any) -> None:
    """Copy every object of SOURCE_BUCKET into TARGET_BUCKET."""

    def body() -> MigrationReport:
        config: Config = state.config
        engine_config = dataclasses.replace(
            config.engine,
            verify=config.engine.verify and not kwargs["no_verify"],
            failure_tolerance=(
                kwargs["tolerance"]
                if kwargs["tolerance"] is not None
                else config.engine.failure_tolerance
            ),
        )
        engine: MigrationEngine = state.engine(dataclasses.replace(config, engine=engine_config))
        request: JobRequest = JobRequest(
            source_profile=kwargs["source_profile"],
            source_bucket=kwargs["source_bucket"],
            source_prefix=kwargs["source_prefix"],
            target_profile=kwargs["target_profile"],
            target_bucket=kwargs["target_bucket"],
            target_prefix=kwargs["target_prefix"],
            concurrency=kwargs["concurrency"] or config.engine.concurrency,
            bandwidth_cap=(
                kwargs["bandwidth_cap"]
                if kwargs["bandwidth_cap"] is not None
                else config.engine.bandwidth_cap
            ),
        )
        job: MigrationJob = engine.submit(request)
        click.echo(f"Job {job.id}")
        report: MigrationReport = asyncio.run(_run_with_progress(engine, job.id, resume=False))
        _finish(report, report_path)
        return report

    report: MigrationReport = _run_command(body)
    if report.state == JobState.FAILED:
        sys.exit(1)


@cli.command()
@click.argument("job_id")
@click.option(
    "--report",
    "report_path",
    type=click.Path(dir_okay=False, writable=True),
    default=None,
    help="Write the per-object outcome manifest (.parquet or .csv).",
)
@click.pass_obj
def resume(state: _State, job_id: str, report_path: Optional[str]) -> None:
    """Resume a paused or interrupted job."""

    def body() -> MigrationReport:
        engine: MigrationEngine = state.engine()
        report: MigrationReport = asyncio.run(_run_with_progress(engine, job_id, resume=True))
        _finish(report, report_path)
        return report

    report: MigrationReport = _run_command(body)
    if report.state == JobState.FAILED:
        sys.exit(1)


@cli.command()
@click.pass_obj
def jobs(state: _State) -> None:
    """List known jobs and their states."""

    def body() -> List[MigrationJob]:
        return state.engine().list_jobs()

    for job in _run_command(body):
        click.echo(
            f"{job.id}  {job.state.value:<11}  {job.created_at:%Y-%m-%d %H:%M}  "
            f"{job.source_profile}:{job.source_bucket}/{job.source_prefix} -> "
            f"{job.target_profile}:{job.target_bucket}/{job.target_prefix}"
        )


@cli.command()
@click.argument("profile")
@click.option("--hours", type=int, default=None, help="Window length [default: 72].")
@click.option("--clear", is_flag=True, default=False, help="Delete the profile's usage ledger.")
@click.pass_obj
def usage(state: _State, profile: str, hours: Optional[int], clear: bool) -> None:
    """Show the API usage of PROFILE over a trailing window."""

    def body() -> Optional[MetricsTotals]:
        if clear:
            state.metrics.clear(profile)
            return None
        return state.metrics.totals(profile, hours=hours)

    totals: Optional[MetricsTotals] = _run_command(body)
    if totals is None:
        click.echo(f"Cleared usage ledger of '{profile}'.")
        return
    click.echo(totals.summary())
    if totals.total_requests == 0:
        click.echo(f"(no requests recorded; {format_bytes(0)} transferred)")


if __name__ == "__main__":
    cli()
