"""CLI entrypoint for transcribe-pipeline."""

import logging
import os
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from transcribe_pipeline import __version__
from transcribe_pipeline.config import JOB_KIND_NAMES
from transcribe_pipeline.pipeline.controllers import (
    InspectJobCommand,
    ListJobsCommand,
    MonitorCommand,
    PipelineCliController,
    StatsCommand,
    StatusCommand,
    SubmitCommand,
    UsageCommand,
    WorkerCommand,
)
from transcribe_pipeline.pipeline.errors import JobNotFoundError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = PipelineCliController()
JOB_STATUSES = ["queued", "active", "completed", "failed", "dead"]
LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]

db_path_option = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)


@click.group()
@click.version_option(version=__version__, prog_name="transcribe-pipeline")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default=lambda: os.getenv("TRANSCRIBE_PIPELINE_LOG_LEVEL", "WARNING").upper(),
    help="Diagnostic log level (env TRANSCRIBE_PIPELINE_LOG_LEVEL).",
)
def cli(log_level: str) -> None:
    """Media job pipeline: admission, durable queue, workers and stall recovery."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("submit")
@db_path_option
@click.option("--owner", "owner_id", required=True, help="Owner (account) id.")
@click.option(
    "--kind",
    type=click.Choice(list(JOB_KIND_NAMES)),
    default="transcribe",
    show_default=True,
    help="Job kind.",
)
@click.option("--uri", required=True, help="Payload reference in external storage.")
@click.option("--size-bytes", type=click.IntRange(min=0), required=True, help="Payload size.")
@click.option(
    "--format",
    "payload_format",
    required=True,
    help="Payload format: extension (mp3) or MIME type (audio/mpeg).",
)
@click.option(
    "--duration-seconds",
    type=click.FloatRange(min=0),
    default=None,
    help="Media duration; estimated from size and format when omitted.",
)
@click.option(
    "--follow-up",
    "follow_ups",
    type=click.Choice(["summarize", "translate", "index"]),
    multiple=True,
    help="Job to chain after transcription. Can be repeated.",
)
def submit(  # noqa: PLR0913
    db_path: Path | None,
    owner_id: str,
    kind: str,
    uri: str,
    size_bytes: int,
    payload_format: str,
    duration_seconds: float | None,
    follow_ups: tuple[str, ...],
) -> None:
    """Submit a job through admission control."""

    _emit_lines(
        _guarded(
            lambda: CONTROLLER.submit(
                SubmitCommand(
                    db_path=db_path,
                    owner_id=owner_id,
                    kind=kind,
                    uri=uri,
                    size_bytes=size_bytes,
                    payload_format=payload_format,
                    duration_seconds=duration_seconds,
                    follow_ups=follow_ups,
                ),
            ),
        ),
    )


@cli.command("status")
@db_path_option
@click.argument("job_id")
def status(db_path: Path | None, job_id: str) -> None:
    """Show the durable status of one job."""

    _emit_lines(
        _guarded(lambda: CONTROLLER.status(StatusCommand(db_path=db_path, job_id=job_id))),
    )


@cli.group()
def jobs() -> None:
    """Job inspection commands."""


@jobs.command("list")
@db_path_option
@click.option("--owner", "owner_id", default=None, help="Optional owner filter.")
@click.option(
    "--status",
    type=click.Choice(JOB_STATUSES, case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max jobs to print.",
)
def jobs_list(db_path: Path | None, owner_id: str | None, status: str | None, limit: int) -> None:
    """List recent jobs."""

    _emit_lines(
        _guarded(
            lambda: CONTROLLER.list_jobs(
                ListJobsCommand(db_path=db_path, owner_id=owner_id, status=status, limit=limit),
            ),
        ),
    )


@jobs.command("inspect")
@db_path_option
@click.argument("job_id")
def jobs_inspect(db_path: Path | None, job_id: str) -> None:
    """Inspect one job with its event history."""

    _emit_lines(
        _guarded(lambda: CONTROLLER.inspect_job(InspectJobCommand(db_path=db_path, job_id=job_id))),
    )


@cli.command("worker")
@db_path_option
@click.option(
    "--once/--loop",
    default=False,
    show_default=True,
    help="Process a single job or keep polling.",
)
@click.option(
    "--max-jobs",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for processed jobs in loop mode.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=0),
    default=0,
    show_default=True,
    help="Exit after this many consecutive empty polls per worker (0 = never).",
)
@click.option(
    "--slots",
    type=click.IntRange(min=1),
    default=None,
    help="Parallel worker threads (env TRANSCRIBE_PIPELINE_WORKER_SLOTS).",
)
@click.option(
    "--monitor/--no-monitor",
    "with_monitor",
    default=True,
    show_default=True,
    help="Run the stall monitor in the same process.",
)
@click.option(
    "--watch",
    "watch_job_ids",
    multiple=True,
    help="Stream progress of this job as JSON lines. Can be repeated.",
)
def worker(  # noqa: PLR0913
    db_path: Path | None,
    once: bool,
    max_jobs: int | None,
    max_idle_polls: int,
    slots: int | None,
    with_monitor: bool,
    watch_job_ids: tuple[str, ...],
) -> None:
    """Run queue workers."""

    _emit_lines(
        _guarded(
            lambda: CONTROLLER.run_worker(
                WorkerCommand(
                    db_path=db_path,
                    once=once,
                    max_jobs=max_jobs,
                    max_idle_polls=max_idle_polls or None,
                    slots=slots,
                    with_monitor=with_monitor,
                    watch_job_ids=watch_job_ids,
                ),
            ),
        ),
    )


@cli.command("monitor")
@db_path_option
@click.option(
    "--once/--loop",
    default=False,
    show_default=True,
    help="Run a single stall sweep or keep sweeping.",
)
@click.option(
    "--max-sweeps",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for sweeps in loop mode.",
)
def monitor(db_path: Path | None, once: bool, max_sweeps: int | None) -> None:
    """Run the stall monitor."""

    _emit_lines(
        _guarded(
            lambda: CONTROLLER.run_monitor(
                MonitorCommand(db_path=db_path, once=once, max_sweeps=max_sweeps),
            ),
        ),
    )


@cli.command("usage")
@db_path_option
@click.option("--owner", "owner_id", required=True, help="Owner (account) id.")
def usage(db_path: Path | None, owner_id: str) -> None:
    """Show quota consumption for the current period."""

    _emit_lines(
        _guarded(lambda: CONTROLLER.usage(UsageCommand(db_path=db_path, owner_id=owner_id))),
    )


@cli.command("stats")
@db_path_option
def stats(db_path: Path | None) -> None:
    """Show queue depth per status."""

    _emit_lines(_guarded(lambda: CONTROLLER.stats(StatsCommand(db_path=db_path))))


def _guarded(action: Callable[[], list[str]]) -> list[str]:
    try:
        return action()
    except (ValueError, JobNotFoundError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    cli()
