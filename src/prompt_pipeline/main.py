"""CLI entrypoint for prompt-pipeline."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from prompt_pipeline import __version__
from prompt_pipeline.config import Settings
from prompt_pipeline.controllers import (
    BatchCommand,
    OrchestrateCommand,
    PipelineCliController,
    RecoverCommand,
    RestartCommand,
    RunJobCommand,
    StatusCommand,
    StopCommand,
    SubmitCommand,
    WatchCommand,
    render_event,
)
from prompt_pipeline.core.errors import PipelineError
from prompt_pipeline.core.orchestrator import EXIT_REJECTED

click.rich_click.USE_MARKDOWN = True
PIPELINE_CONTROLLER = PipelineCliController()

T = TypeVar("T")


@click.group()
@click.version_option(version=__version__, prog_name="prompt-pipeline")
def prompt_pipeline() -> None:
    """Multi-stage prompt pipeline orchestrator."""

    logging.basicConfig(
        level=Settings.from_env().log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@prompt_pipeline.command("submit")
@click.argument("seed_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def submit(seed_file: Path) -> None:
    """Validate a seed file and drop it into `pending/`."""

    _emit_lines(_call(lambda: PIPELINE_CONTROLLER.submit(SubmitCommand(seed_path=seed_file))))


@prompt_pipeline.command("orchestrate")
@click.option(
    "--once/--loop",
    default=False,
    show_default=True,
    help="Drain the pending queue and exit, or keep watching it.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=None,
    help="Exit after this many consecutive empty polls in loop mode.",
)
@click.option(
    "--inline",
    is_flag=True,
    default=False,
    help="Run jobs inside the orchestrator process instead of spawning runners.",
)
def orchestrate(once: bool, max_idle_polls: int | None, inline: bool) -> None:
    """Promote pending seeds and run their jobs."""

    _emit_lines(
        _call(
            lambda: PIPELINE_CONTROLLER.orchestrate(
                OrchestrateCommand(once=once, max_idle_polls=max_idle_polls, inline=inline),
                on_progress=click.echo,
            ),
        ),
    )


@prompt_pipeline.command("run-job")
@click.argument("job_id")
def run_job(job_id: str) -> None:
    """Run one promoted job in the foreground (used by spawned runners)."""

    result = _call(
        lambda: PIPELINE_CONTROLLER.run_job(RunJobCommand(job_id=job_id), on_progress=click.echo),
    )
    _emit_lines(result.lines)
    if not result.success:
        click.get_current_context().exit(EXIT_REJECTED)


@prompt_pipeline.command("status")
@click.argument("job_id", required=False)
def status(job_id: str | None) -> None:
    """List jobs per location, or print one job's status record."""

    _emit_lines(_call(lambda: PIPELINE_CONTROLLER.status(StatusCommand(job_id=job_id))))


@prompt_pipeline.command("stop")
@click.argument("job_id")
def stop(job_id: str) -> None:
    """Ask a running job to stop between stages."""

    _emit_lines(_call(lambda: PIPELINE_CONTROLLER.stop(StopCommand(job_id=job_id))))


@prompt_pipeline.command("restart")
@click.argument("job_id")
@click.option("--from-task", default=None, help="Reset this task and every later one.")
def restart(job_id: str, from_task: str | None) -> None:
    """Move a complete or rejected job back to `current`."""

    _emit_lines(
        _call(
            lambda: PIPELINE_CONTROLLER.restart(
                RestartCommand(job_id=job_id, from_task=from_task),
            ),
        ),
    )


@prompt_pipeline.command("recover")
@click.option(
    "--clean-slate",
    is_flag=True,
    default=False,
    help="Rebuild orphaned jobs in `current/` from their seed instead of resuming them.",
)
def recover(clean_slate: bool) -> None:
    """Reconcile interrupted moves and find jobs whose runner died."""

    _emit_lines(
        _call(lambda: PIPELINE_CONTROLLER.recover(RecoverCommand(clean_slate=clean_slate))),
    )


@prompt_pipeline.command("watch")
@click.option(
    "--seconds",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Stop after this many seconds (default: until interrupted).",
)
def watch(seconds: float | None) -> None:
    """Print change notifications for the data directory as JSON lines."""

    _emit_lines(
        _call(
            lambda: PIPELINE_CONTROLLER.watch(
                WatchCommand(seconds=seconds),
                on_event=lambda event: click.echo(render_event(event)),
            ),
        ),
    )


@prompt_pipeline.group()
def batch() -> None:
    """Batch execution table commands."""


@batch.command("status")
@click.argument("batch_id")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def batch_status(batch_id: str, db_path: Path | None) -> None:
    """Show job counts per status and exhausted failures for a batch."""

    _emit_lines(
        _call(
            lambda: PIPELINE_CONTROLLER.batch_status(
                BatchCommand(batch_id=batch_id, db_path=db_path),
            ),
        ),
    )


@batch.command("recover")
@click.argument("batch_id")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def batch_recover(batch_id: str, db_path: Path | None) -> None:
    """Reset a batch's jobs stuck in `processing` back to `pending`."""

    _emit_lines(
        _call(
            lambda: PIPELINE_CONTROLLER.batch_recover(
                BatchCommand(batch_id=batch_id, db_path=db_path),
            ),
        ),
    )


def _call(action: Callable[[], T]) -> T:
    try:
        return action()
    except (PipelineError, FileExistsError, FileNotFoundError, TypeError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    prompt_pipeline()
