"""CLI entrypoint for course-orchestrator."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from course_orchestrator import __version__
from course_orchestrator.orchestrator.controllers import (
    ExpandTaskCommand,
    ExportReportCommand,
    HealthCommand,
    JobCommand,
    ListTasksCommand,
    OrchestratorCliController,
    RecordMemoryCommand,
    RunCommand,
    SubmitJobCommand,
    TaskCommand,
    UsageCommand,
)
from course_orchestrator.orchestrator.errors import OrchestratorError
from course_orchestrator.orchestrator.models import ReportFormat, TaskStatus

click.rich_click.USE_MARKDOWN = True
ORCHESTRATOR_CONTROLLER = OrchestratorCliController()

CommandT = TypeVar("CommandT")

DB_PATH_OPTION = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)


@click.group()
@click.version_option(version=__version__, prog_name="course-orchestrator")
@click.option("--verbose", is_flag=True, default=False, help="Enable debug logging.")
def cli(verbose: bool) -> None:

    """Course generation job orchestrator."""

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("submit")
@DB_PATH_OPTION
@click.argument("job_file", type=click.Path(path_type=Path, exists=True, dir_okay=False))
@click.option("--user-id", required=True, help="Submitting user id.")
@click.option(
    "--role",
    default=None,
    help="User role (student, teacher, admin, super_admin).",
)
def submit(db_path: Path | None, job_file: Path, user_id: str, role: str | None) -> None:
    """Submit a job from a JSON file with `request` and `tasks` keys."""

    _emit(
        ORCHESTRATOR_CONTROLLER.submit,
        SubmitJobCommand(db_path=db_path, job_file=job_file, user_id=user_id, role=role),
    )


@cli.command("status")
@DB_PATH_OPTION
@click.argument("job_id")
def status(db_path: Path | None, job_id: str) -> None:
    """Show job status, progress and health."""

    _emit(ORCHESTRATOR_CONTROLLER.status, JobCommand(db_path=db_path, job_id=job_id))


@cli.command("tasks")
@DB_PATH_OPTION
@click.argument("job_id")
@click.option(
    "--status",
    "task_status",
    type=click.Choice([item.value for item in TaskStatus], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
def tasks(db_path: Path | None, job_id: str, task_status: str | None) -> None:
    """List the tasks of a job."""

    _emit(
        ORCHESTRATOR_CONTROLLER.list_tasks,
        ListTasksCommand(db_path=db_path, job_id=job_id, status=task_status),
    )


@cli.command("task")
@DB_PATH_OPTION
@click.argument("task_id")
def task(db_path: Path | None, task_id: str) -> None:
    """Inspect one task with its event trail."""

    _emit(ORCHESTRATOR_CONTROLLER.inspect_task, TaskCommand(db_path=db_path, task_id=task_id))


@cli.command("errors")
@DB_PATH_OPTION
@click.argument("job_id")
def errors(db_path: Path | None, job_id: str) -> None:
    """Show recorded errors with category/severity breakdowns."""

    _emit(ORCHESTRATOR_CONTROLLER.errors, JobCommand(db_path=db_path, job_id=job_id))


@cli.command("analytics")
@DB_PATH_OPTION
@click.argument("job_id")
def analytics(db_path: Path | None, job_id: str) -> None:
    """Show derived analytics for a job."""

    _emit(ORCHESTRATOR_CONTROLLER.analytics, JobCommand(db_path=db_path, job_id=job_id))


@cli.command("retry")
@DB_PATH_OPTION
@click.argument("task_id")
def retry(db_path: Path | None, task_id: str) -> None:
    """Queue a failed task for another attempt."""

    _emit(ORCHESTRATOR_CONTROLLER.retry_task, TaskCommand(db_path=db_path, task_id=task_id))


@cli.command("skip")
@DB_PATH_OPTION
@click.argument("task_id")
def skip(db_path: Path | None, task_id: str) -> None:
    """Skip a task so its dependents can proceed."""

    _emit(ORCHESTRATOR_CONTROLLER.skip_task, TaskCommand(db_path=db_path, task_id=task_id))


@cli.command("pause")
@DB_PATH_OPTION
@click.argument("job_id")
def pause(db_path: Path | None, job_id: str) -> None:
    """Stop dispatching new tasks for a job."""

    _emit(ORCHESTRATOR_CONTROLLER.pause_job, JobCommand(db_path=db_path, job_id=job_id))


@cli.command("resume")
@DB_PATH_OPTION
@click.argument("job_id")
def resume(db_path: Path | None, job_id: str) -> None:
    """Resume dispatching for a paused job."""

    _emit(ORCHESTRATOR_CONTROLLER.resume_job, JobCommand(db_path=db_path, job_id=job_id))


@cli.command("recover")
@DB_PATH_OPTION
@click.argument("job_id")
def recover(db_path: Path | None, job_id: str) -> None:
    """Smart recovery: retry recoverable failures, skip the rest."""

    _emit(ORCHESTRATOR_CONTROLLER.smart_recover, JobCommand(db_path=db_path, job_id=job_id))


@cli.command("cancel")
@DB_PATH_OPTION
@click.argument("job_id")
def cancel(db_path: Path | None, job_id: str) -> None:
    """Cancel a job and all of its open tasks."""

    _emit(ORCHESTRATOR_CONTROLLER.cancel_job, JobCommand(db_path=db_path, job_id=job_id))


@cli.command("expand")
@DB_PATH_OPTION
@click.argument("parent_task_id")
@click.option("--task-type", required=True, help="Type of the new task.")
@click.option("--input", "input_json", default=None, help="Task input as a JSON object.")
@click.option("--priority", type=int, default=None, help="Priority (lower runs first).")
def expand(
    db_path: Path | None,
    parent_task_id: str,
    task_type: str,
    input_json: str | None,
    priority: int | None,
) -> None:
    """Add a task that depends on a completed task."""

    _emit(
        ORCHESTRATOR_CONTROLLER.expand_task,
        ExpandTaskCommand(
            db_path=db_path,
            parent_task_id=parent_task_id,
            task_type=task_type,
            input_json=input_json,
            priority=priority,
        ),
    )


@cli.command("export")
@DB_PATH_OPTION
@click.argument("job_id")
@click.option(
    "--format",
    "report_format",
    type=click.Choice([item.value for item in ReportFormat], case_sensitive=False),
    default=ReportFormat.JSON.value,
    show_default=True,
    help="Report format.",
)
@click.option(
    "--output",
    "output_path",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="Write the report to a file instead of stdout.",
)
@click.option("--analytics/--no-analytics", "include_analytics", default=True, show_default=True)
@click.option("--tasks/--no-tasks", "include_tasks", default=True, show_default=True)
@click.option("--errors/--no-errors", "include_errors", default=True, show_default=True)
@click.option(
    "--performance/--no-performance",
    "include_performance",
    default=True,
    show_default=True,
)
def export(  # noqa: PLR0913
    db_path: Path | None,
    job_id: str,
    report_format: str,
    output_path: Path | None,
    include_analytics: bool,
    include_tasks: bool,
    include_errors: bool,
    include_performance: bool,
) -> None:
    """Export a job report with recommendations."""

    _emit(
        ORCHESTRATOR_CONTROLLER.export_report,
        ExportReportCommand(
            db_path=db_path,
            job_id=job_id,
            report_format=report_format,
            output_path=output_path,
            include_analytics=include_analytics,
            include_tasks=include_tasks,
            include_errors=include_errors,
            include_performance=include_performance,
        ),
    )


@cli.command("run")
@DB_PATH_OPTION
@click.option("--job-id", default=None, help="Drive only this job until terminal or paused.")
@click.option(
    "--once/--loop",
    default=False,
    show_default=True,
    help="Run a single dispatch pass or keep polling.",
)
@click.option(
    "--max-passes",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for dispatch passes.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=None,
    help="Stop the loop after this many consecutive idle passes.",
)
@click.option("--prefect", "use_prefect", is_flag=True, help="Run --job-id as a Prefect flow.")
def run(  # noqa: PLR0913
    db_path: Path | None,
    job_id: str | None,
    once: bool,
    max_passes: int | None,
    max_idle_polls: int | None,
    use_prefect: bool,
) -> None:
    """Run the scheduler."""

    if use_prefect and job_id is None:
        raise click.UsageError("--prefect requires --job-id.")
    command = RunCommand(
        db_path=db_path,
        job_id=job_id,
        once=once,
        max_passes=max_passes,
        max_idle_polls=max_idle_polls,
        use_prefect=use_prefect,
    )
    _emit(lambda cmd: ORCHESTRATOR_CONTROLLER.run(cmd, emit=click.echo), command)


@cli.command("health")
@DB_PATH_OPTION
@click.option("--user-id", default=None, help="Only jobs of this user.")
def health(db_path: Path | None, user_id: str | None) -> None:
    """Health sweep over every active job."""

    _emit(ORCHESTRATOR_CONTROLLER.health, HealthCommand(db_path=db_path, user_id=user_id))


@cli.command("usage")
@DB_PATH_OPTION
@click.option("--user-id", required=True, help="User id.")
@click.option("--role", default=None, help="Role whose ceilings apply.")
def usage(db_path: Path | None, user_id: str, role: str | None) -> None:
    """Show rate-limit usage against ceilings."""

    _emit(
        ORCHESTRATOR_CONTROLLER.usage,
        UsageCommand(db_path=db_path, user_id=user_id, role=role),
    )


@cli.command("record-memory")
@DB_PATH_OPTION
@click.argument("job_id")
@click.argument("peak_memory_mb", type=click.FloatRange(min=0))
def record_memory(db_path: Path | None, job_id: str, peak_memory_mb: float) -> None:
    """Record an externally sampled peak memory figure (MB) for a job."""

    _emit(
        ORCHESTRATOR_CONTROLLER.record_memory,
        RecordMemoryCommand(db_path=db_path, job_id=job_id, peak_memory_mb=peak_memory_mb),
    )


def _emit(handler: Callable[[CommandT], list[str]], command: CommandT) -> None:
    try:
        lines = handler(command)
    except (OrchestratorError, ValueError, TypeError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


def main() -> None:
    cli()


if __name__ == "__main__":  # pragma: no cover
    main()
