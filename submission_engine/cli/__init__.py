"""
Command Line Interface for the Submission Engine.
"""

import json
from typing import Optional

import typer
from rich import print as rprint
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ..config import get_settings
from ..db.base import build_engine, get_session_local, init_database
from ..logging_config import configure_logging
from ..submission.enums import SubmissionStatus
from ..submission.errors import SubmissionError
from ..submission.leases import LeaseManager
from ..submission.results import SubmissionResultHandler
from ..submission.retry import RetryPolicy
from ..submission.state_machine import SubmissionStateMachine
from ..submission.status_table import STATUS_META
from ..submission.sweeper import RetrySweeper
from ..submission.targets import TargetService

app = typer.Typer(help="Submission Engine - lifecycle state machine for directory submissions")
console = Console()

STATUS_STYLE = {
    SubmissionStatus.LIVE: "green",
    SubmissionStatus.FAILED: "red",
    SubmissionStatus.REJECTED: "red",
    SubmissionStatus.BLOCKED: "red",
    SubmissionStatus.ACTION_NEEDED: "yellow",
    SubmissionStatus.NEEDS_CHANGES: "yellow",
    SubmissionStatus.DEFERRED: "blue",
}


class _Context:
    database_url: Optional[str] = None


state = _Context()


@app.callback()
def main(
    database_url: Optional[str] = typer.Option(
        None, "--database-url", envvar="DATABASE_URL", help="Database URL"
    ),
    log_level: Optional[str] = typer.Option(None, help="Log level"),
):
    """Configure logging and the database for every command."""
    settings = get_settings()
    configure_logging(log_level or settings.log_level, settings.log_format)
    state.database_url = database_url or settings.database_url


def _session_factory():
    return get_session_local(build_engine(state.database_url))


def _state_machine(session_factory) -> SubmissionStateMachine:
    return SubmissionStateMachine(
        session_factory, retry_policy=RetryPolicy.from_settings(get_settings())
    )


def _fail(error: SubmissionError) -> None:
    console.print(f"❌ {error.message}", style="bold red")
    console.print_json(data=error.to_dict(), default=str)
    raise typer.Exit(code=1)


def _parse_json(raw: Optional[str], option: str) -> Optional[dict]:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        console.print(f"❌ Invalid JSON for {option}", style="bold red")
        raise typer.Exit(code=2)


def _status_text(status) -> str:
    member = SubmissionStatus(status)
    style = STATUS_STYLE.get(member, "white")
    return f"[{style}]{member.value}[/{style}]"


@app.command("init-db")
def init_db():
    """Create the submission tables."""
    init_database(build_engine(state.database_url))
    console.print("✅ Database initialized")


@app.command("create-target")
def create_target(
    business_profile_id: str = typer.Argument(..., help="Business profile id"),
    directory_id: str = typer.Argument(..., help="Directory id"),
    connector_key: Optional[str] = typer.Option(None, help="Connector key"),
    mode: str = typer.Option("manual", help="Submission mode"),
    priority: int = typer.Option(50, help="Priority (1-100)"),
):
    """Create a submission target for a business and directory."""
    service = TargetService(_session_factory())
    try:
        target = service.create_target(
            business_profile_id,
            directory_id,
            connector_key=connector_key,
            submission_mode=mode,
            priority=priority,
        )
    except SubmissionError as e:
        _fail(e)
    console.print(f"✅ Created target {target.id}")


@app.command("create-run")
def create_run(
    target_id: str = typer.Argument(..., help="Target id"),
    previous_run_id: Optional[str] = typer.Option(None, help="Run this one retries"),
    triggered_by: str = typer.Option("user", help="Who is creating the run"),
    triggered_by_id: Optional[str] = typer.Option(None, help="Id of the actor"),
):
    """Create a queued run for a target."""
    machine = _state_machine(_session_factory())
    try:
        run = machine.create_run(
            target_id,
            triggered_by=triggered_by,
            triggered_by_id=triggered_by_id,
            previous_run_id=previous_run_id,
        )
    except SubmissionError as e:
        _fail(e)
    console.print(
        f"✅ Created run {run.id} (attempt {run.attempt_no}, "
        f"correlation {run.correlation_id})"
    )


@app.command()
def transition(
    run_id: str = typer.Argument(..., help="Run id"),
    to_status: str = typer.Argument(..., help="Status to move the run to"),
    reason: Optional[str] = typer.Option(None, help="Status reason"),
    triggered_by: str = typer.Option("admin", help="Who is triggering the change"),
    triggered_by_id: Optional[str] = typer.Option(None, help="Id of the actor"),
    meta: Optional[str] = typer.Option(None, help="Transition metadata as JSON"),
):
    """Transition a run to a new status."""
    machine = _state_machine(_session_factory())
    try:
        run = machine.transition_run_status(
            run_id,
            to_status,
            reason=reason,
            triggered_by=triggered_by,
            triggered_by_id=triggered_by_id,
            meta=_parse_json(meta, "--meta"),
        )
    except SubmissionError as e:
        _fail(e)
    console.print(f"✅ Run {run.id} is now {_status_text(run.status)}")


@app.command()
def acknowledge(
    run_id: str = typer.Argument(..., help="Run id"),
    user_id: str = typer.Argument(..., help="User acknowledging the changes"),
):
    """Acknowledge requested changes so the run can be retried."""
    machine = _state_machine(_session_factory())
    try:
        machine.acknowledge_changes(run_id, user_id)
    except SubmissionError as e:
        _fail(e)
    console.print(f"✅ Changes acknowledged for run {run_id}")


@app.command("record-result")
def record_result(
    run_id: str = typer.Argument(..., help="Run id"),
    result: str = typer.Option(..., "--result", help="Connector result as JSON"),
    worker_id: Optional[str] = typer.Option(None, help="Worker reporting the result"),
):
    """Apply a connector result (submitted, action_needed, already_listed, error)."""
    session_factory = _session_factory()
    handler = SubmissionResultHandler(
        session_factory,
        state_machine=_state_machine(session_factory),
        worker_id=worker_id,
        retry_policy=RetryPolicy.from_settings(get_settings()),
    )
    payload = _parse_json(result, "--result")
    if not isinstance(payload, dict):
        console.print("❌ --result must be a JSON object", style="bold red")
        raise typer.Exit(code=2)
    try:
        run = handler.handle(run_id, payload)
    except SubmissionError as e:
        _fail(e)

    console.print(f"✅ Run {run.id} is now {_status_text(run.status)}")
    if run.next_run_at is not None:
        console.print(f"   next attempt at {run.next_run_at.isoformat()}")


@app.command()
def history(run_id: str = typer.Argument(..., help="Run id")):
    """Show the event history of a run."""
    machine = _state_machine(_session_factory())
    try:
        events = machine.get_history(run_id)
    except SubmissionError as e:
        _fail(e)

    table = Table(title=f"Run {run_id}", show_header=True, header_style="bold magenta")
    table.add_column("#", style="dim")
    table.add_column("Event", style="cyan")
    table.add_column("Transition")
    table.add_column("Reason")
    table.add_column("By")
    table.add_column("Data")

    for event in events:
        transition_text = ""
        if event.to_status is not None:
            from_text = _status_text(event.from_status) if event.from_status else "-"
            transition_text = f"{from_text} → {_status_text(event.to_status)}"
        actor = event.triggered_by.value
        if event.triggered_by_id:
            actor = f"{actor}:{event.triggered_by_id}"
        table.add_row(
            str(event.id),
            event.event_type.value,
            transition_text,
            event.status_reason.value if event.status_reason else "",
            actor,
            json.dumps(event.event_data, default=str) if event.event_data else "",
        )

    console.print(table)


@app.command()
def sweep(
    limit: Optional[int] = typer.Option(None, help="Max runs per pass"),
):
    """Re-queue due deferred runs and block expired action-needed runs."""
    session_factory = _session_factory()
    sweeper = RetrySweeper(session_factory, state_machine=_state_machine(session_factory))
    counts = sweeper.sweep(limit=limit or get_settings().sweep_batch_size)
    console.print(
        f"✅ Requeued {counts['requeued']} run(s), blocked {counts['blocked']} run(s)"
    )


@app.command("cleanup-leases")
def cleanup_leases(
    limit: Optional[int] = typer.Option(None, help="Max runs to clean up"),
):
    """Defer in-progress runs whose worker lease has expired."""
    settings = get_settings()
    session_factory = _session_factory()
    manager = LeaseManager(
        session_factory,
        state_machine=_state_machine(session_factory),
        lease_duration_ms=settings.lease_duration_ms,
        grace_period_ms=settings.lease_grace_period_ms,
    )
    cleaned = manager.cleanup_expired(limit=limit or settings.sweep_batch_size)
    console.print(f"✅ Cleaned up {cleaned} expired lease(s)")


@app.command()
def statuses():
    """List submission statuses and their allowed transitions."""
    table = Table(
        title="Submission Statuses", show_header=True, header_style="bold cyan"
    )
    table.add_column("Status", style="yellow")
    table.add_column("Label")
    table.add_column("Terminal")
    table.add_column("Next states")

    for status, meta in STATUS_META.items():
        table.add_row(
            status.value,
            meta.label,
            "yes" if meta.is_terminal else "no",
            ", ".join(s.value for s in meta.next_states) or "-",
        )

    console.print(table)


@app.command()
def version():
    """Show version information."""
    from .. import __version__

    rprint(Panel.fit(f"Submission Engine v{__version__}", style="bold blue"))


if __name__ == "__main__":
    app()
