"""CLI commands for executing and inspecting coverage improvement plans."""

from __future__ import annotations

import logging
import signal
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer

from .config import DEFAULT_CONFIG_NAME, ConfigError, Settings, default_config, load_config, write_config
from .errors import (
    EnvironmentFailure,
    InvalidTransition,
    OperationCancelled,
    PlanFormatError,
    PlanNotFound,
)
from .memory.knowledge import KnowledgeBase, KnowledgeBaseError
from .memory.plan_store import PlanStore
from .memory.schema import KnowledgeEntry, Plan, RemediationAction, StepStatus
from .phases.diagnose import signature_id
from .planning.executor import ALL_STEPS, PlanExecutionSummary, PlanOrchestrator
from .planning.report import render_plan_markdown
from .planning.step_executor import CancellationToken

APP_HELP = "Coverage planner CLI: execute unit-test coverage plans step by step."

EXIT_OK = 0
EXIT_STEP_FAILED = 1
EXIT_INVALID_REQUEST = 2
EXIT_ENVIRONMENT = 3
EXIT_CANCELLED = 130

app = typer.Typer(help=APP_HELP)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load_config(config: Optional[str]) -> Dict[str, Any]:
    """Load the configuration; an explicit path must exist, the default may be absent."""
    if config is not None and not Path(config).exists():
        raise typer.BadParameter(f"Config file not found: {config}")
    try:
        return load_config(Path(config or DEFAULT_CONFIG_NAME))
    except ConfigError as error:
        typer.echo(str(error))
        raise typer.Exit(code=EXIT_INVALID_REQUEST) from error


def _load_plan(store: PlanStore, plan_ref: str) -> Plan:
    try:
        return store.load(plan_ref)
    except (PlanNotFound, PlanFormatError) as error:
        typer.echo(f"Invalid plan reference: {error}")
        raise typer.Exit(code=EXIT_INVALID_REQUEST) from error


def _load_knowledge(config_data: Dict[str, Any]) -> KnowledgeBase:
    try:
        return KnowledgeBase.from_config(config_data)
    except KnowledgeBaseError as error:
        typer.echo(str(error))
        raise typer.Exit(code=EXIT_INVALID_REQUEST) from error


def _format_percent(value: Optional[float]) -> str:
    return "n/a" if value is None else f"{value:.2f}%"


def _render_plan_execution(summary: PlanExecutionSummary) -> None:
    """Render a concise summary for a plan execution run."""
    plan = summary.plan
    typer.echo(f"Plan {plan.module} ({summary.plan_path.as_posix()})")
    if not summary.outcomes:
        typer.echo("No steps executed; plan already complete." if plan.steps else "Plan has no steps.")

    for outcome in summary.outcomes:
        typer.echo(f"- Step {outcome.ordinal}: {outcome.name} -> {outcome.status.value}")
        for attempt in outcome.diagnose_attempts:
            matched = attempt.matched_entry or "no match"
            typer.echo(f"    diagnose #{attempt.attempt}: {attempt.signature} [{matched}]")
        last = outcome.last_pipeline
        if last is not None and last.coverage is not None:
            typer.echo(
                f"    coverage: lines {last.coverage.line_percent:.2f}%, "
                f"functions {last.coverage.function_percent:.2f}%, "
                f"branches {last.coverage.branch_percent:.2f}%"
                + ("" if outcome.coverage_updated else " (not recorded: below aggregate)")
            )
        if outcome.error is not None and outcome.status == StepStatus.FAILED:
            typer.echo(f"    ! {outcome.error}")
        if outcome.artifact_path:
            typer.echo(f"    artifact: {outcome.artifact_path.as_posix()}")

    typer.echo(f"Steps: {summary.completed} completed, {summary.failed} failed, {summary.pending} pending")
    if summary.current is not None:
        delta = summary.coverage_delta
        typer.echo(
            f"Coverage: lines {summary.current.line_percent:.2f}% ({delta.get('lines', 0.0):+.2f} pts vs baseline)"
        )
    if summary.unresolved:
        typer.echo("Unresolved diagnostics (manual triage needed):")
        for item in summary.unresolved:
            typer.echo(f"  - step {item.ordinal}: {item.signature}")


@app.command()
def execute(
    plan: str = typer.Argument(..., help="Plan file path or module name under the plans directory."),
    step: str = typer.Option(ALL_STEPS, "--step", "-s", help="Step ordinal or name, or 'all'."),
    override: bool = typer.Option(False, "--override", help="Run steps even when earlier steps are not COMPLETED."),
    continue_on_failure: Optional[bool] = typer.Option(
        None,
        "--continue-on-failure/--stop-on-failure",
        help="Keep executing later steps after a step fails.",
    ),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to the planner configuration file."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Execute one step or every remaining step of a plan."""
    _configure_logging(verbose)
    config_data = _load_config(config)
    settings = Settings.from_config(config_data)
    keep_going = settings.continue_on_failure if continue_on_failure is None else continue_on_failure

    token = CancellationToken()

    def _handle_interrupt(signum: int, frame: Any) -> None:
        typer.echo("Interrupt received; stopping at the next step transition...", err=True)
        token.cancel()

    try:
        orchestrator = PlanOrchestrator.from_config(config_data, cancel_token=token)
    except KnowledgeBaseError as error:
        typer.echo(str(error))
        raise typer.Exit(code=EXIT_INVALID_REQUEST) from error

    previous_handler = signal.signal(signal.SIGINT, _handle_interrupt)
    try:
        summary = orchestrator.execute(plan, step, override=override, continue_on_failure=keep_going)
    except (PlanNotFound, PlanFormatError) as error:
        typer.echo(f"Invalid plan reference: {error}")
        raise typer.Exit(code=EXIT_INVALID_REQUEST) from error
    except InvalidTransition as error:
        typer.echo(f"Invalid transition: {error}")
        raise typer.Exit(code=EXIT_INVALID_REQUEST) from error
    except EnvironmentFailure as error:
        typer.echo(f"Environment failure: {error}")
        raise typer.Exit(code=EXIT_ENVIRONMENT) from error
    except OperationCancelled as error:
        typer.echo(f"Cancelled: {error}")
        raise typer.Exit(code=EXIT_CANCELLED) from error
    finally:
        signal.signal(signal.SIGINT, previous_handler)

    _render_plan_execution(summary)
    if not summary.ok:
        raise typer.Exit(code=EXIT_STEP_FAILED)


@app.command()
def status(
    plan: str = typer.Argument(..., help="Plan file path or module name."),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to the planner configuration file."),
) -> None:
    """Show step statuses and coverage for a plan."""
    config_data = _load_config(config)
    plan_doc = _load_plan(PlanStore.from_config(config_data), plan)
    progress = plan_doc.refresh_progress()
    typer.echo(f"Plan {plan_doc.module}: {progress.completed}/{progress.total_steps} steps completed")
    for item in plan_doc.steps:
        done = sum(1 for case in item.test_cases if case.done)
        typer.echo(
            f"- [{item.status.value}] {item.ordinal}. {item.name} "
            f"({done}/{len(item.test_cases)} tests, attempts {item.attempts})"
        )
        if item.status == StepStatus.FAILED and item.last_failure is not None:
            typer.echo(f"    last failure: {item.last_failure.signature}")
    typer.echo(
        f"Coverage: lines {_format_percent(progress.line_percent)}, "
        f"functions {_format_percent(progress.function_percent)}, "
        f"branches {_format_percent(progress.branch_percent)}"
    )


@app.command()
def report(
    plan: str = typer.Argument(..., help="Plan file path or module name."),
    output: Optional[str] = typer.Option(None, "--output", "-o", help="Markdown destination (default: beside the plan)."),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to the planner configuration file."),
) -> None:
    """Write the human-readable markdown plan document."""
    config_data = _load_config(config)
    store = PlanStore.from_config(config_data)
    plan_doc = _load_plan(store, plan)
    destination = Path(output) if output else store.resolve(plan).with_suffix(".md")
    destination.parent.mkdir(parents=True, exist_ok=True)
    destination.write_text(render_plan_markdown(plan_doc), encoding="utf-8")
    typer.echo(f"Wrote {destination.as_posix()}")


@app.command("kb-match")
def kb_match(
    text: Optional[str] = typer.Argument(None, help="Failure text to look up."),
    file: Optional[Path] = typer.Option(None, "--file", "-f", help="Read the failure text from a file."),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to the planner configuration file."),
) -> None:
    """Show the knowledge base entry that matches a failure, if any."""
    if file is not None:
        try:
            text = file.read_text(encoding="utf-8")
        except OSError as error:
            raise typer.BadParameter(f"Cannot read {file}: {error}") from error
    if not text:
        raise typer.BadParameter("Provide failure text or --file.")

    knowledge = _load_knowledge(_load_config(config))
    entry = knowledge.match(text)
    if entry is None:
        typer.echo("No matching knowledge entry.")
        raise typer.Exit(code=1)
    typer.echo(f"{entry.id} ({entry.match}: {entry.signature})")
    if entry.root_cause:
        typer.echo(f"Root cause: {entry.root_cause}")
    for action in entry.remediation:
        typer.echo(f"- {action.render()}")


def _parse_action(raw: str) -> RemediationAction:
    kind, sep, value = raw.partition(":")
    if not sep:
        kind, value = raw, ""
    try:
        return RemediationAction(kind=kind.strip(), value=value.strip())
    except ValueError as error:
        raise typer.BadParameter(
            f"Invalid action {raw!r}; use regenerate|add_fixture_flag|command|note followed by ':value'"
        ) from error


@app.command("kb-add")
def kb_add(
    signature: str = typer.Option(..., "--signature", help="Substring (or regex with --regex) identifying the failure."),
    root_cause: str = typer.Option("", "--root-cause", help="Confirmed root cause."),
    action: Optional[List[str]] = typer.Option(None, "--action", "-a", help="Remediation as kind:value; repeatable."),
    regex: bool = typer.Option(False, "--regex", help="Treat the signature as a regular expression."),
    entry_id: Optional[str] = typer.Option(None, "--id", help="Entry identifier (derived from the signature by default)."),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to the planner configuration file."),
) -> None:
    """Record an operator-confirmed fix in the knowledge base."""
    if not signature.strip():
        raise typer.BadParameter("Signature must not be empty.")
    actions = [_parse_action(item) for item in action or []]
    entry = KnowledgeEntry(
        id=entry_id or f"operator::{signature_id(signature)}",
        signature=signature,
        match="regex" if regex else "substring",
        root_cause=root_cause,
        remediation=actions,
    )
    knowledge = _load_knowledge(_load_config(config))
    try:
        knowledge.append(entry)
    except (KnowledgeBaseError, OSError) as error:
        typer.echo(f"Failed to update knowledge base: {error}")
        raise typer.Exit(code=EXIT_ENVIRONMENT) from error
    location = knowledge.path.as_posix() if knowledge.path else "(memory)"
    typer.echo(f"Recorded {entry.id} in {location} ({len(knowledge)} entries)")


@app.command("init-config")
def init_config(
    path: str = typer.Argument(DEFAULT_CONFIG_NAME, help="Where to write the configuration."),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing file."),
) -> None:
    """Write the default configuration file."""
    config_path = Path(path)
    if config_path.exists() and not force:
        typer.echo(f"{config_path} already exists; use --force to overwrite.")
        raise typer.Exit(code=1)
    write_config(config_path, default_config())
    typer.echo(f"Wrote default configuration to {config_path.as_posix()}")


if __name__ == "__main__":
    app()
