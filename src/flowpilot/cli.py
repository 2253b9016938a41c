from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from flowpilot.agents import build_runner
from flowpilot.config import CONFIG_FILENAME, EngineConfig, RunConfig, load_config, save_config
from flowpilot.errors import FlowpilotError
from flowpilot.loop import ControlLoop, run_projects
from flowpilot.planner import find_tasks_document, plan_batches, plan_summary
from flowpilot.service import OrchestrationService
from flowpilot.state.model import STEPS
from flowpilot.state.store import StateStore, parse_value
from flowpilot.supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(levelname)s: %(message)s"


@dataclass(slots=True)
class Runtime:
    project_root: Path
    config_path: Path
    config: EngineConfig
    store: StateStore
    supervisor: ProcessSupervisor
    service: OrchestrationService

    def control_loop(self) -> ControlLoop:
        return ControlLoop(
            self.store,
            self.supervisor,
            poll_interval_seconds=self.config.loop.poll_interval_seconds,
            max_cycles=self.config.loop.max_cycles,
            tasks_file=self.config.project.tasks_file,
        )


def _resolve_config_path(project_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = project_root / config_path
    return config_path.resolve()


def _configure_logging(config: EngineConfig) -> None:
    context = click.get_current_context(silent=True)
    override = context.find_root().params.get("log_level") if context is not None else None
    level = override or config.logging.level
    logging.basicConfig(level=getattr(logging, level), format=LOG_FORMAT, force=True)


def _record_supervisor_event(event: dict[str, Any]) -> None:
    logger.debug("supervisor event: %s", json.dumps(event, ensure_ascii=False))


def _load_runtime(project_root: Path, config_path: Path) -> Runtime:
    config = load_config(config_path)
    _configure_logging(config)
    store = StateStore(project_root, state_dir=config.project.state_dir)
    supervisor = ProcessSupervisor(
        store,
        build_runner(config.agent),
        timeout_seconds=config.agent.timeout_seconds,
        kill_grace_seconds=config.agent.kill_grace_seconds,
        spawn_grace_seconds=config.loop.spawn_grace_seconds,
        skills_dir=project_root / config.project.skills_dir,
        event_hook=_record_supervisor_event,
    )
    return Runtime(
        project_root=project_root,
        config_path=config_path,
        config=config,
        store=store,
        supervisor=supervisor,
        service=OrchestrationService(store, supervisor, defaults=config.run),
    )


def _runtime(project_value: str | None, config_value: str) -> Runtime:
    project_root = Path(project_value or Path.cwd()).resolve()
    return _load_runtime(project_root, _resolve_config_path(project_root, config_value))


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


def _parse_assignments(pairs: tuple[str, ...]) -> dict[str, Any]:
    parsed: dict[str, Any] = {}
    for pair in pairs:
        key, separator, value = pair.partition("=")
        if not separator or not key.strip():
            raise click.BadParameter(f"Expected KEY=VALUE, got {pair!r}")
        parsed[key.strip()] = parse_value(value)
    return parsed


def project_options(func):
    func = click.option(
        "--config", "config_value", default=CONFIG_FILENAME, show_default=True
    )(func)
    func = click.option(
        "--project",
        "project_value",
        default=None,
        type=click.Path(file_okay=False),
        help="Project directory (defaults to the current directory).",
    )(func)
    return func


@click.group()
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    callback=lambda _ctx, _param, value: value.upper() if value else None,
)
def cli(log_level: str | None) -> None:
    """Flowpilot CLI."""


@cli.command("init")
@click.option("--backend", type=click.Choice(["claude", "codex"]), default=None)
@project_options
def init_command(backend: str | None, project_value: str | None, config_value: str) -> None:
    project_root = Path(project_value or Path.cwd()).resolve()
    config_path = _resolve_config_path(project_root, config_value)
    try:
        config = load_config(config_path)
    except FlowpilotError as exc:
        raise click.ClickException(str(exc)) from exc
    if backend:
        config.agent.backend = backend  # type: ignore[assignment]
    save_config(config_path, config)
    (project_root / config.project.state_dir).mkdir(parents=True, exist_ok=True)
    (project_root / config.project.skills_dir).mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized Flowpilot in {project_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Agent: {config.agent.backend}")


@cli.command("start")
@click.option("--skip-design", is_flag=True, default=False)
@click.option("--skip-analyze", is_flag=True, default=False)
@click.option("--auto-merge", is_flag=True, default=False)
@click.option("--no-auto-heal", is_flag=True, default=False)
@click.option("--pause-between-batches", is_flag=True, default=False)
@click.option("--batch-size", type=int, default=None)
@click.option("--context", "additional_context", default=None)
@click.option("--run", "drive", is_flag=True, default=False, help="Drive the loop after starting.")
@project_options
def start_command(
    skip_design: bool,
    skip_analyze: bool,
    auto_merge: bool,
    no_auto_heal: bool,
    pause_between_batches: bool,
    batch_size: int | None,
    additional_context: str | None,
    drive: bool,
    project_value: str | None,
    config_value: str,
) -> None:
    try:
        runtime = _runtime(project_value, config_value)
        payload = runtime.config.run.to_dict()
        flags = {
            "skip_design": skip_design,
            "skip_analyze": skip_analyze,
            "auto_merge": auto_merge,
            "pause_between_batches": pause_between_batches,
        }
        payload.update({key: True for key, enabled in flags.items() if enabled})
        if no_auto_heal:
            payload["auto_heal_enabled"] = False
        if batch_size is not None:
            payload["batch_size_fallback"] = batch_size
        if additional_context is not None:
            payload["additional_context"] = additional_context
        run = runtime.service.start(RunConfig.from_dict(payload))
    except FlowpilotError as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(f"Run ID: {run.id}")
    click.echo(f"Project: {run.project}")
    if drive:
        _drive([runtime], until_idle=True)


def _drive(runtimes: list[Runtime], *, until_idle: bool) -> None:
    loops = [runtime.control_loop() for runtime in runtimes]
    try:
        decisions = asyncio.run(run_projects(loops, until_idle=until_idle))
    except FlowpilotError as exc:
        raise click.ClickException(str(exc)) from exc
    for runtime, decision in zip(runtimes, decisions, strict=True):
        state = runtime.store.read()
        status = state.run.status if state.run else "no run"
        click.echo(f"{state.project}: {status} (last decision: {decision.action})")


@cli.command("run")
@click.option(
    "--project",
    "project_values",
    multiple=True,
    type=click.Path(file_okay=False),
    help="Project directory; repeat to drive several projects at once.",
)
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
@click.option("--forever", is_flag=True, default=False, help="Keep polling after the run idles.")
def run_command(project_values: tuple[str, ...], config_value: str, forever: bool) -> None:
    try:
        runtimes = [_runtime(value, config_value) for value in project_values or (None,)]
    except FlowpilotError as exc:
        raise click.ClickException(str(exc)) from exc
    _drive(runtimes, until_idle=not forever)


@cli.command("status")
@click.option("--run-id", default=None)
@click.option("--verbose", is_flag=True, default=False)
@project_options
def status_command(
    run_id: str | None, verbose: bool, project_value: str | None, config_value: str
) -> None:
    try:
        payload = _runtime(project_value, config_value).service.status(run_id)
    except FlowpilotError as exc:
        raise click.ClickException(str(exc)) from exc
    if not verbose:
        payload.pop("decision_log", None)
        payload.pop("executions", None)
    _echo_json(payload)


@cli.command("cancel")
@click.option("--run-id", default=None)
@click.option("--reason", default="Cancelled by operator", show_default=True)
@project_options
def cancel_command(
    run_id: str | None, reason: str, project_value: str | None, config_value: str
) -> None:
    try:
        runtime = _runtime(project_value, config_value)
        run = asyncio.run(runtime.service.cancel(run_id, reason=reason))
    except FlowpilotError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Cancelled {run.id}")


@cli.command("go-back")
@click.argument("step", type=click.Choice(list(STEPS)))
@click.option("--run-id", default=None)
@project_options
def go_back_command(
    step: str, run_id: str | None, project_value: str | None, config_value: str
) -> None:
    try:
        runtime = _runtime(project_value, config_value)
        asyncio.run(runtime.service.go_back_to_step(step, run_id))
    except FlowpilotError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Run reset to {step}")


@cli.command("answer")
@click.argument("pairs", nargs=-1, required=True)
@click.option("--run-id", default=None)
@project_options
def answer_command(
    pairs: tuple[str, ...], run_id: str | None, project_value: str | None, config_value: str
) -> None:
    answers = _parse_assignments(pairs)
    try:
        state = _runtime(project_value, config_value).service.answer(answers, run_id)
    except FlowpilotError as exc:
        raise click.ClickException(str(exc)) from exc
    status = state.run.status if state.run else "no run"
    click.echo(f"Recorded {len(answers)} answer(s); run is {status}")


@cli.command("merge")
@click.option("--run-id", default=None)
@project_options
def merge_command(run_id: str | None, project_value: str | None, config_value: str) -> None:
    try:
        _runtime(project_value, config_value).service.trigger_merge(run_id)
    except FlowpilotError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo("Merge approved.")


@cli.command("pause")
@project_options
def pause_command(project_value: str | None, config_value: str) -> None:
    try:
        _runtime(project_value, config_value).service.pause()
    except FlowpilotError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo("Run paused.")


@cli.command("resume")
@project_options
def resume_command(project_value: str | None, config_value: str) -> None:
    try:
        _runtime(project_value, config_value).service.resume()
    except FlowpilotError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo("Run resumed.")


@cli.command("recover")
@click.argument("action", type=click.Choice(["retry", "skip", "abort"]))
@project_options
def recover_command(action: str, project_value: str | None, config_value: str) -> None:
    try:
        runtime = _runtime(project_value, config_value)
        state = asyncio.run(runtime.service.recover(action))  # type: ignore[arg-type]
    except FlowpilotError as exc:
        raise click.ClickException(str(exc)) from exc
    status = state.run.status if state.run else "no run"
    click.echo(f"Recovery '{action}' applied; run is {status}")


@cli.command("plan")
@click.option("--batch-size", type=int, default=None)
@project_options
def plan_command(batch_size: int | None, project_value: str | None, config_value: str) -> None:
    try:
        runtime = _runtime(project_value, config_value)
    except FlowpilotError as exc:
        raise click.ClickException(str(exc)) from exc
    document = find_tasks_document(runtime.project_root, runtime.config.project.tasks_file)
    if document is None:
        raise click.ClickException(
            f"No task document found ({runtime.config.project.tasks_file})."
        )
    plan = plan_batches(
        document.read_text(encoding="utf-8"),
        batch_size or runtime.config.run.batch_size_fallback,
    )
    click.echo(f"{document}: {plan_summary(plan)}")
    for index, batch in enumerate(plan.batches):
        click.echo(f"{index:>3} {batch.section}: {', '.join(batch.task_ids)}")
    for warning in plan.dependency_warnings:
        click.echo(f"warning: {warning}")


@cli.command("log")
@click.option("--limit", type=int, default=20, show_default=True)
@project_options
def log_command(limit: int, project_value: str | None, config_value: str) -> None:
    try:
        state = _runtime(project_value, config_value).store.read()
    except FlowpilotError as exc:
        raise click.ClickException(str(exc)) from exc
    entries = state.decision_log[-limit:] if limit > 0 else state.decision_log
    if not entries:
        click.echo("No decisions recorded.")
        return
    for entry in entries:
        click.echo(f"{entry.timestamp} {entry.action:<22} {entry.reason}")


@cli.group("state")
def state_group() -> None:
    """Inspect or override the persisted record."""


@state_group.command("get")
@click.argument("key")
@project_options
def state_get_command(key: str, project_value: str | None, config_value: str) -> None:
    try:
        value = _runtime(project_value, config_value).store.get_value(key)
    except KeyError as exc:
        raise click.ClickException(f"No value at {key}") from exc
    except FlowpilotError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_json(value)


@state_group.command("set")
@click.argument("assignment")
@project_options
def state_set_command(assignment: str, project_value: str | None, config_value: str) -> None:
    key, separator, raw = assignment.partition("=")
    if not separator or not key:
        raise click.BadParameter(f"Expected KEY=VALUE, got {assignment!r}")
    try:
        state = _runtime(project_value, config_value).store.set_value(key, raw)
    except FlowpilotError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Set {key} (revision {state.revision})")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
