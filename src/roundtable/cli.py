from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path

import click

from roundtable import __version__
from roundtable.actors import ActorRoster, UnknownActorError
from roundtable.backends import ClaudeCodeBackend, ResilientBackend, RetryPolicy
from roundtable.backends.base import BackendExecutionError
from roundtable.config import RoundtableConfig, load_config, save_config
from roundtable.coordinator import Coordinator, render_briefing
from roundtable.guard import PathGuard
from roundtable.mutations import MutationPipeline
from roundtable.state import CoordinationStateError, StateStore
from roundtable.validator import CommandValidator

DEFAULT_CONFIG = "roundtable.toml"


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: RoundtableConfig
    store: StateStore
    backend: ResilientBackend
    coordinator: Coordinator


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _build_backend(config: RoundtableConfig, repo_root: Path) -> ResilientBackend:
    primary = ClaudeCodeBackend(
        binary=config.backend.binary, working_directory=repo_root, model=config.backend.model
    )
    fallback = None
    if config.backend.fallback_binary:
        fallback = ClaudeCodeBackend(
            binary=config.backend.fallback_binary,
            working_directory=repo_root,
            model=config.backend.model,
        )
    policy = RetryPolicy(
        max_retries=max(0, int(config.backend.max_retries)),
        backoff_seconds=max(0.0, float(config.backend.retry_backoff_seconds)),
        backoff_multiplier=max(1.0, float(config.backend.backoff_multiplier)),
        max_backoff_seconds=max(0.0, float(config.backend.max_backoff_seconds)),
        timeout_seconds=max(5.0, float(config.backend.timeout_seconds)),
    )
    return ResilientBackend(primary, policy, fallback_backend=fallback)


def _load_runtime(repo_root: Path, config_path: Path) -> Runtime:
    config = load_config(config_path)
    store = StateStore(repo_root / config.state.state_dir)
    backend = _build_backend(config, repo_root)
    try:
        roster = ActorRoster.build(
            config.roster.parsed_members(),
            backend,
            prompt_dir=repo_root / ".roundtable" / "prompts",
        )
        validator = CommandValidator(
            command=config.project.validator_command,
            repo_root=repo_root,
            timeout_seconds=config.project.validator_timeout_seconds,
            extensions=list(config.project.validate_extensions),
        )
        pipeline = MutationPipeline(
            repo_root,
            PathGuard.from_config(config.guardrails),
            validator,
            notes_dir=config.guardrails.notes_dir,
        )
        coordinator = Coordinator(roster, pipeline, store, config)
    except (UnknownActorError, ValueError) as exc:
        raise click.ClickException(f"Invalid roster configuration: {exc}") from exc
    backend.event_hook = coordinator.record_backend_event
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        store=store,
        backend=backend,
        coordinator=coordinator,
    )


@click.group()
@click.version_option(__version__, prog_name="roundtable")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """Roundtable CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("init")
@click.option("--topic", default="", help="Opening discussion topic.")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def init_command(topic: str, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = load_config(config_path)
    save_config(config_path, config)

    (repo_root / config.guardrails.notes_dir).mkdir(parents=True, exist_ok=True)
    store = StateStore(repo_root / config.state.state_dir)
    state = store.load_or_default()
    if topic:
        state.topic = topic
    if not store.exists() or topic:
        store.save(state)

    click.echo(f"Initialized Roundtable in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"State: {store.path}")
    click.echo(f"Roster: {', '.join(name for name, _ in config.roster.parsed_members())}")


@cli.command("run")
@click.option("--rounds", default=1, show_default=True, type=click.IntRange(min=1))
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def run_command(rounds: int, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    click.echo(render_briefing(runtime.store.load_or_default()))
    try:
        results = asyncio.run(runtime.coordinator.run(rounds))
    except (BackendExecutionError, CoordinationStateError) as exc:
        raise click.ClickException(str(exc)) from exc

    for result in results:
        line = (
            f"Round {result.round_number}: {result.start_phase} -> {result.end_phase} "
            f"({result.end_reason}, {result.turns} turns, {len(result.change_ids)} changes)"
        )
        click.echo(line)
        if result.diagnostic:
            click.echo(f"  {result.diagnostic}")
        if result.classification:
            click.echo(f"  Consensus classified as: {result.classification}")


@cli.command("status")
@click.option("--verbose", is_flag=True, default=False)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def status_command(verbose: bool, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    try:
        payload = runtime.coordinator.status(verbose=verbose)
    except CoordinationStateError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("note")
@click.argument("text")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def note_command(text: str, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    runtime.coordinator.set_note(text)
    click.echo("Human note saved; actors will see it next round.")


@cli.command("phase")
@click.argument("phase", type=click.Choice(["discussion", "implementation"]))
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def phase_command(phase: str, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    state = runtime.coordinator.force_phase(phase)
    click.echo(f"Phase set to {state.phase}.")


@cli.command("reset")
@click.option("--yes", is_flag=True, default=False, help="Do not ask for confirmation.")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def reset_command(yes: bool, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config = load_config(_resolve_config_path(repo_root, config_value))
    store = StateStore(repo_root / config.state.state_dir)
    if not yes:
        click.confirm(f"Delete {store.path}?", abort=True)
    if store.reset():
        click.echo("Coordination state removed.")
    else:
        click.echo("No coordination state to remove.")
