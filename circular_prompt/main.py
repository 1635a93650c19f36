import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Any, NoReturn

import click
from dotenv import load_dotenv
from rich.markup import escape

from circular_prompt import __version__
from circular_prompt.client import ModelClient, OpenAIChatClient
from circular_prompt.config import ClassifierConfig, CycleConfig, LoopConfig, load_config
from circular_prompt.loop import (
    ProgressState,
    ProgressStore,
    RunStatus,
    TaskSpec,
    TerminationClassifier,
    ThreadManager,
    state_path_for,
)
from circular_prompt.ui import StatusDisplay, get_console
from circular_prompt.utils.exceptions import CycleError

# Load environment variables from .env file
load_dotenv()

logger = logging.getLogger(__name__)
console = get_console()

EXIT_COMPLETE = 0
EXIT_ERROR = 1
EXIT_BLOCKED = 3
EXIT_IN_PROGRESS = 4

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]


def setup_logging(log_level: str = "WARNING") -> None:
    """Configure logging for the CLI."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[
            logging.StreamHandler(sys.stderr),
        ],
    )


def exit_code_for(state: ProgressState) -> int:
    if state.status is RunStatus.COMPLETE:
        return EXIT_COMPLETE
    if state.status is RunStatus.BLOCKED:
        return EXIT_BLOCKED
    return EXIT_IN_PROGRESS


def build_client(config: CycleConfig, context_window: int) -> ModelClient:
    """Create the model client used by ``start`` and ``resume``."""
    return OpenAIChatClient(config.client, context_window=context_window)


async def _drive(
    config: CycleConfig,
    loop_config: LoopConfig,
    task: TaskSpec,
    store: ProgressStore,
    resume: bool,
) -> ProgressState:
    cancel_event = asyncio.Event()
    event_loop = asyncio.get_running_loop()
    try:
        event_loop.add_signal_handler(signal.SIGINT, cancel_event.set)
        handler_installed = True
    except (NotImplementedError, RuntimeError):
        handler_installed = False

    try:
        async with build_client(config, loop_config.context_window) as client:
            manager = ThreadManager(
                task=task,
                client=client,
                store=store,
                config=loop_config,
                classifier=TerminationClassifier.from_config(config.classifier),
                cancel_event=cancel_event,
            )
            return await (manager.resume() if resume else manager.run())
    finally:
        if handler_installed:
            event_loop.remove_signal_handler(signal.SIGINT)


def _finish(ctx: click.Context, state: ProgressState) -> None:
    display = StatusDisplay(console)
    display.show_state(state, show_errors=state.status is RunStatus.BLOCKED)
    display.show_completion(state)
    ctx.exit(exit_code_for(state))


def _fail(ctx: click.Context, message: str) -> NoReturn:
    console.print(f"[error]{escape(message)}[/error]")
    ctx.exit(EXIT_ERROR)


@click.group()
@click.version_option(__version__, prog_name="circular-prompt")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default=None,
    help="Logging level (overrides configuration)",
)
@click.pass_context
def cli(ctx, log_level: str | None):
    """circular-prompt - keep an agent working across fresh context windows.

    Examples:
        circular-prompt start --prompt PROMPT.md --context docs/arch.md
        circular-prompt status .circular-prompt/state/<task>/progress.json
        circular-prompt resume .circular-prompt/state/<task>/progress.json
    """
    ctx.ensure_object(dict)
    ctx.obj["log_level"] = log_level


@cli.command()
@click.option(
    "--prompt",
    "prompt_path",
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Task prompt file",
)
@click.option(
    "--context",
    "context_paths",
    multiple=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Base context file (repeatable)",
)
@click.option("--threshold", type=float, default=None, help="Context usage ratio that triggers a restart")
@click.option("--max-iterations", type=int, default=None, help="Maximum number of iterations")
@click.option(
    "--state-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Directory holding task state",
)
@click.option("--task-id", default=None, help="Task identity (defaults to a prompt hash prefix)")
@click.option(
    "--config",
    "config_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Additional TOML configuration file",
)
@click.option(
    "--phrases",
    "phrases_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Termination phrase data (TOML or JSON)",
)
@click.pass_context
def start(
    ctx,
    prompt_path: Path,
    context_paths: tuple[Path, ...],
    threshold: float | None,
    max_iterations: int | None,
    state_dir: Path | None,
    task_id: str | None,
    config_file: Path | None,
    phrases_file: Path | None,
):
    """Start a new circular prompting run."""
    overrides: dict[str, Any] = {}
    if threshold is not None:
        overrides.setdefault("loop", {})["threshold"] = threshold
    if max_iterations is not None:
        overrides.setdefault("loop", {})["max_iterations"] = max_iterations
    if state_dir is not None:
        overrides["state_dir"] = str(state_dir)

    try:
        config = load_config(config_file=config_file, overrides=overrides)
        if phrases_file is not None:
            config.classifier = ClassifierConfig.from_file(phrases_file)
    except CycleError as e:
        _fail(ctx, f"Configuration Error: {e}")

    setup_logging(ctx.obj.get("log_level") or config.log_level)

    errors = config.validate_runtime()
    if errors:
        for error in errors:
            console.print(f"[error]{escape(error)}[/error]")
        ctx.exit(EXIT_ERROR)

    try:
        task = TaskSpec.from_files(prompt_path, list(context_paths), task_id=task_id)
    except (OSError, ValueError) as e:
        _fail(ctx, f"Cannot read the task: {e}")

    store = ProgressStore(state_path_for(config.state_dir, task.task_id))
    console.print(f"[bold]Starting task {task.task_id}[/bold] [dim]({store.path})[/dim]")

    try:
        state = asyncio.run(_drive(config, config.loop, task, store, resume=False))
    except CycleError as e:
        _fail(ctx, f"Error: {e}")
    except Exception as e:
        logger.exception("Run failed")
        _fail(ctx, f"Unexpected error: {e}")

    _finish(ctx, state)


@cli.command()
@click.argument("state_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--config",
    "config_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Additional TOML configuration file",
)
@click.pass_context
def resume(ctx, state_path: Path, config_file: Path | None):
    """Resume a run from its state file."""
    try:
        config = load_config(config_file=config_file)
    except CycleError as e:
        _fail(ctx, f"Configuration Error: {e}")

    setup_logging(ctx.obj.get("log_level") or config.log_level)

    store = ProgressStore(state_path)
    try:
        state = asyncio.run(store.load())
    except CycleError as e:
        _fail(ctx, f"Error: {e}")
    if state is None:
        _fail(ctx, f"No state found at {state_path}")

    if state.status.is_terminal:
        console.print(f"[dim]Task {state.task_id} is already {state.status.value}[/dim]")
        ctx.exit(exit_code_for(state))

    prompt_file = state.task_source.get("prompt_path")
    if not prompt_file:
        _fail(ctx, "State file does not record where the task prompt came from")

    errors = config.validate_runtime()
    if errors:
        for error in errors:
            console.print(f"[error]{escape(error)}[/error]")
        ctx.exit(EXIT_ERROR)

    try:
        loop_config = LoopConfig.model_validate(state.settings) if state.settings else config.loop
        task = TaskSpec.from_files(
            Path(prompt_file),
            [Path(p) for p in state.task_source.get("context_paths", [])],
            task_id=state.task_id,
        )
    except (OSError, ValueError) as e:
        _fail(ctx, f"Cannot rebuild the task: {e}")

    console.print(f"[bold]Resuming task {task.task_id}[/bold]")
    try:
        state = asyncio.run(_drive(config, loop_config, task, store, resume=True))
    except CycleError as e:
        _fail(ctx, f"Error: {e}")
    except Exception as e:
        logger.exception("Run failed")
        _fail(ctx, f"Unexpected error: {e}")

    _finish(ctx, state)


@cli.command()
@click.argument("state_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def status(ctx, state_path: Path):
    """Show the progress of a run."""
    setup_logging(ctx.obj.get("log_level") or "WARNING")

    try:
        state = asyncio.run(ProgressStore(state_path).load())
    except CycleError as e:
        _fail(ctx, f"Error: {e}")
    if state is None:
        _fail(ctx, f"No state found at {state_path}")

    StatusDisplay(console).show_state(state)
    ctx.exit(exit_code_for(state))


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
