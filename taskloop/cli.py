"""CLI for taskloop.

Runs executor/judge dialogues with Claude Code and inspects stored runs.
"""

import asyncio
import dataclasses
import json
import logging
import signal
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from taskloop.config import OrchestratorConfig
from taskloop.discord_notifier import (
    format_run_finished,
    format_run_started,
    format_user_message,
    send_discord_message,
)
from taskloop.errors import ConfigError
from taskloop.logging_config import configure_logging
from taskloop.models import IterationState, MessageKind, RoleKind, RunPhase, TaskPlan, UserMessage
from taskloop.orchestrator import IterationOrchestrator
from taskloop.plan_parser import TaskPlanExtractor
from taskloop.prompts import format_duration
from taskloop.session import ClaudeCliSession, Role, format_tool_call
from taskloop.state import FileTaskStateStore, load_state, save_state
from taskloop.telemetry import create_metrics, setup_telemetry

console = Console()
logger = logging.getLogger(__name__)

# Model aliases for the --model flag
MODEL_ALIASES = {
    "haiku": "claude-haiku-4-5-20251001",
    "sonnet": "claude-sonnet-4-5-20250929",
    "opus": "claude-opus-4-5-20251101",
}

# MCP server name expected to provide task_done and send_user_feedback
MCP_SERVER_NAME = "taskloop"

_READ_ONLY_TOOLS = ["Read", "Glob", "Grep"]

_PHASE_COLORS = {
    RunPhase.COMPLETED: "green",
    RunPhase.EXHAUSTED: "yellow",
    RunPhase.CANCELLED: "yellow",
    RunPhase.TIMED_OUT: "red",
    RunPhase.FAILED: "red",
}

_MESSAGE_STYLES = {
    MessageKind.TEXT: "cyan",
    MessageKind.WARNING: "yellow",
    MessageKind.ERROR: "red",
    MessageKind.CANCELLED: "magenta",
}


@click.group()
@click.version_option(package_name="taskloop")
def cli() -> None:
    """taskloop - Iterative executor/judge dialogues for Claude Code."""
    pass


def build_roles(
    config: OrchestratorConfig,
    mcp_config: Path | None = None,
    with_reporter: bool = False,
) -> tuple[Role, Role, Role | None]:
    """Create Claude Code roles for a run.

    The executor gets the configured tool set. The judge and reporter get
    read-only tools, plus the feedback tools served over MCP when an
    mcp_config is given.
    """
    feedback_tools = []
    if mcp_config is not None:
        feedback_tools = [
            f"mcp__{MCP_SERVER_NAME}__{config.done_tool_name}",
            f"mcp__{MCP_SERVER_NAME}__send_user_feedback",
        ]

    executor = Role(
        name="executor",
        kind=RoleKind.EXECUTOR,
        session_factory=lambda: ClaudeCliSession(
            max_turns=config.max_turns,
            allowed_tools=config.allowed_tools,
            model=config.model,
        ),
    )
    judge = Role(
        name="judge",
        kind=RoleKind.JUDGE,
        session_factory=lambda: ClaudeCliSession(
            max_turns=config.max_turns,
            allowed_tools=_READ_ONLY_TOOLS + feedback_tools,
            model=config.model,
            mcp_config=mcp_config,
        ),
    )
    reporter = None
    if with_reporter:
        reporter = Role(
            name="reporter",
            kind=RoleKind.REPORTER,
            session_factory=lambda: ClaudeCliSession(
                max_turns=config.max_turns,
                allowed_tools=_READ_ONLY_TOOLS + feedback_tools[1:],
                model=config.model,
                mcp_config=mcp_config,
            ),
        )
    return executor, judge, reporter


@cli.command()
@click.argument(
    "task_file", type=click.Path(exists=True, dir_okay=False, path_type=Path)
)
@click.option("--request", "-r", default="", help="Original user request (default: read from the task file)")
@click.option(
    "--max-iterations",
    type=click.IntRange(min=1),
    default=None,
    help="Iteration cap (default: TASKLOOP_MAX_ITERATIONS or 3)",
)
@click.option(
    "--timeout",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Wall-clock budget in seconds (default: TASKLOOP_TIMEOUT or 24h)",
)
@click.option(
    "-m",
    "--model",
    type=click.Choice(["haiku", "sonnet", "opus"]),
    default=None,
    help="Claude model for all roles (default: Claude's default)",
)
@click.option(
    "--mcp-config",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help=f"MCP config whose '{MCP_SERVER_NAME}' server provides task_done and send_user_feedback",
)
@click.option("--reporter/--no-reporter", default=False, help="Add a reporter role")
@click.option(
    "--discord/--no-discord",
    default=True,
    help="Post messages to DISCORD_WEBHOOK_URL when it is set",
)
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging")
def run(
    task_file: Path,
    request: str,
    max_iterations: int | None,
    timeout: float | None,
    model: str | None,
    mcp_config: Path | None,
    reporter: bool,
    discord: bool,
    verbose: bool,
) -> None:
    """Run a dialogue for TASK_FILE until completion or a limit is hit."""
    try:
        config = OrchestratorConfig.from_env()
        overrides = {}
        if max_iterations is not None:
            overrides["max_iterations"] = max_iterations
        if timeout is not None:
            overrides["timeout_seconds"] = timeout
        if model is not None:
            overrides["model"] = MODEL_ALIASES[model]
        if mcp_config is None:
            # Judge falls back to the fenced JSON completion block
            overrides["feedback_tools"] = False
        if not discord:
            overrides["discord_webhook_url"] = None
        config = dataclasses.replace(config, **overrides)
    except ConfigError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        sys.exit(2)

    configure_logging(
        level=logging.DEBUG if verbose else logging.WARNING,
        log_dir=config.tasks_dir,
    )

    phase = asyncio.run(_run_dialogue(task_file, request, config, mcp_config, reporter))
    sys.exit(0 if phase == RunPhase.COMPLETED else 1)


async def _run_dialogue(
    task_file: Path,
    request: str,
    config: OrchestratorConfig,
    mcp_config: Path | None,
    with_reporter: bool,
) -> RunPhase:
    """Internal async implementation of a dialogue run."""
    tracer, meter = setup_telemetry(config)
    create_metrics(meter)

    store = FileTaskStateStore(config.tasks_dir)
    executor, judge, reporter = build_roles(config, mcp_config, with_reporter)

    def on_tool_use(tool_name: str, tool_input: dict) -> None:
        """Display executor tool calls in real time."""
        console.print(f"           {format_tool_call(tool_name, tool_input)}")

    def on_plan_generated(plan: TaskPlan) -> None:
        milestones = "\n".join(f"{i}. {m}" for i, m in enumerate(plan.milestones, 1))
        console.print(
            Panel(milestones or "(no milestones)", title=f"Plan: {plan.title}", expand=False)
        )

    orchestrator = IterationOrchestrator(
        executor=executor,
        judge=judge,
        reporter=reporter,
        config=config,
        store=store,
        on_plan_generated=on_plan_generated,
        on_tool_use=on_tool_use,
        tracer=tracer,
    )

    abort = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, abort.set)
    except (NotImplementedError, RuntimeError):
        # Not supported on this platform; Ctrl-C falls back to KeyboardInterrupt
        pass

    dialogue = orchestrator.run(task_file, request, abort=abort)
    task_id = dialogue.state.task_id
    _store_task_spec(store, task_id, task_file)

    webhook = config.discord_webhook_url
    console.print(f"[bold]Starting task:[/bold] {task_id}")
    if webhook:
        await send_discord_message(webhook, format_run_started(task_id, config.max_iterations))

    started = loop.time()
    try:
        async with dialogue:
            async for message in dialogue:
                _print_message(message)
                if webhook:
                    await send_discord_message(webhook, format_user_message(message, task_id))
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass

    state = dialogue.state
    duration = loop.time() - started

    if state.iteration > 0:
        try:
            save_state(state, store.state_path(task_id))
        except OSError as e:
            logger.warning(f"Failed to save run state for {task_id}: {e}")

    _print_run_summary(state, duration)
    if webhook:
        await send_discord_message(webhook, format_run_finished(state, duration))

    return state.phase


def _store_task_spec(store: FileTaskStateStore, task_id: str, task_file: Path) -> None:
    """Copy the task spec into the task directory unless it already lives there."""
    target = store.task_dir(task_id) / "task.md"
    try:
        if target.exists() and target.resolve() == task_file.resolve():
            return
        content = task_file.read_text(encoding="utf-8")
        if content.strip():
            store.write_task_spec(task_id, content)
    except (OSError, UnicodeDecodeError) as e:
        logger.warning(f"Could not copy task spec for {task_id}: {e}")


def _print_message(message: UserMessage) -> None:
    """Render one user-facing message."""
    style = _MESSAGE_STYLES.get(message.kind, "white")
    body = message.content
    if message.files:
        body += "\n\nFiles:\n" + "\n".join(f"  {f}" for f in message.files)
    console.print(
        Panel(body, title=f"{message.source} ({message.kind.value})", border_style=style)
    )


def _print_run_summary(state: IterationState, duration: float) -> None:
    color = _PHASE_COLORS.get(state.phase, "white")
    console.print(f"\n[bold {color}]Task {state.phase.value.upper()}[/bold {color}]")
    console.print(f"  Task: {state.task_id}")
    console.print(f"  Iterations: {state.iteration}/{state.max_iterations}")
    console.print(f"  Duration: {format_duration(duration)}")
    if state.completion_files:
        console.print(f"  Files: {', '.join(state.completion_files)}")
    if state.anomalies:
        console.print(f"  [yellow]Anomalies: {len(state.anomalies)}[/yellow]")
    if state.error:
        console.print(f"  [red]Error: {state.error}[/red]")


@cli.command("extract-plan")
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--request", "-r", default="", help="Original user request to record")
def extract_plan(file: Path, request: str) -> None:
    """Extract a task plan from judge output in FILE and print it as JSON."""
    plan = TaskPlanExtractor().extract(file.read_text(encoding="utf-8"), request)
    click.echo(json.dumps(dataclasses.asdict(plan), indent=2))


def _config_from_env() -> OrchestratorConfig:
    """Load config from the environment, exiting with status 2 if it is invalid."""
    try:
        return OrchestratorConfig.from_env()
    except ConfigError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        sys.exit(2)


@cli.command()
@click.option("--limit", "-n", default=10, help="Number of runs to show")
def history(limit: int) -> None:
    """Show history of dialogue runs."""
    config = _config_from_env()
    store = FileTaskStateStore(config.tasks_dir)

    runs: list[IterationState] = []
    for task_id in store.list_task_ids():
        try:
            state = load_state(store.state_path(task_id))
        except (OSError, ValueError, TypeError, KeyError) as e:
            logger.warning(f"Skipping unreadable run state for {task_id}: {e}")
            continue
        if state:
            runs.append(state)

    if not runs:
        console.print("[yellow]No dialogue runs found[/yellow]")
        return

    # Most recent first
    runs.sort(key=lambda s: s.started_at, reverse=True)
    runs = runs[:limit]

    table = Table(title="Dialogue History")
    table.add_column("Task")
    table.add_column("Started")
    table.add_column("Outcome")
    table.add_column("Iterations", justify="right")
    table.add_column("Anomalies", justify="right")

    for state in runs:
        color = _PHASE_COLORS.get(state.phase, "white")
        table.add_row(
            state.task_id,
            state.started_at.strftime("%Y-%m-%d %H:%M"),
            f"[{color}]{state.phase.value}[/{color}]",
            f"{state.iteration}/{state.max_iterations}",
            str(len(state.anomalies)),
        )

    console.print(table)


@cli.command()
@click.argument("task_id")
def show(task_id: str) -> None:
    """Show the stored iterations and last judgment of TASK_ID."""
    config = _config_from_env()
    store = FileTaskStateStore(config.tasks_dir)

    if not store.task_dir(task_id).is_dir():
        console.print(f"[red]No stored task {task_id} in {config.tasks_dir}[/red]")
        sys.exit(1)

    state = load_state(store.state_path(task_id))
    iterations = store.list_iterations(task_id)

    console.print(f"[bold]Task:[/bold] {task_id}")
    if state:
        color = _PHASE_COLORS.get(state.phase, "white")
        console.print(f"  Outcome: [{color}]{state.phase.value}[/{color}]")
        console.print(f"  Started: {state.started_at.strftime('%Y-%m-%d %H:%M:%S')}")
    console.print(f"  Iterations on disk: {', '.join(map(str, iterations)) or 'none'}")
    console.print(f"  Final result marker: {'yes' if store.has_final_result(task_id) else 'no'}")

    for iteration in reversed(iterations):
        judgment = store.read_judgment(task_id, iteration)
        if judgment is not None:
            console.print(Panel(judgment, title=f"Judgment (iteration {iteration})"))
            break


def main() -> None:
    """Main entry point for the taskloop CLI."""
    cli()


if __name__ == "__main__":
    main()
