"""Iteration orchestrator for executor/judge dialogues.

Drives a bounded loop: the executor works on a prompt, the judge evaluates
the result and either signals completion or writes the next prompt. An
optional reporter turns the judgment into the next prompt instead. Runs end
on completion, on the iteration cap, on the wall-clock budget, on an abort
request, or on an unexpected session failure.

Only explicit "send feedback" tool calls by the judge or reporter reach the
user; the orchestrator adds its own notices for terminal outcomes.
"""

import asyncio
import inspect
import logging
from collections.abc import AsyncIterator
from contextlib import AsyncExitStack, aclosing
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable

from opentelemetry import trace

from taskloop import telemetry
from taskloop.completion import detect
from taskloop.config import OrchestratorConfig
from taskloop.errors import OrchestratorError, RunCancelledError, RunTimeoutError, TaskSpecError
from taskloop.models import (
    CompletionSignal,
    Event,
    EventKind,
    IterationState,
    MessageKind,
    RoleKind,
    RunPhase,
    TaskPlan,
    UserMessage,
)
from taskloop.plan_parser import TaskPlanExtractor, generate_task_id, parse_task_spec
from taskloop.prompts import (
    build_evaluation_prompt,
    build_first_prompt,
    build_progress_prompt,
    build_reporter_prompt,
    cancelled_message,
    exhausted_message,
    failure_message,
    final_summary,
    precondition_message,
    timeout_message,
)
from taskloop.router import ProgressRouter, Route
from taskloop.session import AgentSession, Role
from taskloop.state import TaskStateStore

logger = logging.getLogger(__name__)

PlanCallback = Callable[[TaskPlan], Awaitable[None] | None]
ToolUseCallback = Callable[[str, dict], None]

TASK_SPEC_FILENAME = "task.md"


def derive_task_id(task_spec: str | Path, task_id: str | None = None) -> str:
    """Pick the task ID for a run.

    An explicit ID wins. For a path, "<dir>/task.md" yields the directory name
    and any other file its stem. Inline content gets a generated ID.
    """
    if task_id:
        return task_id
    if isinstance(task_spec, Path):
        if task_spec.name.lower() == TASK_SPEC_FILENAME and task_spec.parent.name:
            return task_spec.parent.name
        if task_spec.stem:
            return task_spec.stem
    return generate_task_id()


@dataclass
class _RunContext:
    """Per-run values shared by the iteration helpers."""

    task_spec: str
    original_request: str
    deadline: float
    started: float
    abort: asyncio.Event | None
    router: ProgressRouter
    span: trace.Span
    # mtime of a final_result.md left by an earlier run, None if absent
    marker_baseline: float | None = None


class DialogueRun:
    """One execution of the dialogue loop.

    Async iterable of UserMessage, consumable once. Use it as an async
    context manager so sessions are closed if the caller stops early:

        async with orchestrator.run(path, request) as run:
            async for message in run:
                deliver(message)
        print(run.state.phase)
    """

    def __init__(
        self,
        orchestrator: "IterationOrchestrator",
        task_spec: str | Path,
        original_request: str,
        task_id: str | None,
        abort: asyncio.Event | None,
    ) -> None:
        self._orchestrator = orchestrator
        self.task_spec = task_spec
        self.original_request = original_request
        self.abort = abort
        self.state = IterationState(
            task_id=derive_task_id(task_spec, task_id),
            max_iterations=orchestrator.config.max_iterations,
        )
        self._messages: AsyncIterator[UserMessage] | None = None

    def __aiter__(self) -> AsyncIterator[UserMessage]:
        if self._messages is not None:
            raise OrchestratorError(
                f"Dialogue run for task {self.state.task_id} can only be iterated once"
            )
        self._messages = self._orchestrator._drive(self)
        return self._messages

    async def __aenter__(self) -> "DialogueRun":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Stop the run and close any open sessions."""
        if self._messages is not None:
            await self._messages.aclose()


class IterationOrchestrator:
    """Coordinates executor, judge and optional reporter roles.

    Each iteration gets fresh sessions from the role factories; they are
    closed when the iteration ends, however it ends.
    """

    def __init__(
        self,
        executor: Role,
        judge: Role,
        reporter: Role | None = None,
        config: OrchestratorConfig | None = None,
        store: TaskStateStore | None = None,
        on_plan_generated: PlanCallback | None = None,
        on_tool_use: ToolUseCallback | None = None,
        tracer: trace.Tracer | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            executor: Role that does the work
            judge: Role that evaluates results and signals completion
            reporter: Optional role that writes the next prompt and user updates
            config: Loop configuration (defaults if None)
            store: Artifact store; nothing is persisted if None
            on_plan_generated: Called once with the plan extracted from the
                first judgment. Sync or async. Failures are logged.
            on_tool_use: Monitoring hook receiving (tool_name, tool_input) for
                each executor tool call. Use with format_tool_call().
            tracer: OpenTelemetry tracer (uses the global provider if None)
        """
        self.executor = executor
        self.judge = judge
        self.reporter = reporter
        self.config = config or OrchestratorConfig()
        self.store = store
        self.on_plan_generated = on_plan_generated
        self.on_tool_use = on_tool_use
        self.tracer = tracer or trace.get_tracer("taskloop")

    def run(
        self,
        task_spec: str | Path,
        original_request: str = "",
        task_id: str | None = None,
        abort: asyncio.Event | None = None,
    ) -> DialogueRun:
        """Start a dialogue for a task.

        Args:
            task_spec: Path to a task spec file, or the spec content itself
            original_request: The user's request; read from the task spec's
                "Original Request" section when empty
            task_id: Explicit task ID (derived from the path if None)
            abort: Event that cancels the run when set

        Returns:
            DialogueRun yielding user-facing messages
        """
        return DialogueRun(self, task_spec, original_request, task_id, abort)

    # Run lifecycle

    async def _drive(self, run: DialogueRun) -> AsyncIterator[UserMessage]:
        state = run.state
        loop = asyncio.get_running_loop()
        started = loop.time()
        span = self.tracer.start_span(
            "taskloop.run", attributes={"task.id": state.task_id}
        )
        precondition_failed = False

        try:
            try:
                task_spec = _read_task_spec(run.task_spec)
            except TaskSpecError as e:
                precondition_failed = True
                logger.error(f"Task {state.task_id} not started: {e}")
                state.phase = RunPhase.FAILED
                state.error = str(e)
                yield UserMessage(
                    content=precondition_message(str(e)), kind=MessageKind.ERROR
                )
                return

            original_request = run.original_request or parse_task_spec(task_spec).user_request
            state.current_prompt = build_first_prompt(task_spec)
            ctx = _RunContext(
                task_spec=task_spec,
                original_request=original_request,
                deadline=started + self.config.timeout_seconds,
                started=started,
                abort=run.abort,
                router=ProgressRouter(self.config.progress_interval_seconds),
                span=span,
                marker_baseline=self._final_result_mtime(state.task_id),
            )
            if ctx.marker_baseline is not None:
                logger.info(
                    f"Task {state.task_id}: ignoring final result marker left by an earlier run"
                )

            logger.info(
                f"Starting dialogue for task {state.task_id} "
                f"(max {state.max_iterations} iterations)"
            )

            try:
                async with aclosing(self._iterate(state, ctx)) as messages:
                    async for message in messages:
                        yield message
            except RunCancelledError as e:
                logger.info(f"Task {state.task_id} cancelled: {e}")
                state.phase = RunPhase.CANCELLED
                yield UserMessage(
                    content=cancelled_message(
                        state.task_id, state.iteration, state.max_iterations
                    ),
                    kind=MessageKind.CANCELLED,
                )
            except RunTimeoutError as e:
                logger.warning(f"Task {state.task_id} timed out: {e}")
                state.phase = RunPhase.TIMED_OUT
                yield UserMessage(
                    content=timeout_message(
                        state.task_id,
                        state.iteration,
                        state.max_iterations,
                        elapsed=loop.time() - started,
                        budget=self.config.timeout_seconds,
                    ),
                    kind=MessageKind.ERROR,
                )
            except asyncio.CancelledError:
                state.phase = RunPhase.CANCELLED
                raise
            except Exception as e:
                logger.exception(f"Task {state.task_id} failed in iteration {state.iteration}")
                state.phase = RunPhase.FAILED
                state.error = str(e)
                yield UserMessage(
                    content=failure_message(state.task_id, str(e)), kind=MessageKind.ERROR
                )
            else:
                if state.phase != RunPhase.COMPLETED:
                    logger.warning(
                        f"Task {state.task_id} stopped after reaching max iterations "
                        f"({state.max_iterations}) without a completion signal"
                    )
                    state.phase = RunPhase.EXHAUSTED
                    yield UserMessage(
                        content=exhausted_message(state.task_id, state.max_iterations),
                        kind=MessageKind.WARNING,
                    )

            state.user_message_sent = ctx.router.user_message_sent
            if not state.user_message_sent:
                yield ctx.router.no_feedback_warning(state.phase.value, state.task_id)

        finally:
            if not state.phase.is_terminal:
                # Consumer stopped iterating before the run finished
                state.phase = RunPhase.CANCELLED
            state.finished_at = datetime.now()
            duration = loop.time() - started
            span.set_attribute("run.outcome", state.phase.value)
            span.set_attribute("run.iterations", state.iteration)
            span.end()

            if not precondition_failed:
                logger.info(
                    f"Task {state.task_id} finished as {state.phase.value} after "
                    f"{state.iteration} iteration(s) in {duration:.1f}s"
                )
            try:
                telemetry.runs_counter.add(1, {"outcome": state.phase.value})
                telemetry.run_duration.record(duration, {"outcome": state.phase.value})
            except (AttributeError, NameError):
                pass

    async def _iterate(
        self, state: IterationState, ctx: _RunContext
    ) -> AsyncIterator[UserMessage]:
        while state.iteration < state.max_iterations:
            self._check_interrupts(ctx)

            state.iteration += 1
            state.phase = RunPhase.EXECUTING
            logger.info(f"Task {state.task_id}: iteration {state.iteration}/{state.max_iterations}")

            try:
                telemetry.iterations_counter.add(1)
            except (AttributeError, NameError):
                pass

            iteration_span = self.tracer.start_span(
                "taskloop.iteration",
                context=trace.set_span_in_context(ctx.span),
                attributes={"task.id": state.task_id, "iteration": state.iteration},
            )
            try:
                async with aclosing(self._run_iteration(state, ctx)) as messages:
                    async for message in messages:
                        yield message
            finally:
                iteration_span.set_attribute(
                    "iteration.completed", state.phase == RunPhase.COMPLETED
                )
                iteration_span.end()

            if state.phase == RunPhase.COMPLETED:
                return

    async def _run_iteration(
        self, state: IterationState, ctx: _RunContext
    ) -> AsyncIterator[UserMessage]:
        """One executor/judge round with its own sessions."""
        async with AsyncExitStack() as stack:
            executor = self._open_session(stack, self.executor)
            judge = self._open_session(stack, self.judge)
            reporter = self._open_session(stack, self.reporter) if self.reporter else None

            # Execution
            collected: list[str] = []
            terminal: Event | None = None
            state.executor_invocations += 1
            stream = executor.invoke(state.current_prompt)
            try:
                while True:
                    event = await self._next_event(stream, ctx)
                    if event is None:
                        break
                    if event.kind == EventKind.TERMINAL:
                        terminal = event
                        break

                    if event.kind == EventKind.TOOL_INVOCATION:
                        self._notify_tool_use(event)

                    if ctx.router.route(event, RoleKind.EXECUTOR) != Route.PROGRESS:
                        continue
                    if event.content:
                        collected.append(event.content)
                    if not self.config.forward_progress:
                        continue

                    ctx.router.add_progress(event)
                    progress = ctx.router.take_progress()
                    if progress:
                        async for message in self._forward_progress(
                            judge, progress, state, ctx
                        ):
                            yield message
                        if state.phase == RunPhase.COMPLETED:
                            return
            finally:
                await _close_stream(stream)

            ctx.router.discard_progress()
            if terminal is not None and terminal.content:
                if not collected or collected[-1] != terminal.content:
                    collected.append(terminal.content)
            execution_output = "\n".join(collected)

            if terminal is None:
                self._record_anomaly(
                    state,
                    "missing_terminal",
                    f"Iteration {state.iteration}: executor stream ended without "
                    "a terminal event; retrying with the same prompt",
                )
                self._persist(
                    "partial execution",
                    state.task_id,
                    lambda s: s.write_execution(
                        state.task_id, state.iteration, execution_output
                    ),
                )
                return

            self._persist(
                "execution",
                state.task_id,
                lambda s: s.write_execution(state.task_id, state.iteration, execution_output),
            )

            # Judgment
            state.phase = RunPhase.JUDGING
            state.judge_invocations += 1
            judge_events = await self._collect(
                judge,
                build_evaluation_prompt(
                    ctx.task_spec,
                    execution_output,
                    state.iteration,
                    state.max_iterations,
                    self.config.done_tool_name,
                    feedback_tools=self.config.feedback_tools,
                ),
                ctx,
            )
            judgment = _joined_text(judge_events)

            signal = detect(judge_events, self.config.done_tool_name)
            if signal is None and self._has_new_final_result(state.task_id, ctx):
                logger.info(f"Task {state.task_id}: final result marker found")
                signal = CompletionSignal(source="final_result")

            for message in ctx.router.user_messages(
                judge_events,
                source=self.judge.name,
                files=signal.files if signal else None,
                role_kind=RoleKind.JUDGE,
            ):
                yield message

            self._persist(
                "judgment",
                state.task_id,
                lambda s: s.write_judgment(state.task_id, state.iteration, judgment),
            )

            if state.iteration == 1 and self.on_plan_generated and not state.task_plan_saved:
                await self._save_plan(state, judgment, ctx.original_request)

            if signal is not None:
                self._complete(state, signal)
                return

            # Next prompt
            if reporter is not None:
                reporter_events = await self._collect(
                    reporter,
                    build_reporter_prompt(
                        ctx.task_spec,
                        execution_output,
                        judgment,
                        state.iteration,
                        state.max_iterations,
                        feedback_tools=self.config.feedback_tools,
                    ),
                    ctx,
                )
                for message in ctx.router.user_messages(
                    reporter_events,
                    source=self.reporter.name,
                    role_kind=RoleKind.REPORTER,
                ):
                    yield message
                state.current_prompt = _joined_text(reporter_events)
            else:
                state.current_prompt = judgment

            state.phase = RunPhase.CONTINUING
            logger.debug(
                f"Task {state.task_id}: continuing with a "
                f"{len(state.current_prompt)} character prompt"
            )

    async def _forward_progress(
        self,
        judge: AgentSession,
        progress: str,
        state: IterationState,
        ctx: _RunContext,
    ) -> AsyncIterator[UserMessage]:
        """Send a progress update to the judge and handle its reply.

        The reply is not used as a prompt. A completion signal in it ends the
        run; it is accepted but recorded as an anomaly.
        """
        events = await self._collect(
            judge,
            build_progress_prompt(progress, state.iteration, self.config.done_tool_name),
            ctx,
        )
        signal = detect(events, self.config.done_tool_name)

        for message in ctx.router.user_messages(
            events,
            source=self.judge.name,
            files=signal.files if signal else None,
            role_kind=RoleKind.JUDGE,
        ):
            yield message

        if signal is not None:
            self._record_anomaly(
                state,
                "completion_during_progress",
                f"Iteration {state.iteration}: judge signalled completion "
                "in response to a progress update",
            )
            self._complete(state, signal)

    # Session plumbing

    def _open_session(self, stack: AsyncExitStack, role: Role) -> AgentSession:
        session = role.session_factory()
        stack.push_async_callback(_close_session, role, session)
        logger.debug(f"Opened {role.kind.value} session '{role.name}'")
        return session

    async def _collect(
        self, session: AgentSession, prompt: str, ctx: _RunContext
    ) -> list[Event]:
        """Run a prompt to its terminal event and buffer everything."""
        events: list[Event] = []
        stream = session.invoke(prompt)
        try:
            while True:
                event = await self._next_event(stream, ctx)
                if event is None:
                    break
                events.append(event)
                if event.kind == EventKind.TERMINAL:
                    break
        finally:
            await _close_stream(stream)
        return events

    async def _next_event(
        self, stream: AsyncIterator[Event], ctx: _RunContext
    ) -> Event | None:
        """Await the next event, racing the abort signal and the deadline.

        Returns:
            The next event, or None when the stream is exhausted

        Raises:
            RunCancelledError: If the abort event is set first
            RunTimeoutError: If the run's deadline passes first
        """
        self._check_interrupts(ctx)

        loop = asyncio.get_running_loop()
        next_task = asyncio.ensure_future(stream.__anext__())
        waiters: set[asyncio.Future] = {next_task}
        abort_task = None
        if ctx.abort is not None:
            abort_task = asyncio.ensure_future(ctx.abort.wait())
            waiters.add(abort_task)

        try:
            done, _ = await asyncio.wait(
                waiters,
                timeout=max(ctx.deadline - loop.time(), 0),
                return_when=asyncio.FIRST_COMPLETED,
            )
            if next_task in done:
                try:
                    return next_task.result()
                except StopAsyncIteration:
                    return None

            if abort_task is not None and abort_task in done:
                raise RunCancelledError("abort requested while waiting for a session")
            raise RunTimeoutError(
                f"no result within {self.config.timeout_seconds:.0f}s"
            )
        finally:
            pending = [task for task in waiters if not task.done()]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

    def _check_interrupts(self, ctx: _RunContext) -> None:
        if ctx.abort is not None and ctx.abort.is_set():
            raise RunCancelledError("abort requested")
        if asyncio.get_running_loop().time() >= ctx.deadline:
            raise RunTimeoutError(
                f"time budget of {self.config.timeout_seconds:.0f}s exhausted"
            )

    # Side effects

    def _notify_tool_use(self, event: Event) -> None:
        if self.on_tool_use is None:
            return
        try:
            self.on_tool_use(event.raw_tool_name or event.tool_name or "", event.tool_input or {})
        except Exception:
            logger.warning("on_tool_use callback failed", exc_info=True)

    def _persist(
        self, what: str, task_id: str, write: Callable[[TaskStateStore], None]
    ) -> None:
        if self.store is None:
            return
        try:
            write(self.store)
        except Exception:
            logger.warning(f"Failed to write {what} for task {task_id}", exc_info=True)

    def _has_new_final_result(self, task_id: str, ctx: _RunContext) -> bool:
        """True if the final_result.md marker was written during this run."""
        mtime = self._final_result_mtime(task_id)
        if mtime is None:
            return False
        return ctx.marker_baseline is None or mtime > ctx.marker_baseline

    def _final_result_mtime(self, task_id: str) -> float | None:
        if self.store is None:
            return None
        try:
            return self.store.final_result_mtime(task_id)
        except Exception:
            logger.warning(f"Failed to check final result for task {task_id}", exc_info=True)
            return None

    async def _save_plan(
        self, state: IterationState, judgment: str, original_request: str
    ) -> None:
        plan = TaskPlanExtractor(generate_id=lambda: state.task_id).extract(
            judgment, original_request
        )
        self._persist("plan", state.task_id, lambda s: s.write_plan(state.task_id, plan))

        try:
            result = self.on_plan_generated(plan)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.warning(f"Plan callback failed for task {state.task_id}", exc_info=True)
            return

        state.task_plan_saved = True
        logger.info(
            f"Task {state.task_id}: plan '{plan.title}' saved "
            f"with {len(plan.milestones)} milestone(s)"
        )

    def _complete(self, state: IterationState, signal: CompletionSignal) -> None:
        state.phase = RunPhase.COMPLETED
        state.completion_files = list(signal.files)
        logger.info(
            f"Task {state.task_id} completed in iteration {state.iteration} "
            f"(signal: {signal.source}, files: {len(signal.files)})"
        )
        summary = final_summary(state.task_id, state.iteration, state.completion_files)
        self._persist(
            "final summary",
            state.task_id,
            lambda s: s.write_final_summary(state.task_id, summary),
        )

    def _record_anomaly(self, state: IterationState, kind: str, description: str) -> None:
        logger.warning(f"Task {state.task_id}: {description}")
        state.anomalies.append(description)
        try:
            telemetry.anomalies_counter.add(1, {"type": kind})
        except (AttributeError, NameError):
            pass


def _read_task_spec(task_spec: str | Path) -> str:
    """Load task spec content, rejecting missing or blank specs."""
    if isinstance(task_spec, Path):
        try:
            content = task_spec.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise TaskSpecError(f"task spec {task_spec} could not be read ({e})") from e
    else:
        content = task_spec or ""

    if not content.strip():
        raise TaskSpecError("task spec is empty")
    return content


def _joined_text(events: list[Event]) -> str:
    """Concatenate TEXT content, falling back to the terminal result."""
    text = "\n".join(e.content for e in events if e.kind == EventKind.TEXT and e.content)
    if text:
        return text
    for event in events:
        if event.kind == EventKind.TERMINAL and event.content:
            return event.content
    return ""


async def _close_stream(stream: AsyncIterator[Event]) -> None:
    aclose = getattr(stream, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except RuntimeError:
        # Generator still running: its pending __anext__ was just cancelled
        logger.debug("Event stream could not be closed cleanly", exc_info=True)


async def _close_session(role: Role, session: AgentSession) -> None:
    try:
        await session.close()
    except Exception:
        logger.warning(f"Failed to close {role.kind.value} session '{role.name}'", exc_info=True)
    else:
        logger.debug(f"Closed {role.kind.value} session '{role.name}'")
