"""Data models for taskloop.

Defines the event stream produced by agent sessions, the structured values
extracted from it, and the per-run iteration state. All models are JSON
serializable via dataclasses.asdict() for state persistence.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

# Routing layers prefix tool names, e.g. "mcp__feedback-server__task_done"
TOOL_NAMESPACE_SEPARATOR = "__"


def parse_base_tool_name(tool_name: str | None) -> str:
    """Strip any routing namespace from a tool name.

    Examples:
        "mcp__context__send_user_feedback" -> "send_user_feedback"
        "task_done" -> "task_done"
        "" -> ""
    """
    if not tool_name:
        return ""
    if TOOL_NAMESPACE_SEPARATOR in tool_name:
        return tool_name.rsplit(TOOL_NAMESPACE_SEPARATOR, 1)[-1] or tool_name
    return tool_name


class EventKind(str, Enum):
    """Kind of a single unit emitted by an agent session stream."""

    TEXT = "text"
    TOOL_INVOCATION = "tool_invocation"
    TOOL_PROGRESS = "tool_progress"
    TOOL_RESULT = "tool_result"
    STATUS = "status"
    TERMINAL = "terminal"
    ERROR = "error"


class ReservedTool(str, Enum):
    """Tool names with meaning to the orchestrator."""

    TASK_DONE = "task_done"
    SEND_USER_FEEDBACK = "send_user_feedback"


@dataclass
class Event:
    """One unit of an agent session stream.

    The kind is decided once, by the session adapter. Tool names are stored
    with their routing namespace removed so callers compare against
    ReservedTool values directly; the name as received is kept in
    raw_tool_name.
    """

    kind: EventKind
    content: str = ""
    tool_name: str | None = None
    tool_input: dict[str, Any] | None = None
    raw_tool_name: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def text(cls, content: str) -> "Event":
        return cls(kind=EventKind.TEXT, content=content)

    @classmethod
    def tool_invocation(
        cls, name: str, tool_input: dict[str, Any] | None = None, content: str = ""
    ) -> "Event":
        return cls(
            kind=EventKind.TOOL_INVOCATION,
            content=content,
            tool_name=parse_base_tool_name(name),
            tool_input=tool_input or {},
            raw_tool_name=name,
        )

    @classmethod
    def tool_progress(cls, name: str, content: str = "") -> "Event":
        return cls(
            kind=EventKind.TOOL_PROGRESS,
            content=content,
            tool_name=parse_base_tool_name(name),
            raw_tool_name=name,
        )

    @classmethod
    def tool_result(cls, content: str, name: str | None = None) -> "Event":
        return cls(
            kind=EventKind.TOOL_RESULT,
            content=content,
            tool_name=parse_base_tool_name(name) or None,
            raw_tool_name=name,
        )

    @classmethod
    def status(cls, content: str) -> "Event":
        return cls(kind=EventKind.STATUS, content=content)

    @classmethod
    def terminal(cls, content: str = "", **metadata: Any) -> "Event":
        return cls(kind=EventKind.TERMINAL, content=content, metadata=metadata)

    @classmethod
    def error(cls, content: str) -> "Event":
        return cls(kind=EventKind.ERROR, content=content)

    def is_tool(self, tool: ReservedTool) -> bool:
        """True if this is an invocation of the given reserved tool."""
        return self.kind == EventKind.TOOL_INVOCATION and self.tool_name == tool.value


@dataclass
class CompletionSignal:
    """Structured payload indicating a task is finished.

    Absence of a signal means "not complete", so completed is always True
    on a constructed signal.
    """

    completed: bool = True
    files: list[str] = field(default_factory=list)
    source: str = "tool_call"


@dataclass
class TaskPlan:
    """Structured plan derived from the judge's first-iteration prose."""

    task_id: str
    title: str
    description: str
    milestones: list[str]
    original_request: str
    created_at: str

    def to_markdown(self) -> str:
        """Render the plan as a markdown document."""
        lines = [
            f"# {self.title}",
            "",
            f"**Task ID**: {self.task_id}",
            f"**Created**: {self.created_at}",
            "",
            "## Original Request",
            "",
            self.original_request or "(none)",
            "",
            "## Milestones",
            "",
        ]
        if self.milestones:
            lines.extend(f"{i}. {m}" for i, m in enumerate(self.milestones, start=1))
        else:
            lines.append("(none extracted)")
        lines.extend(["", "## Description", "", self.description, ""])
        return "\n".join(lines)


@dataclass
class TaskSpecMetadata:
    """Metadata header fields of a task spec (Task.md) document."""

    message_id: str
    chat_id: str
    user_id: str | None
    user_request: str


class RunPhase(str, Enum):
    """States of a dialogue run.

    EXHAUSTED is the iteration-cap outcome; TIMED_OUT is reserved for the
    wall-clock budget.
    """

    PLANNING = "planning"
    EXECUTING = "executing"
    JUDGING = "judging"
    CONTINUING = "continuing"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"
    EXHAUSTED = "exhausted"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_PHASES


_TERMINAL_PHASES = {
    RunPhase.COMPLETED,
    RunPhase.FAILED,
    RunPhase.TIMED_OUT,
    RunPhase.CANCELLED,
    RunPhase.EXHAUSTED,
}


class MessageKind(str, Enum):
    """Rendering hint for a user-facing message."""

    TEXT = "text"
    WARNING = "warning"
    ERROR = "error"
    CANCELLED = "cancelled"


@dataclass
class UserMessage:
    """A message the delivery channel should show to the end user.

    Attributes:
        content: Message body (markdown)
        kind: Rendering hint for the delivery channel
        source: "judge" or "reporter" for role sends, "system" for notices
        files: Artifact paths attributed to the message
    """

    content: str
    kind: MessageKind = MessageKind.TEXT
    source: str = "system"
    files: list[str] = field(default_factory=list)


class RoleKind(str, Enum):
    """Purpose a specialist role serves within an iteration."""

    EXECUTOR = "executor"
    JUDGE = "judge"
    REPORTER = "reporter"


@dataclass
class IterationState:
    """Working memory of one dialogue run.

    Owned by a single run and mutated only between iterations. Counters and
    timestamps are kept for history and diagnostics.

    Attributes:
        task_id: Identifier of the task being run
        iteration: Current iteration number (0 before the first iteration)
        max_iterations: Iteration cap for this run
        current_prompt: Prompt for the next executor invocation
        user_message_sent: Whether any judge/reporter message was delivered
        task_plan_saved: Whether the plan callback already succeeded
        phase: Current state machine phase
        started_at: When the run started
        finished_at: When the run reached a terminal phase
        executor_invocations: Number of executor streams started
        judge_invocations: Number of full judgments requested
        anomalies: Descriptions of recoverable anomalies seen
        completion_files: Files attributed by the completion signal
        error: Error text for FAILED runs
    """

    task_id: str
    max_iterations: int
    iteration: int = 0
    current_prompt: str = ""
    user_message_sent: bool = False
    task_plan_saved: bool = False
    phase: RunPhase = RunPhase.PLANNING
    started_at: datetime = field(default_factory=datetime.now)
    finished_at: datetime | None = None
    executor_invocations: int = 0
    judge_invocations: int = 0
    anomalies: list[str] = field(default_factory=list)
    completion_files: list[str] = field(default_factory=list)
    error: str | None = None
