"""Progress routing between specialist roles and the end user.

The executor is a background worker: its events are forwarded to the judge
as progress updates or dropped, never shown to the user. Only explicit
"send feedback" actions by the judge or reporter are user-visible.
"""

import logging
import time
from collections.abc import Callable, Iterable
from enum import Enum

from taskloop.models import Event, EventKind, MessageKind, ReservedTool, RoleKind, UserMessage

logger = logging.getLogger(__name__)

_EXECUTOR_PROGRESS_KINDS = {
    EventKind.TEXT,
    EventKind.TOOL_INVOCATION,
    EventKind.TOOL_RESULT,
    EventKind.ERROR,
}


class Route(str, Enum):
    """Destination of a single event."""

    PROGRESS = "progress"
    FINAL = "final"
    DROP = "drop"


class ProgressRouter:
    """Classifies events and tracks whether the user heard anything.

    One router belongs to one run. Progress events are batched and released
    at most once per progress interval so the judge is not invoked for every
    tool call.
    """

    def __init__(
        self,
        progress_interval_seconds: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the router.

        Args:
            progress_interval_seconds: Minimum seconds between progress flushes
            clock: Monotonic clock used for throttling
        """
        self.progress_interval_seconds = progress_interval_seconds
        self._clock = clock
        self._pending: list[str] = []
        self._last_flush: float | None = None
        self.user_message_sent = False

    def route(self, event: Event, role_kind: RoleKind) -> Route:
        """Decide where an event goes.

        Args:
            event: Event from a specialist session
            role_kind: Kind of role that produced the event

        Returns:
            PROGRESS for executor work worth monitoring, FINAL for explicit
            user sends by the judge or reporter, DROP otherwise.
        """
        if role_kind == RoleKind.EXECUTOR:
            if event.kind in _EXECUTOR_PROGRESS_KINDS:
                return Route.PROGRESS
            return Route.DROP

        if event.is_tool(ReservedTool.SEND_USER_FEEDBACK):
            return Route.FINAL
        return Route.DROP

    def add_progress(self, event: Event) -> None:
        """Buffer an executor event for the next progress update."""
        line = _describe(event)
        if line:
            self._pending.append(line)

    def take_progress(self, now: float | None = None) -> str | None:
        """Release buffered progress if the throttle interval has passed.

        Args:
            now: Current monotonic time (default: the router clock)

        Returns:
            Progress text to forward, or None if nothing is due
        """
        if not self._pending:
            return None

        if now is None:
            now = self._clock()
        if (
            self._last_flush is not None
            and now - self._last_flush < self.progress_interval_seconds
        ):
            return None

        self._last_flush = now
        batch = "\n".join(self._pending)
        self._pending.clear()
        return batch

    def discard_progress(self) -> None:
        """Drop buffered progress (the full output supersedes it)."""
        self._pending.clear()

    def user_messages(
        self,
        events: Iterable[Event],
        source: str,
        files: list[str] | None = None,
        role_kind: RoleKind = RoleKind.JUDGE,
    ) -> list[UserMessage]:
        """Build user messages from the FINAL events of a judge/reporter stream.

        Args:
            events: Events from a judge or reporter session
            source: Role name recorded on each message
            files: Files to attribute to each message
            role_kind: Kind of the role that produced the events

        Returns:
            Messages in stream order; marks the run as having sent feedback
            when any are produced.
        """
        messages = []
        for event in events:
            if self.route(event, role_kind) != Route.FINAL:
                continue
            body = (event.tool_input or {}).get("message")
            if not isinstance(body, str) or not body:
                body = event.content
            if not body:
                continue
            messages.append(
                UserMessage(
                    content=body,
                    kind=MessageKind.TEXT,
                    source=source,
                    files=list(files or []),
                )
            )

        if messages:
            self.record_message_sent()
        return messages

    def record_message_sent(self) -> None:
        """Record that a user-visible message was delivered."""
        self.user_message_sent = True

    def no_feedback_warning(self, reason: str, task_id: str | None = None) -> UserMessage:
        """Build the diagnostic for a run that never talked to the user.

        Args:
            reason: Why the run ended (e.g. "completed", "max_iterations")
            task_id: Task identifier for context
        """
        parts = [
            "**Task ended with no user-visible feedback**",
            "",
            f"End reason: {reason}",
        ]
        if task_id:
            parts.append(f"Task ID: {task_id}")
        parts.extend(
            [
                "",
                "This may mean:",
                "- The agents produced no output for you",
                "- All messages were handled by internal tools",
                "- The feedback tool is not configured",
            ]
        )
        logger.info(f"Synthesizing no-feedback warning (reason: {reason})")
        return UserMessage(content="\n".join(parts), kind=MessageKind.WARNING)


def _describe(event: Event) -> str:
    """One-line rendering of an executor event for progress updates."""
    if event.kind == EventKind.TOOL_INVOCATION:
        return f"[tool] {event.tool_name}"
    if event.kind == EventKind.TOOL_RESULT:
        content = event.content.strip()
        if len(content) > 200:
            content = content[:200] + "..."
        return f"[result] {content}" if content else ""
    if event.kind == EventKind.ERROR:
        return f"[error] {event.content}"
    return event.content.strip()
