"""Completion detection for judge output.

Scans an event stream for the reserved "task done" tool invocation and
extracts its payload. Unstructured text is accepted as a fallback channel:
a fenced JSON block with a truthy completion flag counts as a signal.

All functions here are pure: no I/O and no mutation of their inputs.
"""

import json
import logging
import re
from collections.abc import Iterable
from typing import Any

from taskloop.models import (
    TOOL_NAMESPACE_SEPARATOR,
    CompletionSignal,
    Event,
    EventKind,
    ReservedTool,
    parse_base_tool_name,
)

logger = logging.getLogger(__name__)

__all__ = [
    "detect",
    "detect_in_text",
    "is_done_tool",
    "is_user_feedback_tool",
    "parse_base_tool_name",
]

# ```json ... ``` blocks; the language tag is required so plain code blocks
# in judge prose are never mistaken for a signal
_FENCED_JSON = re.compile(r"```json[ \t]*\n(.*?)\n?```", re.DOTALL | re.IGNORECASE)

# Keys accepted as a completion flag in the fallback channel
_COMPLETION_KEYS = ("completed", "done", "is_complete")


def is_done_tool(tool_name: str | None, done_tool: str = ReservedTool.TASK_DONE.value) -> bool:
    """Check a tool name against the reserved done tool.

    Matches the exact name or a namespaced suffix ("<prefix>__task_done").
    """
    if not tool_name:
        return False
    return tool_name == done_tool or tool_name.endswith(
        f"{TOOL_NAMESPACE_SEPARATOR}{done_tool}"
    )


def is_user_feedback_tool(tool_name: str | None) -> bool:
    """Check whether a tool name is the user feedback tool."""
    return parse_base_tool_name(tool_name) == ReservedTool.SEND_USER_FEEDBACK.value


def detect(
    events: Iterable[Event], done_tool: str = ReservedTool.TASK_DONE.value
) -> CompletionSignal | None:
    """Find the first completion signal in an event sequence.

    Args:
        events: Events in stream order
        done_tool: Reserved tool name that marks the task as done

    Returns:
        The signal from the first qualifying event, or None if the sequence
        carries no signal.
    """
    for event in events:
        if event.kind == EventKind.TOOL_INVOCATION:
            name = event.raw_tool_name or event.tool_name
            if is_done_tool(name, done_tool) or event.tool_name == done_tool:
                logger.info(f"Completion detected via {name} tool call")
                return CompletionSignal(
                    completed=True,
                    files=_coerce_files((event.tool_input or {}).get("files")),
                    source="tool_call",
                )

        elif event.kind == EventKind.TEXT and event.content:
            signal = detect_in_text(event.content)
            if signal is not None:
                return signal

    return None


def detect_in_text(text: str) -> CompletionSignal | None:
    """Look for a fenced JSON completion block in unstructured output.

    Accepts objects like {"completed": true, "files": ["a.txt"]},
    {"done": true} or {"is_complete": true}. Malformed JSON is treated as
    "not complete".

    Args:
        text: Free-form text output

    Returns:
        CompletionSignal if a block with a truthy completion flag is found,
        None otherwise.
    """
    for match in _FENCED_JSON.finditer(text):
        try:
            data = json.loads(match.group(1))
        except json.JSONDecodeError as e:
            logger.debug(f"Ignoring malformed completion JSON: {e}")
            continue

        if not isinstance(data, dict):
            continue

        if any(data.get(key) is True for key in _COMPLETION_KEYS):
            logger.info("Completion detected via fenced JSON block")
            return CompletionSignal(
                completed=True,
                files=_coerce_files(data.get("files")),
                source="fenced_json",
            )

    return None


def _coerce_files(value: Any) -> list[str]:
    """Keep only string entries of a files payload."""
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str)]
