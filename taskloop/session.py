"""Agent sessions: the boundary between the orchestrator and a model runtime.

An AgentSession accepts a prompt and yields typed Events. ClaudeCliSession
drives the Claude Code CLI in stream-json mode; each JSON line it prints is
mapped to zero or more Events here, so event kinds and tool names are
normalized before the orchestrator ever sees them.
"""

import asyncio
import json
import logging
import os
import shutil
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from taskloop.errors import SessionError
from taskloop.models import Event, ReservedTool, RoleKind, parse_base_tool_name

logger = logging.getLogger(__name__)

DEFAULT_ALLOWED_TOOLS = ["Bash", "Read", "Write", "Edit", "Glob", "Grep"]

# stream-json lines carry whole tool results; the asyncio default of 64 KiB
# is too small for large file reads
_STREAM_LIMIT = 16 * 1024 * 1024


@runtime_checkable
class AgentSession(Protocol):
    """A specialist conversation that turns prompts into event streams."""

    def invoke(self, prompt: str) -> AsyncIterator[Event]:
        """Send a prompt and stream the resulting events."""
        ...

    async def close(self) -> None:
        """Release the session's resources. Safe to call more than once."""
        ...


@dataclass
class Role:
    """A named specialist participating in the dialogue.

    Attributes:
        name: Display name, also recorded as the source of user messages
        kind: What the role does within an iteration
        session_factory: Creates a fresh session for each iteration
    """

    name: str
    kind: RoleKind
    session_factory: Callable[[], AgentSession]


def find_claude_cli() -> str | None:
    """Find the Claude CLI executable.

    Checks PATH first, then the common per-user install locations.

    Returns:
        Path to the Claude CLI, or None if not found.
    """
    path_result = shutil.which("claude")
    if path_result:
        return path_result

    home = Path.home()
    for location in (
        home / ".claude" / "local" / "claude",
        home / ".claude" / "bin" / "claude",
    ):
        if location.exists() and os.access(location, os.X_OK):
            return str(location)

    return None


def format_tool_call(tool_name: str, tool_input: dict) -> str:
    """Format a tool call for human-readable display.

    Args:
        tool_name: Name of the tool (Read, Write, Bash, etc.)
        tool_input: Dictionary of tool input parameters

    Returns:
        Formatted string like "→ Reading config.py..."
    """
    base_name = parse_base_tool_name(tool_name)

    if base_name in ("Read", "Write", "Edit"):
        file_path = tool_input.get("file_path", "")
        filename = Path(file_path).name if file_path else "file"
        verb = {"Read": "Reading", "Write": "Writing", "Edit": "Editing"}[base_name]
        return f"→ {verb} {filename}..."

    if base_name == "Bash":
        command = tool_input.get("command", "")
        if len(command) > 50:
            command = command[:50] + "..."
        return f"→ Running: {command}"

    if base_name == "Grep":
        return f"→ Searching for {tool_input.get('pattern', '')}..."

    if base_name == "Glob":
        return f"→ Finding {tool_input.get('pattern', '')}..."

    if base_name == ReservedTool.TASK_DONE.value:
        files = tool_input.get("files") or []
        return f"→ Marking task done ({len(files)} file(s))"

    if base_name == ReservedTool.SEND_USER_FEEDBACK.value:
        return "→ Sending feedback to user..."

    return f"→ {base_name or tool_name}..."


def _block_text(content: Any) -> str:
    """Flatten a tool_result content payload (string or text blocks)."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = [
            item.get("text", "")
            for item in content
            if isinstance(item, dict) and item.get("type") == "text"
        ]
        return "\n".join(p for p in parts if p)
    return ""


def parse_stream_line(line: str) -> list[Event]:
    """Map one stream-json line from the Claude CLI to Events.

    Unknown or malformed lines produce no events. A result line becomes a
    TERMINAL event, preceded by an ERROR event when the CLI reports failure.

    Args:
        line: Raw output line

    Returns:
        Events in the order they should be consumed
    """
    line = line.strip()
    if not line:
        return []

    try:
        data = json.loads(line)
    except json.JSONDecodeError:
        logger.debug(f"Skipping non-JSON stream line: {line[:80]}")
        return []

    if not isinstance(data, dict):
        return []

    event_type = data.get("type")
    events: list[Event] = []

    if event_type == "assistant":
        for item in data.get("message", {}).get("content", []):
            item_type = item.get("type")
            if item_type == "text" and item.get("text"):
                events.append(Event.text(item["text"]))
            elif item_type == "tool_use":
                tool_name = item.get("name", "")
                tool_input = item.get("input") or {}
                events.append(
                    Event.tool_invocation(
                        tool_name,
                        tool_input,
                        content=format_tool_call(tool_name, tool_input),
                    )
                )

    elif event_type == "user":
        for item in data.get("message", {}).get("content", []):
            if isinstance(item, dict) and item.get("type") == "tool_result":
                events.append(Event.tool_result(_block_text(item.get("content"))))

    elif event_type == "system":
        events.append(Event.status(data.get("subtype", "system")))

    elif event_type == "result":
        is_error = bool(data.get("is_error", False))
        result_text = data.get("result") or ""
        if is_error:
            events.append(Event.error(result_text or data.get("subtype", "error")))
        events.append(
            Event.terminal(
                result_text,
                is_error=is_error,
                session_id=data.get("session_id", ""),
                total_cost_usd=data.get("total_cost_usd", 0.0),
                num_turns=data.get("num_turns", 0),
                duration_ms=data.get("duration_ms", 0),
            )
        )

    return events


class ClaudeCliSession:
    """AgentSession backed by the Claude Code CLI.

    The first invoke starts a new Claude conversation; later invokes resume it
    via --resume so the role keeps its context (e.g. progress updates before
    a judgment).
    """

    def __init__(
        self,
        max_turns: int = 50,
        allowed_tools: list[str] | None = None,
        model: str | None = None,
        mcp_config: Path | None = None,
        system_prompt: str | None = None,
        cwd: Path | None = None,
    ) -> None:
        """Initialize the session.

        Args:
            max_turns: Maximum conversation turns per invocation
            allowed_tools: Tools Claude can use
            model: Claude model to use (e.g., 'sonnet', 'opus'). If None, uses default.
            mcp_config: MCP server config providing task_done/send_user_feedback
            system_prompt: Text appended to Claude's system prompt
            cwd: Working directory for the CLI process
        """
        self.max_turns = max_turns
        self.allowed_tools = allowed_tools or list(DEFAULT_ALLOWED_TOOLS)
        self.model = model
        self.mcp_config = mcp_config
        self.system_prompt = system_prompt
        self.cwd = cwd
        self.session_id: str | None = None
        self.total_cost_usd = 0.0
        self._process: asyncio.subprocess.Process | None = None

    def build_command(self, claude_path: str, prompt: str) -> list[str]:
        """Build the CLI argument list for one invocation."""
        cmd = [claude_path]

        if self.session_id:
            cmd.extend(["--resume", self.session_id])

        cmd.extend(
            [
                "-p",
                prompt,
                "--output-format",
                "stream-json",
                "--verbose",  # Required for stream-json with -p
                "--dangerously-skip-permissions",
                "--max-turns",
                str(self.max_turns),
                "--allowedTools",
                ",".join(self.allowed_tools),
            ]
        )

        if self.model:
            cmd.extend(["--model", self.model])
        if self.mcp_config:
            cmd.extend(["--mcp-config", str(self.mcp_config)])
        if self.system_prompt:
            cmd.extend(["--append-system-prompt", self.system_prompt])

        return cmd

    async def invoke(self, prompt: str) -> AsyncIterator[Event]:
        """Run the CLI on a prompt and yield events as lines arrive.

        Raises:
            SessionError: If the Claude CLI cannot be found or started
        """
        claude_path = find_claude_cli()
        if claude_path is None:
            raise SessionError(
                "Claude CLI not found. Ensure Claude Code is installed and in PATH."
            )

        try:
            process = await asyncio.create_subprocess_exec(
                *self.build_command(claude_path, prompt),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.cwd,
                limit=_STREAM_LIMIT,
            )
        except OSError as e:
            raise SessionError(f"Failed to start Claude CLI: {e}") from e

        self._process = process
        try:
            assert process.stdout is not None
            async for raw in process.stdout:
                for event in parse_stream_line(raw.decode("utf-8", errors="replace")):
                    if event.metadata.get("session_id"):
                        self.session_id = event.metadata["session_id"]
                    self.total_cost_usd += event.metadata.get("total_cost_usd", 0.0) or 0.0
                    yield event

            returncode = await process.wait()
            if returncode:
                logger.warning(f"Claude CLI exited with code {returncode}")
        finally:
            await self._terminate()

    async def close(self) -> None:
        await self._terminate()

    async def _terminate(self) -> None:
        process = self._process
        self._process = None
        if process is None or process.returncode is not None:
            return
        try:
            process.kill()
        except ProcessLookupError:
            return
        await process.wait()
