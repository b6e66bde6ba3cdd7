"""Discord webhook delivery for dialogue runs.

Posts user-facing messages and run lifecycle events as embeds. Webhook
failures are logged but not raised, so delivery issues never stop a run.
"""

import logging
from dataclasses import dataclass

import httpx

from taskloop.models import IterationState, MessageKind, RunPhase, UserMessage
from taskloop.prompts import format_duration

logger = logging.getLogger(__name__)

# Color scheme for Discord embeds
COLORS = {
    "started": 0x3498DB,  # Blue
    "message": 0x95A5A6,  # Grey
    "warning": 0xF39C12,  # Orange
    "error": 0xE74C3C,  # Red
    "cancelled": 0x7F8C8D,  # Dark grey
    "completed": 0x2ECC71,  # Green
}

_KIND_COLORS = {
    MessageKind.TEXT: COLORS["message"],
    MessageKind.WARNING: COLORS["warning"],
    MessageKind.ERROR: COLORS["error"],
    MessageKind.CANCELLED: COLORS["cancelled"],
}

_PHASE_TITLES = {
    RunPhase.COMPLETED: "✅ Task Complete",
    RunPhase.EXHAUSTED: "⚠️ Iteration Limit Reached",
    RunPhase.TIMED_OUT: "⏱️ Task Timed Out",
    RunPhase.CANCELLED: "🛑 Task Cancelled",
    RunPhase.FAILED: "❌ Task Failed",
}

# Maximum description length for Discord embeds
MAX_DESCRIPTION_LENGTH = 4096
TRUNCATION_SUFFIX = "... [truncated]"


@dataclass
class DiscordEmbed:
    """Discord embed message structure.

    Attributes:
        title: Bold title text at the top of the embed
        description: Main body text of the embed (max 4096 chars)
        color: Integer color value (hex, e.g., 0x00FF00 for green)
        fields: Optional list of field dicts with name, value, inline keys
        timestamp: Optional ISO format timestamp string
    """

    title: str
    description: str
    color: int
    fields: list[dict] | None = None
    timestamp: str | None = None

    def to_dict(self) -> dict:
        """Convert embed to Discord API format, omitting unset optional keys."""
        result = {
            "title": self.title,
            "description": self.description,
            "color": self.color,
        }

        if self.fields is not None:
            result["fields"] = self.fields

        if self.timestamp is not None:
            result["timestamp"] = self.timestamp

        return result


async def send_discord_message(webhook_url: str, embed: DiscordEmbed) -> None:
    """Send a Discord webhook message with an embed.

    Uses a 5 second timeout. All errors (network, timeout, HTTP errors) are
    logged as warnings but not raised.

    Args:
        webhook_url: Discord webhook URL
        embed: DiscordEmbed to send
    """
    payload = {"embeds": [embed.to_dict()]}

    try:
        async with httpx.AsyncClient(timeout=5.0) as client:
            response = await client.post(webhook_url, json=payload)

            if response.status_code >= 400:
                logger.warning(
                    f"Discord webhook returned {response.status_code}: {response.text}"
                )
    except httpx.TimeoutException:
        logger.warning("Discord webhook request timed out")
    except httpx.ConnectError:
        logger.warning("Failed to connect to Discord webhook")
    except Exception as e:
        logger.warning(f"Discord webhook error: {e}")


def _truncate_text(text: str, max_length: int) -> str:
    """Truncate text to max_length, adding a truncation indicator if needed."""
    if len(text) <= max_length:
        return text
    return text[: max_length - len(TRUNCATION_SUFFIX)] + TRUNCATION_SUFFIX


def format_run_started(task_id: str, max_iterations: int) -> DiscordEmbed:
    return DiscordEmbed(
        title=f"🚀 Task Started: {task_id}",
        description=f"Running up to {max_iterations} iteration(s).",
        color=COLORS["started"],
    )


def format_user_message(message: UserMessage, task_id: str) -> DiscordEmbed:
    """Format a user-facing message as a Discord embed.

    Args:
        message: Message yielded by the dialogue run
        task_id: Task the message belongs to

    Returns:
        DiscordEmbed colored by message kind, listing attributed files
    """
    fields = None
    if message.files:
        fields = [
            {
                "name": "Files",
                "value": _truncate_text("\n".join(message.files), 1024),
                "inline": False,
            }
        ]

    return DiscordEmbed(
        title=f"{task_id} ({message.source})",
        description=_truncate_text(message.content, MAX_DESCRIPTION_LENGTH),
        color=_KIND_COLORS.get(message.kind, COLORS["message"]),
        fields=fields,
    )


def format_run_finished(state: IterationState, duration_s: float) -> DiscordEmbed:
    """Format the end of a run as a Discord embed.

    Args:
        state: Final run state
        duration_s: Wall-clock duration in seconds

    Returns:
        DiscordEmbed ready to send to Discord
    """
    color = COLORS["completed"] if state.phase == RunPhase.COMPLETED else COLORS["error"]
    if state.phase in (RunPhase.EXHAUSTED, RunPhase.CANCELLED):
        color = COLORS["warning"]

    return DiscordEmbed(
        title=_PHASE_TITLES.get(state.phase, state.phase.value),
        description=f"Task {state.task_id} finished as {state.phase.value}.",
        color=color,
        fields=[
            {
                "name": "Iterations",
                "value": f"{state.iteration}/{state.max_iterations}",
                "inline": True,
            },
            {"name": "Duration", "value": format_duration(duration_s), "inline": True},
        ],
    )
