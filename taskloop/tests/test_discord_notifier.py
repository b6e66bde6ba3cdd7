"""Tests for Discord webhook delivery.

These tests verify embed formatting and that webhook failures are logged
rather than raised.
"""

from datetime import datetime
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

WEBHOOK = "https://discord.com/api/webhooks/test"


def _mock_client(mock_client_class, status_code=204, side_effect=None):
    mock_client = AsyncMock()
    mock_client.__aenter__.return_value = mock_client
    mock_client.__aexit__.return_value = None
    if side_effect is not None:
        mock_client.post.side_effect = side_effect
    else:
        mock_client.post.return_value = MagicMock(status_code=status_code, text="bad")
    mock_client_class.return_value = mock_client
    return mock_client


class TestDiscordEmbed:
    """Test the DiscordEmbed dataclass."""

    def test_to_dict_minimal(self):
        from taskloop.discord_notifier import DiscordEmbed

        embed = DiscordEmbed(title="T", description="D", color=0x00FF00)

        assert embed.to_dict() == {"title": "T", "description": "D", "color": 0x00FF00}

    def test_to_dict_with_optional_fields(self):
        from taskloop.discord_notifier import DiscordEmbed

        fields = [{"name": "n", "value": "v", "inline": True}]
        embed = DiscordEmbed("T", "D", 1, fields=fields, timestamp="2025-01-01T00:00:00Z")

        data = embed.to_dict()

        assert data["fields"] == fields
        assert data["timestamp"] == "2025-01-01T00:00:00Z"


class TestSendDiscordMessage:
    """Test webhook posting."""

    @pytest.mark.asyncio
    async def test_posts_embed_payload(self):
        """Should POST the embed to the webhook URL."""
        from taskloop.discord_notifier import DiscordEmbed, send_discord_message

        embed = DiscordEmbed(title="Title", description="Body", color=1)

        with patch("taskloop.discord_notifier.httpx.AsyncClient") as mock_client_class:
            mock_client = _mock_client(mock_client_class)

            await send_discord_message(WEBHOOK, embed)

        mock_client.post.assert_called_once()
        call_args = mock_client.post.call_args
        assert call_args[0][0] == WEBHOOK
        assert call_args[1]["json"] == {"embeds": [embed.to_dict()]}

    @pytest.mark.asyncio
    async def test_http_error_is_logged(self):
        from taskloop.discord_notifier import DiscordEmbed, send_discord_message

        with patch("taskloop.discord_notifier.httpx.AsyncClient") as mock_client_class:
            _mock_client(mock_client_class, status_code=404)
            with patch("taskloop.discord_notifier.logger") as mock_logger:
                await send_discord_message(WEBHOOK, DiscordEmbed("T", "D", 1))

        mock_logger.warning.assert_called_once()
        assert "404" in mock_logger.warning.call_args[0][0]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [
            httpx.TimeoutException("slow"),
            httpx.ConnectError("refused"),
            RuntimeError("unexpected"),
        ],
    )
    async def test_failures_are_not_raised(self, error):
        """Delivery problems never propagate to the run."""
        from taskloop.discord_notifier import DiscordEmbed, send_discord_message

        with patch("taskloop.discord_notifier.httpx.AsyncClient") as mock_client_class:
            _mock_client(mock_client_class, side_effect=error)
            with patch("taskloop.discord_notifier.logger") as mock_logger:
                await send_discord_message(WEBHOOK, DiscordEmbed("T", "D", 1))

        mock_logger.warning.assert_called_once()


class TestFormatting:
    """Test embed formatting helpers."""

    def test_truncate_text(self):
        from taskloop.discord_notifier import TRUNCATION_SUFFIX, _truncate_text

        assert _truncate_text("short", 10) == "short"
        result = _truncate_text("x" * 100, 50)
        assert len(result) == 50
        assert result.endswith(TRUNCATION_SUFFIX)

    def test_format_run_started(self):
        from taskloop.discord_notifier import COLORS, format_run_started

        embed = format_run_started("task-1", 3)

        assert "task-1" in embed.title
        assert "3 iteration(s)" in embed.description
        assert embed.color == COLORS["started"]

    def test_format_user_message_colors_by_kind(self):
        from taskloop.discord_notifier import COLORS, format_user_message
        from taskloop.models import MessageKind, UserMessage

        warning = UserMessage("careful", kind=MessageKind.WARNING)
        text = UserMessage("hi", source="judge")

        assert format_user_message(warning, "t").color == COLORS["warning"]
        embed = format_user_message(text, "t")
        assert embed.color == COLORS["message"]
        assert embed.title == "t (judge)"
        assert embed.fields is None

    def test_format_user_message_lists_files(self):
        from taskloop.discord_notifier import format_user_message
        from taskloop.models import UserMessage

        embed = format_user_message(UserMessage("done", files=["a.md", "b.md"]), "t")

        assert embed.fields[0]["name"] == "Files"
        assert embed.fields[0]["value"] == "a.md\nb.md"

    def test_format_user_message_truncates_long_content(self):
        from taskloop.discord_notifier import MAX_DESCRIPTION_LENGTH, format_user_message
        from taskloop.models import UserMessage

        embed = format_user_message(UserMessage("x" * 5000), "t")

        assert len(embed.description) == MAX_DESCRIPTION_LENGTH

    def test_format_run_finished(self):
        from taskloop.discord_notifier import COLORS, format_run_finished
        from taskloop.models import IterationState, RunPhase

        state = IterationState(
            task_id="t",
            max_iterations=3,
            iteration=2,
            phase=RunPhase.COMPLETED,
            started_at=datetime(2025, 1, 1),
        )

        embed = format_run_finished(state, 125)

        assert embed.title == "✅ Task Complete"
        assert embed.color == COLORS["completed"]
        values = {f["name"]: f["value"] for f in embed.fields}
        assert values == {"Iterations": "2/3", "Duration": "2m 5s"}

    @pytest.mark.parametrize(
        "phase, color_key",
        [("exhausted", "warning"), ("cancelled", "warning"), ("failed", "error"), ("timed_out", "error")],
    )
    def test_format_run_finished_colors(self, phase, color_key):
        from taskloop.discord_notifier import COLORS, format_run_finished
        from taskloop.models import IterationState, RunPhase

        state = IterationState(task_id="t", max_iterations=1, phase=RunPhase(phase))

        assert format_run_finished(state, 1).color == COLORS[color_key]
