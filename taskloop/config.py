"""Configuration for taskloop.

Provides centralized configuration with sensible defaults and environment
variable overrides for the iteration loop, Claude Code parameters, and
telemetry.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

from taskloop.errors import ConfigError

_TRUTHY = {"1", "true", "yes", "on"}


@dataclass
class OrchestratorConfig:
    """Configuration for dialogue runs.

    All settings have sensible defaults but can be overridden via environment
    variables using the from_env() factory method.
    """

    # Loop settings
    max_iterations: int = 3
    timeout_seconds: float = 24 * 60 * 60
    forward_progress: bool = True
    progress_interval_seconds: float = 2.0
    done_tool_name: str = "task_done"
    # False when the judge and reporter run without the MCP feedback tools
    feedback_tools: bool = True

    # Task artifact storage
    tasks_dir: Path = field(default_factory=lambda: Path("tasks"))

    # Claude Code settings
    max_turns: int = 50
    allowed_tools: list[str] = field(
        default_factory=lambda: ["Bash", "Read", "Write", "Edit", "Glob", "Grep"]
    )
    model: str | None = None

    # Telemetry settings
    otlp_endpoint: str = field(
        default_factory=lambda: os.getenv("OTLP_ENDPOINT", "http://localhost:4317")
    )
    service_name: str = "taskloop"

    # Delivery
    discord_webhook_url: str | None = None

    def __post_init__(self) -> None:
        if self.max_iterations < 1:
            raise ConfigError(
                f"max_iterations must be at least 1 (got {self.max_iterations})"
            )
        if self.timeout_seconds <= 0:
            raise ConfigError(
                f"timeout_seconds must be positive (got {self.timeout_seconds})"
            )
        if self.progress_interval_seconds < 0:
            raise ConfigError("progress_interval_seconds cannot be negative")

    @property
    def discord_enabled(self) -> bool:
        """True when a Discord webhook is configured."""
        return bool(self.discord_webhook_url)

    @classmethod
    def from_env(cls) -> "OrchestratorConfig":
        """Load config with environment variable overrides.

        Environment variables:
            TASKLOOP_MAX_ITERATIONS: Override max_iterations (default: 3)
            TASKLOOP_TIMEOUT: Override timeout_seconds (default: 86400)
            TASKLOOP_FORWARD_PROGRESS: Enable progress updates (default: true)
            TASKLOOP_PROGRESS_INTERVAL: Seconds between progress updates (default: 2)
            TASKLOOP_TASKS_DIR: Task artifact directory (default: tasks)
            TASKLOOP_MAX_TURNS: Override max_turns (default: 50)
            TASKLOOP_MODEL: Claude model for all roles (default: Claude's default)
            OTLP_ENDPOINT: Override otlp_endpoint (default: http://localhost:4317)
            DISCORD_WEBHOOK_URL: Deliver user messages to this webhook
        """
        try:
            return cls(
                max_iterations=int(os.getenv("TASKLOOP_MAX_ITERATIONS", "3")),
                timeout_seconds=float(os.getenv("TASKLOOP_TIMEOUT", "86400")),
                forward_progress=os.getenv("TASKLOOP_FORWARD_PROGRESS", "true").lower()
                in _TRUTHY,
                progress_interval_seconds=float(
                    os.getenv("TASKLOOP_PROGRESS_INTERVAL", "2.0")
                ),
                tasks_dir=Path(os.getenv("TASKLOOP_TASKS_DIR", "tasks")),
                max_turns=int(os.getenv("TASKLOOP_MAX_TURNS", "50")),
                model=os.getenv("TASKLOOP_MODEL") or None,
                otlp_endpoint=os.getenv("OTLP_ENDPOINT", "http://localhost:4317"),
                discord_webhook_url=os.getenv("DISCORD_WEBHOOK_URL") or None,
            )
        except ValueError as e:
            raise ConfigError(f"Invalid taskloop environment setting: {e}") from e
