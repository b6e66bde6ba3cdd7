"""Tests for the taskloop CLI.

These tests drive the click commands through CliRunner with fake Claude
sessions so no CLI process is ever started.
"""

import json
from datetime import datetime
from unittest.mock import AsyncMock, patch

import pytest
from click.testing import CliRunner

from taskloop.cli import build_roles, cli
from taskloop.models import Event, IterationState, RoleKind, RunPhase
from taskloop.session import ClaudeCliSession, Role
from taskloop.state import FileTaskStateStore, save_state


class ScriptedSession:
    """Session that replays the same events for every prompt."""

    def __init__(self, events):
        self.events = events
        self.prompts = []

    async def invoke(self, prompt):
        self.prompts.append(prompt)
        for event in self.events:
            yield event

    async def close(self):
        pass


def _fake_roles(judge_events):
    executor = Role(
        "executor",
        RoleKind.EXECUTOR,
        lambda: ScriptedSession(
            [Event.text("Wrote summary.md"), Event.terminal("Wrote summary.md")]
        ),
    )
    judge = Role("judge", RoleKind.JUDGE, lambda: ScriptedSession(judge_events))
    return executor, judge, None


@pytest.fixture
def env(tmp_path):
    return {
        "TASKLOOP_TASKS_DIR": str(tmp_path / "tasks"),
        "TASKLOOP_FORWARD_PROGRESS": "false",
        "TASKLOOP_MAX_ITERATIONS": "2",
        "OTLP_ENABLED": "false",
        "DISCORD_WEBHOOK_URL": "",
        "COLUMNS": "200",
    }


class TestCliGroup:
    """Test top-level CLI behavior."""

    def test_help_lists_commands(self):
        result = CliRunner().invoke(cli, ["--help"])

        assert result.exit_code == 0
        for command in ("run", "extract-plan", "history", "show"):
            assert command in result.output

    def test_run_requires_existing_file(self, tmp_path):
        result = CliRunner().invoke(cli, ["run", str(tmp_path / "missing.md")])

        assert result.exit_code == 2


class TestBuildRoles:
    """Test Claude role construction."""

    def test_executor_and_judge(self, config, tmp_path):
        mcp_config = tmp_path / "mcp.json"
        executor, judge, reporter = build_roles(config, mcp_config)

        assert executor.kind == RoleKind.EXECUTOR
        assert judge.kind == RoleKind.JUDGE
        assert reporter is None

        executor_session = executor.session_factory()
        judge_session = judge.session_factory()
        assert isinstance(executor_session, ClaudeCliSession)
        assert executor_session.allowed_tools == config.allowed_tools
        assert "Write" not in judge_session.allowed_tools
        assert "mcp__taskloop__task_done" in judge_session.allowed_tools
        assert "mcp__taskloop__send_user_feedback" in judge_session.allowed_tools

    def test_judge_without_mcp_config_gets_read_only_tools(self, config):
        """Without an MCP server there are no feedback tools to allow."""
        _, judge, reporter = build_roles(config, with_reporter=True)

        for session in (judge.session_factory(), reporter.session_factory()):
            assert session.mcp_config is None
            assert session.allowed_tools == ["Read", "Glob", "Grep"]

    def test_reporter_cannot_signal_done(self, config, tmp_path):
        mcp_config = tmp_path / "mcp.json"
        _, _, reporter = build_roles(config, mcp_config, with_reporter=True)

        session = reporter.session_factory()

        assert reporter.kind == RoleKind.REPORTER
        assert session.mcp_config == mcp_config
        assert "mcp__taskloop__task_done" not in session.allowed_tools
        assert "mcp__taskloop__send_user_feedback" in session.allowed_tools

    def test_each_iteration_gets_a_fresh_session(self, config):
        executor, _, _ = build_roles(config)

        assert executor.session_factory() is not executor.session_factory()


class TestRunCommand:
    """Test the run command."""

    def test_completed_run_exits_zero(self, task_file, env, tmp_path):
        judge_events = [
            Event.tool_invocation("mcp__taskloop__send_user_feedback", {"message": "All done"}),
            Event.tool_invocation("mcp__taskloop__task_done", {"files": ["summary.md"]}),
            Event.terminal("done"),
        ]

        with (
            patch("taskloop.cli.build_roles", return_value=_fake_roles(judge_events)),
            patch("taskloop.cli.configure_logging"),
        ):
            result = CliRunner().invoke(cli, ["run", str(task_file)], env=env)

        assert result.exit_code == 0, result.output
        assert "All done" in result.output
        assert "COMPLETED" in result.output

        state_file = tmp_path / "tasks" / "demo-task" / "run_state.json"
        data = json.loads(state_file.read_text())
        assert data["phase"] == "completed"
        assert data["completion_files"] == ["summary.md"]

    def test_exhausted_run_exits_one(self, task_file, env):
        judge_events = [Event.text("Keep going: add more detail"), Event.terminal("")]

        with (
            patch("taskloop.cli.build_roles", return_value=_fake_roles(judge_events)),
            patch("taskloop.cli.configure_logging"),
        ):
            result = CliRunner().invoke(cli, ["run", str(task_file)], env=env)

        assert result.exit_code == 1
        assert "max iterations (2)" in result.output
        assert "EXHAUSTED" in result.output

    def test_options_override_config(self, task_file, env):
        with (
            patch("taskloop.cli._run_dialogue", new_callable=AsyncMock) as mock_run,
            patch("taskloop.cli.configure_logging"),
        ):
            mock_run.return_value = RunPhase.COMPLETED
            result = CliRunner().invoke(
                cli,
                ["run", str(task_file), "--max-iterations", "5", "--timeout", "60", "-m", "haiku"],
                env=env,
            )

        assert result.exit_code == 0
        config = mock_run.call_args[0][2]
        assert config.max_iterations == 5
        assert config.timeout_seconds == 60
        assert config.model == "claude-haiku-4-5-20251001"

    def test_no_discord_clears_webhook(self, task_file, env):
        env = {**env, "DISCORD_WEBHOOK_URL": "https://discord.example/hook"}

        with (
            patch("taskloop.cli._run_dialogue", new_callable=AsyncMock) as mock_run,
            patch("taskloop.cli.configure_logging"),
        ):
            mock_run.return_value = RunPhase.FAILED
            result = CliRunner().invoke(cli, ["run", str(task_file), "--no-discord"], env=env)

        assert result.exit_code == 1
        assert mock_run.call_args[0][2].discord_webhook_url is None

    def test_invalid_env_config_exits_two(self, task_file, env):
        env = {**env, "TASKLOOP_MAX_ITERATIONS": "zero"}

        result = CliRunner().invoke(cli, ["run", str(task_file)], env=env)

        assert result.exit_code == 2
        assert "Configuration error" in result.output

    def test_without_mcp_config_judge_uses_text_completion(self, task_file, env):
        with (
            patch("taskloop.cli._run_dialogue", new_callable=AsyncMock) as mock_run,
            patch("taskloop.cli.configure_logging"),
        ):
            mock_run.return_value = RunPhase.COMPLETED
            result = CliRunner().invoke(cli, ["run", str(task_file)], env=env)

        assert result.exit_code == 0
        assert mock_run.call_args[0][2].feedback_tools is False
        assert mock_run.call_args[0][3] is None

    def test_mcp_config_enables_feedback_tools(self, task_file, env, tmp_path):
        mcp_config = tmp_path / "mcp.json"
        mcp_config.write_text("{}")

        with (
            patch("taskloop.cli._run_dialogue", new_callable=AsyncMock) as mock_run,
            patch("taskloop.cli.configure_logging"),
        ):
            mock_run.return_value = RunPhase.COMPLETED
            result = CliRunner().invoke(
                cli, ["run", str(task_file), "--mcp-config", str(mcp_config)], env=env
            )

        assert result.exit_code == 0
        assert mock_run.call_args[0][2].feedback_tools is True
        assert mock_run.call_args[0][3] == mcp_config

    def test_judge_completes_with_fenced_json_without_mcp_config(self, task_file, env):
        """A text-only judge ends the run through the fenced JSON block."""
        judge_events = [
            Event.text('Done.\n\n```json\n{"completed": true, "files": ["summary.md"]}\n```'),
            Event.terminal(""),
        ]

        with (
            patch("taskloop.cli.build_roles", return_value=_fake_roles(judge_events)),
            patch("taskloop.cli.configure_logging"),
        ):
            result = CliRunner().invoke(cli, ["run", str(task_file)], env=env)

        assert result.exit_code == 0, result.output
        assert "COMPLETED" in result.output


class TestExtractPlanCommand:
    """Test the extract-plan command."""

    def test_prints_plan_json(self, tmp_path):
        judge_output = tmp_path / "judgment.md"
        judge_output.write_text("# Summarize repo\n\n1. Read README\n2. Write summary\n")

        result = CliRunner().invoke(
            cli, ["extract-plan", str(judge_output), "--request", "summarize"]
        )

        assert result.exit_code == 0
        plan = json.loads(result.output)
        assert plan["title"] == "Summarize repo"
        assert plan["milestones"] == ["Read README", "Write summary"]
        assert plan["original_request"] == "summarize"


class TestHistoryCommand:
    """Test the history command."""

    def test_no_runs(self, env):
        result = CliRunner().invoke(cli, ["history"], env=env)

        assert result.exit_code == 0
        assert "No dialogue runs found" in result.output

    def test_invalid_env_config_exits_two(self, env):
        env = {**env, "TASKLOOP_MAX_ITERATIONS": "zero"}

        result = CliRunner().invoke(cli, ["history"], env=env)

        assert result.exit_code == 2
        assert "Configuration error" in result.output
        assert "Traceback" not in result.output

    def test_lists_saved_runs(self, env, tmp_path):
        store = FileTaskStateStore(tmp_path / "tasks")
        for task_id, phase in (("task-a", RunPhase.COMPLETED), ("task-b", RunPhase.EXHAUSTED)):
            state = IterationState(
                task_id=task_id,
                max_iterations=3,
                iteration=3,
                phase=phase,
                started_at=datetime(2025, 1, 15, 14, 0),
            )
            save_state(state, store.state_path(task_id))

        result = CliRunner().invoke(cli, ["history"], env=env)

        assert result.exit_code == 0
        assert "task-a" in result.output
        assert "exhausted" in result.output

    def test_skips_corrupt_state(self, env, tmp_path):
        broken = tmp_path / "tasks" / "broken" / "run_state.json"
        broken.parent.mkdir(parents=True)
        broken.write_text("{not json")

        result = CliRunner().invoke(cli, ["history"], env=env)

        assert result.exit_code == 0
        assert "No dialogue runs found" in result.output


class TestShowCommand:
    """Test the show command."""

    def test_missing_task(self, env):
        result = CliRunner().invoke(cli, ["show", "nope"], env=env)

        assert result.exit_code == 1
        assert "No stored task nope" in result.output

    def test_invalid_env_config_exits_two(self, env):
        env = {**env, "TASKLOOP_MAX_ITERATIONS": "0"}

        result = CliRunner().invoke(cli, ["show", "task-a"], env=env)

        assert result.exit_code == 2
        assert "Configuration error" in result.output

    def test_shows_last_judgment(self, env, tmp_path):
        store = FileTaskStateStore(tmp_path / "tasks")
        store.write_judgment("task-a", 1, "first judgment")
        store.write_judgment("task-a", 2, "second judgment")

        result = CliRunner().invoke(cli, ["show", "task-a"], env=env)

        assert result.exit_code == 0
        assert "1, 2" in result.output
        assert "second judgment" in result.output
        assert "first judgment" not in result.output
