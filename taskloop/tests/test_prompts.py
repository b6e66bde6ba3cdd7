"""Tests for prompt templates and terminal notices."""

import pytest

from taskloop import prompts


class TestRolePrompts:
    """Test prompts sent to the specialist roles."""

    def test_first_prompt_contains_spec_and_instruction(self):
        prompt = prompts.build_first_prompt("# Task: demo")

        assert prompt.startswith("# Task: demo")
        assert "ExecutionAgent" in prompt

    def test_evaluation_prompt(self):
        prompt = prompts.build_evaluation_prompt(
            "SPEC", "executor said hi", iteration=2, max_iterations=5, done_tool="finish"
        )

        assert "## Execution Result (Iteration 2/5)" in prompt
        assert "executor said hi" in prompt
        assert "send_user_feedback" in prompt
        assert 'finish({"files"' in prompt

    def test_evaluation_prompt_without_feedback_tools(self):
        """Judges without the MCP tools are told to emit a fenced JSON block."""
        from taskloop.completion import detect_in_text

        prompt = prompts.build_evaluation_prompt(
            "SPEC", "out", iteration=1, max_iterations=3, feedback_tools=False
        )

        assert "send_user_feedback" not in prompt
        assert "task_done" not in prompt
        assert '```json\n{"completed": true, "files": ["path/to/artifact"]}\n```' in prompt
        # The example block is one the completion detector accepts
        example = prompt[prompt.index("```json") :]
        signal = detect_in_text(example)
        assert signal is not None
        assert signal.files == ["path/to/artifact"]

    def test_reporter_prompt_without_feedback_tools(self):
        prompt = prompts.build_reporter_prompt("SPEC", "out", "judged", 1, 3, feedback_tools=False)

        assert "send_user_feedback" not in prompt
        assert "Reply with the instructions the ExecutionAgent should follow next." in prompt

    def test_reporter_prompt_mentions_feedback_tool_by_default(self):
        prompt = prompts.build_reporter_prompt("SPEC", "out", "judged", 1, 3)

        assert "send_user_feedback" in prompt

    def test_progress_prompt(self):
        prompt = prompts.build_progress_prompt("[tool] Read", iteration=1)

        assert prompt.startswith("[PROGRESS_UPDATE] - Execution in progress (iteration 1)")
        assert "[tool] Read" in prompt
        assert "DO NOT call task_done" in prompt

    def test_reporter_prompt_without_judgment(self):
        prompt = prompts.build_reporter_prompt("SPEC", "out", "", 1, 3)

        assert "(no assessment)" in prompt
        assert "Iteration 1/3" in prompt


class TestNotices:
    """Test terminal notices shown to the user."""

    def test_exhausted_message(self):
        message = prompts.exhausted_message("task-1", 3)

        assert "**Dialogue reached max iterations (3) without completing the task.**" in message
        assert "Task ID: task-1" in message
        assert "/reset" in message

    def test_timeout_message(self):
        message = prompts.timeout_message("task-1", 2, 3, elapsed=90, budget=60)

        assert message.startswith("**Task timed out after 1m 30s.**")
        assert "Iterations run: 2/3" in message

    def test_cancelled_message(self):
        assert prompts.cancelled_message("t", 1, 3).startswith("Task cancelled by request.")

    def test_failure_message(self):
        assert "Error: boom" in prompts.failure_message("t", "boom")

    def test_final_summary(self):
        summary = prompts.final_summary("task-1", 2, ["out.md"])

        assert "# Final Summary: task-1" in summary
        assert "- Iteration 2: executed" in summary
        assert "- `out.md`" in summary

    def test_final_summary_without_files(self):
        assert "(none reported)" in prompts.final_summary("task-1", 1, [])


class TestFormatDuration:
    """Test duration formatting."""

    @pytest.mark.parametrize(
        "seconds, expected",
        [(0, "0s"), (59, "59s"), (60, "1m"), (125, "2m 5s"), (3600, "1h"), (3900, "1h 5m")],
    )
    def test_format(self, seconds, expected):
        assert prompts.format_duration(seconds) == expected
