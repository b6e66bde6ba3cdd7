"""Shared fixtures for taskloop tests."""

import textwrap
from pathlib import Path

import pytest

from taskloop.config import OrchestratorConfig

TASK_SPEC = textwrap.dedent(
    """\
    # Task: Summarize the repository

    **Task ID**: demo-task
    **Chat ID**: chat-42
    **User ID**: user-7

    ## Original Request

    ```
    Summarize what this repository does
    ```

    ## Expected Results

    A short summary written to summary.md
    """
)


@pytest.fixture
def task_spec() -> str:
    """Task spec markdown with metadata and an Original Request block."""
    return TASK_SPEC


@pytest.fixture
def task_file(tmp_path: Path) -> Path:
    """Task spec stored as tasks/demo-task/task.md."""
    path = tmp_path / "tasks" / "demo-task" / "task.md"
    path.parent.mkdir(parents=True)
    path.write_text(TASK_SPEC)
    return path


@pytest.fixture
def config(tmp_path: Path) -> OrchestratorConfig:
    """Config with progress forwarding off and a short but safe timeout."""
    return OrchestratorConfig(
        max_iterations=3,
        timeout_seconds=30,
        forward_progress=False,
        progress_interval_seconds=0,
        tasks_dir=tmp_path / "tasks",
    )
