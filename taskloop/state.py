"""Task artifact persistence.

TaskStateStore is the narrow interface the orchestrator writes through;
FileTaskStateStore implements it as a markdown tree per task:

    <base>/<task_id>/
        task.md
        plan.md
        final_result.md            (completion marker written by agents)
        run_state.json
        iterations/
            iter-1/evaluation.md
            iter-1/execution.md
            final-summary.md

Run state is saved as JSON so the CLI can list and inspect past runs.
"""

import json
import logging
import re
from dataclasses import asdict
from datetime import datetime
from pathlib import Path
from typing import Protocol, runtime_checkable

from taskloop.models import IterationState, RunPhase, TaskPlan

logger = logging.getLogger(__name__)

RUN_STATE_FILE = "run_state.json"
FINAL_RESULT_FILE = "final_result.md"

_UNSAFE_ID_CHARS = re.compile(r"[^a-zA-Z0-9_-]")
_ITERATION_DIR = re.compile(r"^iter-(\d+)$")


def sanitize_task_id(task_id: str) -> str:
    """Make a task ID safe to use as a directory name."""
    return _UNSAFE_ID_CHARS.sub("_", task_id)


@runtime_checkable
class TaskStateStore(Protocol):
    """Destination for per-task artifacts. Failures are the caller's to log."""

    def write_plan(self, task_id: str, plan: TaskPlan) -> None: ...

    def write_judgment(self, task_id: str, iteration: int, content: str) -> None: ...

    def write_execution(self, task_id: str, iteration: int, content: str) -> None: ...

    def write_final_summary(self, task_id: str, content: str) -> None: ...

    def final_result_mtime(self, task_id: str) -> float | None: ...


class FileTaskStateStore:
    """Markdown files under a base directory, created lazily."""

    def __init__(self, base_dir: Path) -> None:
        self.base_dir = Path(base_dir)

    def task_dir(self, task_id: str) -> Path:
        return self.base_dir / sanitize_task_id(task_id)

    def iteration_dir(self, task_id: str, iteration: int) -> Path:
        return self.task_dir(task_id) / "iterations" / f"iter-{iteration}"

    def state_path(self, task_id: str) -> Path:
        return self.task_dir(task_id) / RUN_STATE_FILE

    def _write(self, path: Path, content: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        logger.debug(f"Wrote {path}")

    def write_task_spec(self, task_id: str, content: str) -> Path:
        """Store the task spec as task.md and return its path."""
        path = self.task_dir(task_id) / "task.md"
        self._write(path, content)
        return path

    def write_plan(self, task_id: str, plan: TaskPlan) -> None:
        self._write(self.task_dir(task_id) / "plan.md", plan.to_markdown())

    def write_judgment(self, task_id: str, iteration: int, content: str) -> None:
        self._write(self.iteration_dir(task_id, iteration) / "evaluation.md", content)

    def write_execution(self, task_id: str, iteration: int, content: str) -> None:
        self._write(self.iteration_dir(task_id, iteration) / "execution.md", content)

    def write_final_summary(self, task_id: str, content: str) -> None:
        self._write(
            self.task_dir(task_id) / "iterations" / "final-summary.md", content
        )

    def has_final_result(self, task_id: str) -> bool:
        """True if an agent wrote the final_result.md completion marker."""
        return (self.task_dir(task_id) / FINAL_RESULT_FILE).is_file()

    def final_result_mtime(self, task_id: str) -> float | None:
        """Modification time of the final_result.md marker, None if absent."""
        try:
            return (self.task_dir(task_id) / FINAL_RESULT_FILE).stat().st_mtime
        except FileNotFoundError:
            return None

    def list_iterations(self, task_id: str) -> list[int]:
        """Iteration numbers with a directory on disk, ascending."""
        iterations_dir = self.task_dir(task_id) / "iterations"
        if not iterations_dir.is_dir():
            return []

        numbers = []
        for child in iterations_dir.iterdir():
            match = _ITERATION_DIR.match(child.name)
            if child.is_dir() and match:
                numbers.append(int(match.group(1)))
        return sorted(numbers)

    def read_judgment(self, task_id: str, iteration: int) -> str | None:
        path = self.iteration_dir(task_id, iteration) / "evaluation.md"
        if not path.is_file():
            return None
        return path.read_text(encoding="utf-8")

    def list_task_ids(self) -> list[str]:
        """Directory names of all stored tasks, sorted."""
        if not self.base_dir.is_dir():
            return []
        return sorted(p.name for p in self.base_dir.iterdir() if p.is_dir())


def save_state(state: IterationState, path: Path) -> None:
    """Persist run state to a JSON file.

    Creates the parent directory if it doesn't exist.

    Args:
        state: Run state to save
        path: Destination file (usually <task_dir>/run_state.json)
    """
    path.parent.mkdir(parents=True, exist_ok=True)

    data = asdict(state)
    data["phase"] = state.phase.value
    data["started_at"] = state.started_at.isoformat()
    data["finished_at"] = state.finished_at.isoformat() if state.finished_at else None

    with open(path, "w") as f:
        json.dump(data, f, indent=2)


def load_state(path: Path) -> IterationState | None:
    """Load run state from a JSON file if it exists.

    Args:
        path: File written by save_state

    Returns:
        IterationState if the file exists, None otherwise
    """
    if not path.exists():
        return None

    with open(path) as f:
        data = json.load(f)

    data["phase"] = RunPhase(data["phase"])
    data["started_at"] = datetime.fromisoformat(data["started_at"])
    if data.get("finished_at"):
        data["finished_at"] = datetime.fromisoformat(data["finished_at"])
    return IterationState(**data)
