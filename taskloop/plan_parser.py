"""Plan and task spec parsing.

Extracts a structured TaskPlan from the judge's free-form first response and
reads the metadata header of task spec (Task.md) documents. Parsing is
lenient: every function here returns a usable value for any input.
"""

import random
import re
import string
import time
from collections.abc import Callable
from datetime import datetime, timezone

from taskloop.models import TaskPlan, TaskSpecMetadata

UNTITLED_TASK = "Untitled Task"

# Description excerpt limits; without milestones the excerpt is the plan
DESCRIPTION_WITH_MILESTONES = 500
DESCRIPTION_WITHOUT_MILESTONES = 1000

_SECTION_CUES = ("milestone", "step", "plan")
_NUMBERED_ITEM = re.compile(r"^\d+\.")
_BULLET_ITEM = re.compile(r"^[-*]")
_BASE36 = string.digits + string.ascii_lowercase


def generate_task_id() -> str:
    """Generate a collision-resistant task ID.

    Combines the epoch time in milliseconds with a short random suffix,
    e.g. "dialogue-task-1737000000000-k3f9za".
    """
    timestamp = int(time.time() * 1000)
    suffix = "".join(random.choices(_BASE36, k=6))
    return f"dialogue-task-{timestamp}-{suffix}"


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class TaskPlanExtractor:
    """Extracts structured task plans from judge output.

    Analyzes the text and extracts:
    - Title (from the first markdown heading)
    - Milestones (from numbered/bulleted lists and cued sections)
    - Description (length-capped excerpt of the text)
    """

    def __init__(
        self,
        generate_id: Callable[[], str] | None = None,
        clock: Callable[[], str] | None = None,
    ) -> None:
        """Initialize the extractor.

        Args:
            generate_id: Task ID factory (default: generate_task_id)
            clock: Factory for the created_at timestamp (default: UTC ISO-8601)
        """
        self._generate_id = generate_id or generate_task_id
        self._clock = clock or _utc_timestamp

    def extract(self, text: str, original_request: str) -> TaskPlan:
        """Extract a task plan from judge output. Never raises.

        Args:
            text: The judge's output text
            original_request: The user's original request

        Returns:
            TaskPlan with sensible defaults for anything not found
        """
        text = text or ""
        lines = text.split("\n")

        milestones = extract_milestones(lines)

        return TaskPlan(
            task_id=self._generate_id(),
            title=extract_title(lines),
            description=build_description(text, milestones),
            milestones=milestones,
            original_request=original_request,
            created_at=self._clock(),
        )


def extract_title(lines: list[str]) -> str:
    """Return the text of the first markdown heading, or UNTITLED_TASK."""
    for line in lines:
        trimmed = line.strip()
        if trimmed.startswith("#") and len(trimmed) > 2:
            title = re.sub(r"^#+\s*", "", trimmed).strip()
            if title:
                return title
    return UNTITLED_TASK


def _is_list_item(trimmed: str) -> bool:
    return bool(_NUMBERED_ITEM.match(trimmed) or _BULLET_ITEM.match(trimmed))


def extract_milestones(lines: list[str]) -> list[str]:
    """Collect milestones from list items and cued sections.

    A non-list line mentioning "milestone", "step" or "plan" opens a
    milestone section; every following non-empty, non-heading line is a
    milestone. Outside such a section only list items count. Duplicates
    are kept.
    """
    milestones: list[str] = []
    in_milestones = False

    for line in lines:
        trimmed = line.strip()
        is_list_item = _is_list_item(trimmed)

        lowered = trimmed.lower()
        if not is_list_item and any(cue in lowered for cue in _SECTION_CUES):
            in_milestones = True
            continue

        if in_milestones or is_list_item:
            milestone = re.sub(r"^\d+\.?\s*", "", trimmed)
            milestone = re.sub(r"^[-*]\s*", "", milestone).strip()
            if milestone and not milestone.startswith("#"):
                milestones.append(milestone)

    return milestones


def build_description(text: str, milestones: list[str]) -> str:
    """Excerpt the text, allowing more room when there are no milestones."""
    limit = (
        DESCRIPTION_WITH_MILESTONES if milestones else DESCRIPTION_WITHOUT_MILESTONES
    )
    return text[:limit]


def parse_task_spec(content: str) -> TaskSpecMetadata:
    """Parse the metadata header of a task spec document.

    Reads "**Task ID**:", "**Chat ID**:" and "**User ID**:" lines and the
    "## Original Request" section, preferring a fenced block inside it.

    Args:
        content: Full task spec markdown

    Returns:
        TaskSpecMetadata with empty strings for missing fields
    """
    message_id = _match_field(content, "Task ID") or ""
    chat_id = _match_field(content, "Chat ID") or ""
    user_id = _match_field(content, "User ID")

    user_request = ""
    section = re.search(
        r"^##\s*Original\s*Request\s*\n(.*?)(?=^##\s|\Z)",
        content,
        re.MULTILINE | re.DOTALL | re.IGNORECASE,
    )
    if section:
        body = section.group(1)
        block = re.search(r"(```|~~~)[^\n]*\n(.*?)\1", body, re.DOTALL)
        user_request = block.group(2).strip() if block else body.strip()

    return TaskSpecMetadata(
        message_id=message_id,
        chat_id=chat_id,
        user_id=user_id,
        user_request=user_request,
    )


def _match_field(content: str, label: str) -> str | None:
    """Match a "**Label**: value" line (bold markers optional)."""
    match = re.search(
        rf"^\s*[-*]?\s*\**{label}\**\s*:\s*\**\s*([^\n]+)",
        content,
        re.MULTILINE | re.IGNORECASE,
    )
    if not match:
        return None
    value = match.group(1).strip().strip("*").strip()
    return value or None
