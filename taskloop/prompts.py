"""Prompt templates for the dialogue roles and terminal notices.

Templates are module constants filled with str.format(); literal braces are
doubled. Builders are plain functions so tests can assert on their output.
"""

from datetime import datetime, timezone

EXECUTOR_INSTRUCTION = """## Your Role

You are the **ExecutionAgent**. Your job is to execute the task described above.

### What You Should Do

1. **Read the task carefully** - Review the Original Request and Expected Results
2. **Use tools appropriately** - You have full access to development tools
3. **Execute the work** - Complete what's needed to satisfy the Expected Results
4. **Report clearly** - Summarize what you did and the outcomes

### Important Notes

- Focus on execution and get the work done
- The judge will evaluate your results and decide next steps
- You don't need to signal completion; just report what you did

**Now execute the task.**"""

EVALUATION_PROMPT = """{task_spec}

---

## Execution Result (Iteration {iteration}/{max_iterations})

```
{execution_output}
```

---

## Your Evaluation Task

You are the judge. The ExecutionAgent has finished a round of work on the task above.

### How to Signal Completion

{completion_instructions}

### Evaluate

Compare the execution result against the Expected Results in the task:
- Is the original request satisfied?
- Has the expected deliverable been produced?

**If COMPLETE** -> {complete_action}
**If INCOMPLETE** -> reply with clear next instructions for the ExecutionAgent.
Your reply becomes its next prompt.
"""

TOOL_COMPLETION_INSTRUCTIONS = """When the task is complete, follow this EXACT order:

1. Send the final message to the user with `send_user_feedback`:
   send_user_feedback({{"message": "Your response to the user..."}})
2. Signal completion with `{done_tool}`, listing any files you produced:
   {done_tool}({{"files": ["path/to/artifact"]}})

The user will NOT see your plain text. They only see messages sent via send_user_feedback."""

TOOL_COMPLETE_ACTION = "call send_user_feedback, then {done_tool}"

# Used when the judge runs without the feedback tools
TEXT_COMPLETION_INSTRUCTIONS = """No completion or feedback tools are available in this session.

When the task is complete, end your reply with a fenced JSON block listing any files you produced:

```json
{{"completed": true, "files": ["path/to/artifact"]}}
```

Only include this block when the task is complete. Leave it out otherwise."""

TEXT_COMPLETE_ACTION = "summarize the outcome, then end your reply with the ```json completion block"

PROGRESS_PROMPT = """[PROGRESS_UPDATE] - Execution in progress (iteration {iteration})

{progress}

DO NOT call {done_tool} - wait for the completed result in the next message."""

REPORTER_PROMPT = """{task_spec}

---

## Execution Result (Iteration {iteration}/{max_iterations})

```
{execution_output}
```

## Judge Assessment

{judgment}

---

## Your Task

You are the reporter. The task is not complete yet.

{reporter_steps}
"""

REPORTER_STEPS_WITH_TOOLS = """1. If the user should hear about progress, send a short update with `send_user_feedback`.
2. Then reply with the instructions the ExecutionAgent should follow next.
   Your plain-text reply becomes its next prompt."""

REPORTER_STEPS_TEXT_ONLY = """Reply with the instructions the ExecutionAgent should follow next.
Your plain-text reply becomes its next prompt."""

EXHAUSTED_MESSAGE = """**Dialogue reached max iterations ({max_iterations}) without completing the task.**

Task ID: {task_id}

Suggestions:
- Send /reset to start a fresh conversation and try again
- Clarify the task description with more specific requirements"""

TIMEOUT_MESSAGE = """**Task timed out after {elapsed}.**

Task ID: {task_id}
Iterations run: {iteration}/{max_iterations}

The run exceeded its time budget of {budget}. Break the task into smaller steps or raise the timeout."""

CANCELLED_MESSAGE = """Task cancelled by request.

Task ID: {task_id}
Iterations run: {iteration}/{max_iterations}"""

PRECONDITION_MESSAGE = """**Cannot start task: {reason}**

Provide a task spec with the original request and expected results, then try again."""

FAILURE_MESSAGE = """**Task failed with an unexpected error.**

Task ID: {task_id}
Error: {error}"""

FINAL_SUMMARY = """# Final Summary: {task_id}

**Task ID**: {task_id}
**Completed**: {timestamp}
**Total Iterations**: {iteration}

## Overview

Task completed successfully after {iteration} iteration(s).

## Iteration History

{history}

## Deliverables

{files}

## Artifacts

- Task specification: `{task_id}/task.md`
- Evaluations: `{task_id}/iterations/iter-*/evaluation.md`
- Execution output: `{task_id}/iterations/iter-*/execution.md`
"""


def build_first_prompt(task_spec: str) -> str:
    """Task spec followed by the executor instruction."""
    return f"{task_spec}\n\n---\n\n{EXECUTOR_INSTRUCTION}"


def build_evaluation_prompt(
    task_spec: str,
    execution_output: str,
    iteration: int,
    max_iterations: int,
    done_tool: str = "task_done",
    feedback_tools: bool = True,
) -> str:
    """Build the full judgment prompt for one iteration.

    Args:
        task_spec: Full task spec text
        execution_output: Collected executor output for this iteration
        iteration: Current iteration number (1-based)
        max_iterations: Iteration cap
        done_tool: Reserved completion tool name
        feedback_tools: Whether the judge can call the done and feedback
            tools. Without them it is told to end its reply with a fenced
            JSON completion block instead.

    Returns:
        Prompt text for the judge
    """
    if feedback_tools:
        instructions, action = TOOL_COMPLETION_INSTRUCTIONS, TOOL_COMPLETE_ACTION
    else:
        instructions, action = TEXT_COMPLETION_INSTRUCTIONS, TEXT_COMPLETE_ACTION
    return EVALUATION_PROMPT.format(
        task_spec=task_spec,
        execution_output=execution_output,
        iteration=iteration,
        max_iterations=max_iterations,
        completion_instructions=instructions.format(done_tool=done_tool),
        complete_action=action.format(done_tool=done_tool),
    )


def build_progress_prompt(progress: str, iteration: int, done_tool: str = "task_done") -> str:
    return PROGRESS_PROMPT.format(progress=progress, iteration=iteration, done_tool=done_tool)


def build_reporter_prompt(
    task_spec: str,
    execution_output: str,
    judgment: str,
    iteration: int,
    max_iterations: int,
    feedback_tools: bool = True,
) -> str:
    return REPORTER_PROMPT.format(
        task_spec=task_spec,
        execution_output=execution_output,
        judgment=judgment or "(no assessment)",
        iteration=iteration,
        max_iterations=max_iterations,
        reporter_steps=REPORTER_STEPS_WITH_TOOLS if feedback_tools else REPORTER_STEPS_TEXT_ONLY,
    )


def exhausted_message(task_id: str, max_iterations: int) -> str:
    return EXHAUSTED_MESSAGE.format(task_id=task_id, max_iterations=max_iterations)


def timeout_message(
    task_id: str, iteration: int, max_iterations: int, elapsed: float, budget: float
) -> str:
    return TIMEOUT_MESSAGE.format(
        task_id=task_id,
        iteration=iteration,
        max_iterations=max_iterations,
        elapsed=format_duration(elapsed),
        budget=format_duration(budget),
    )


def cancelled_message(task_id: str, iteration: int, max_iterations: int) -> str:
    return CANCELLED_MESSAGE.format(
        task_id=task_id, iteration=iteration, max_iterations=max_iterations
    )


def precondition_message(reason: str) -> str:
    return PRECONDITION_MESSAGE.format(reason=reason)


def failure_message(task_id: str, error: str) -> str:
    return FAILURE_MESSAGE.format(task_id=task_id, error=error)


def final_summary(task_id: str, iteration: int, files: list[str]) -> str:
    """Render the final summary written when a task completes."""
    history = "\n".join(f"- Iteration {i}: executed" for i in range(1, iteration + 1))
    deliverables = "\n".join(f"- `{f}`" for f in files) if files else "(none reported)"
    return FINAL_SUMMARY.format(
        task_id=task_id,
        timestamp=datetime.now(timezone.utc).isoformat(),
        iteration=iteration,
        history=history or "(none)",
        files=deliverables,
    )


def format_duration(seconds: float) -> str:
    """Format seconds as a short human-readable duration, e.g. "1h 5m"."""
    seconds = int(seconds)
    if seconds < 60:
        return f"{seconds}s"
    minutes, secs = divmod(seconds, 60)
    if minutes < 60:
        return f"{minutes}m {secs}s" if secs else f"{minutes}m"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes}m" if minutes else f"{hours}h"
