from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass

from agentfleet.tasks import Task

COMPLETION_MARKER = "STATUS: COMPLETE"
MORE_WORK_MARKER = "STATUS: NEEDS_MORE_WORK"
TRUNCATION_MARKER = "\n... [TRUNCATED FOR TOKEN LIMIT] ...\n"

NO_GIT_WRITE_BLOCK = (
    "# NO GIT WRITES\n"
    "Do not run git commands that change the repository: no commit, push, merge, rebase, "
    "reset, checkout of other branches or stash. Read-only git commands are fine. "
    "Leave your changes in the working tree.\n"
)

EXTENDED_PLANNING_BLOCK = (
    "# EXTENDED PLANNING\n"
    "Before changing any file, explore the relevant code and write a numbered plan that "
    "names every file you intend to touch and why. Then carry out the plan step by step, "
    "revising it when you learn something new.\n"
)

PLAN_ONLY_BLOCK = (
    "# PLAN ONLY\n"
    "Do not modify any files. Investigate the project and produce a detailed "
    "implementation plan as your final answer.\n"
)

PLANNING_RUN_BLOCK = (
    "# PLANNING RUN\n"
    "Other tasks this one depends on are still running. Do not modify any files yet. "
    "Study the project and draft the implementation plan you will follow once they finish.\n"
)

AUTONOMOUS_BLOCK = (
    "# AUTONOMOUS MODE\n"
    "You are working unattended over several iterations. At the end of every iteration "
    "finish your reply with exactly one status line:\n"
    f"{COMPLETION_MARKER}\n"
    "when the whole task is done and verified, or\n"
    f"{MORE_WORK_MARKER}\n"
    "when more iterations are needed.\n"
)

CONTINUATION_TEMPLATE = (
    "# Continue: iteration {iteration} of {max_iterations}\n"
    "Review what you did in the previous iteration, check the work (run tests where they "
    "exist), then continue with the remaining parts of the task. End with "
    f"'{COMPLETION_MARKER}' or '{MORE_WORK_MARKER}'.\n"
)

_HEADING_RE = re.compile(r"^#{1,3} ", re.MULTILINE)

# First matching keyword wins; headings without one get the general priority.
_SECTION_PRIORITIES: tuple[tuple[str, float], ...] = (
    ("no git", 0.95),
    ("plan only", 0.95),
    ("dependency", 0.5),
    ("task", 0.95),
    ("instruction", 0.95),
    ("error", 0.9),
    ("fail", 0.9),
    ("plan", 0.5),
    ("rule", 0.4),
    ("guideline", 0.4),
    ("history", 0.3),
    ("previous", 0.3),
)
_GENERAL_PRIORITY = 0.5


def build_task_prompt(task: Task, *, system_prompt: str = "") -> str:
    """Full instruction payload for a fresh run of ``task``."""
    parts = [f"# Task: {task.summary}\n"]
    if system_prompt.strip():
        parts.append(system_prompt.rstrip() + "\n")
    if task.flags.no_git_write:
        parts.append(NO_GIT_WRITE_BLOCK)
    if task.flags.extended_planning:
        parts.append(EXTENDED_PLANNING_BLOCK)
    if task.flags.plan_only:
        parts.append(PLAN_ONLY_BLOCK)
    if task.is_iterative:
        parts.append(AUTONOMOUS_BLOCK)
    if task.dependency_context.strip():
        parts.append(task.dependency_context.rstrip() + "\n")
    if task.stored_plan.strip():
        parts.append("# Plan drafted earlier\n" + task.stored_plan.strip() + "\n")
    parts.append("# Instructions\n" + task.description.strip() + "\n")
    return "\n".join(parts)


def build_planning_prompt(task: Task, *, system_prompt: str = "") -> str:
    return build_task_prompt(task, system_prompt=system_prompt) + "\n" + PLANNING_RUN_BLOCK


def build_continuation_prompt(iteration: int, max_iterations: int) -> str:
    return CONTINUATION_TEMPLATE.format(iteration=iteration, max_iterations=max_iterations)


def build_dependency_context(prerequisites: Iterable[Task]) -> str:
    lines: list[str] = []
    index = 0
    for dep in prerequisites:
        index += 1
        title = dep.summary or "Untitled"
        lines.append(f'## Dependency #{index}: #{dep.number} "{title}"')
        lines.append(f"Task: {dep.description.strip()}")
        lines.append(f"Status: {dep.status.value}")
        if dep.completion_summary.strip():
            lines.append("Changes:")
            lines.append(dep.completion_summary.strip())
        lines.append("")
    if index == 0:
        return ""
    header = [
        "# Dependency context",
        "These tasks finished before this one started. Use their results to inform your work.",
        "",
    ]
    return "\n".join(header + lines)


@dataclass(slots=True)
class PromptSection:
    index: int
    heading: str
    body: str
    priority: float


def _section_priority(heading: str, index: int) -> float:
    if index == 0:
        return 1.0
    lowered = heading.lower()
    for keyword, priority in _SECTION_PRIORITIES:
        if keyword in lowered:
            return priority
    return _GENERAL_PRIORITY


def split_sections(prompt: str) -> list[PromptSection]:
    starts = [match.start() for match in _HEADING_RE.finditer(prompt)]
    if not starts or starts[0] != 0:
        starts.insert(0, 0)
    starts.append(len(prompt))
    sections: list[PromptSection] = []
    for start, end in zip(starts, starts[1:]):
        body = prompt[start:end]
        if not body:
            continue
        heading = body.splitlines()[0] if body.strip() else ""
        sections.append(
            PromptSection(
                index=len(sections),
                heading=heading,
                body=body,
                priority=_section_priority(heading, len(sections)),
            )
        )
    return sections


def _truncate(body: str, limit: int) -> str:
    if limit <= 2 * len(TRUNCATION_MARKER):
        return body[:limit]
    return body[: limit - len(TRUNCATION_MARKER)] + TRUNCATION_MARKER


def reduce_prompt(prompt: str, factor: float) -> str:
    """Cut ``prompt`` down to exactly ``int(len(prompt) * factor)`` characters.

    Sections are taken highest priority first and put back in their original
    order. The first section that no longer fits is truncated to fill what is
    left of the budget; every lower-priority section after it is dropped. A
    large task or instruction section is therefore cut as well once it alone
    exceeds the budget.
    """
    budget = int(len(prompt) * factor)
    if budget >= len(prompt):
        return prompt
    kept: dict[int, str] = {}
    used = 0
    for section in sorted(split_sections(prompt), key=lambda item: (-item.priority, item.index)):
        remaining = budget - used
        if remaining <= 0:
            break
        if len(section.body) <= remaining:
            kept[section.index] = section.body
        else:
            kept[section.index] = _truncate(section.body, remaining)
        used += len(kept[section.index])
    return "".join(kept[index] for index in sorted(kept))


def build_token_retry_prompt(prompt: str, *, attempt: int, max_attempts: int, factor: float) -> str:
    """Retry notice followed by ``prompt`` reduced to ``factor`` of its length."""
    header = (
        f"# Token limit retry {attempt} of {max_attempts}\n"
        "The previous attempt stopped at a token or rate limit. Context has been reduced to "
        f"{int(factor * 100)}% of the original. Continue where you left off and keep replies "
        "and tool output short.\n\n"
    )
    return header + reduce_prompt(prompt, factor)


FAILURE_RECOVERY_BLOCK = (
    "# FAILURE RECOVERY\n"
    "An earlier attempt at the task below failed. Read the failure output, find the cause, "
    "fix it, and make sure the original task is fully done afterwards.\n"
)
RECOVERY_DESCRIPTION_LIMIT = 2000
ERROR_CONTEXT_LIMIT = 3000
_ERROR_HINTS = (
    "error",
    "exception",
    "failed",
    "traceback",
    "fatal",
    "cannot find",
    "does not exist",
    "not found",
    "syntax error",
)


def extract_error_context(output: str, limit: int = ERROR_CONTEXT_LIMIT) -> str:
    """Error-looking lines from the tail of ``output``, or the bare tail when none match."""
    if not output.strip():
        return ""
    kept: list[str] = []
    size = 0
    for line in output[-limit:].splitlines():
        lowered = line.lower()
        if not any(hint in lowered for hint in _ERROR_HINTS):
            continue
        kept.append(line)
        size += len(line) + 1
        if size > limit:
            break
    if not kept:
        return output[-limit:].strip()
    return "\n".join(kept)


def build_recovery_prompt(failed: Task) -> str:
    description = failed.description.strip()
    if len(description) > RECOVERY_DESCRIPTION_LIMIT:
        description = description[:RECOVERY_DESCRIPTION_LIMIT] + "\n... [truncated]"
    parts = [
        f"Recover #{failed.number}: {failed.summary}\n",
        FAILURE_RECOVERY_BLOCK,
        "# Original task\n" + description + "\n",
    ]
    if failed.failure_reason:
        parts.append("# Failure reason\n" + failed.failure_reason + "\n")
    errors = extract_error_context(failed.output)
    if errors:
        parts.append("# Failure output\n```\n" + errors + "\n```\n")
    if failed.completion_summary.strip():
        summary = failed.completion_summary.strip()
        parts.append("# Summary from the failed attempt\n" + summary + "\n")
    parts.append(
        "# Instructions\n"
        "Fix the issue described above. The original task should be fully completed "
        "after your fix.\n"
    )
    return "\n".join(parts)
