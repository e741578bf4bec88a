"""Parse the machine-readable tasks block out of plan text, and write it back."""

from __future__ import annotations

import re

from .models import Task, TaskComplexity
from .prompts import PLAN_MARKER

TASKS_BLOCK_RE = re.compile(r"```tasks\s*([\s\S]*?)```")
TASK_LINE_RE = re.compile(r"- \[ \] (T\d{3}):\s*(.+)$")
BARE_TASK_LINE_RE = re.compile(r"- \[ \] T\d{3}:.*$", re.MULTILINE)
PHASE_HEADER_RE = re.compile(r"^##\s*(.+)$")
PHASE_NUMBER_RE = re.compile(r"Phase\s*(\d+)", re.IGNORECASE)

_FILE_RE = re.compile(r"^File:\s*(.+)$", re.IGNORECASE)
_DEPENDS_RE = re.compile(r"^DependsOn:\s*(.+)$", re.IGNORECASE)
_COMPLEXITY_RE = re.compile(r"^Complexity:\s*(.+)$", re.IGNORECASE)


def extract_plan(text: str) -> str | None:
    """Return the text before the completion marker, or None if the marker is absent."""
    index = text.find(PLAN_MARKER)
    if index == -1:
        return None
    return text[:index].strip()


def parse_task_line(line: str, phase: str | None = None) -> Task | None:
    """Parse ``- [ ] T###: desc | File: p | DependsOn: ids | Complexity: c``."""
    match = TASK_LINE_RE.search(line)
    if not match:
        return None

    task_id, remainder = match.groups()
    parts = [p.strip() for p in remainder.split("|") if p.strip()]
    if not parts:
        return None

    description = parts.pop(0)
    file_path = None
    depends_on: list[str] = []
    complexity = None

    for part in parts:
        if m := _FILE_RE.match(part):
            file_path = m.group(1).strip()
        elif m := _DEPENDS_RE.match(part):
            raw = m.group(1).strip().replace("[", "").replace("]", "")
            depends_on = [dep for dep in re.split(r"[,\s]+", raw) if dep]
        elif m := _COMPLEXITY_RE.match(part):
            normalized = m.group(1).strip().lower()
            if normalized.startswith("l"):
                complexity = TaskComplexity.LOW
            elif normalized.startswith("m"):
                complexity = TaskComplexity.MEDIUM
            elif normalized.startswith("h"):
                complexity = TaskComplexity.HIGH

    return Task(
        id=task_id,
        description=description,
        file_path=file_path,
        phase=phase,
        depends_on=depends_on,
        complexity=complexity,
    )


def parse_tasks(plan: str) -> list[Task]:
    """Extract tasks in document order.

    Reads the fenced ```tasks block when present (tracking ``## Phase`` headers),
    otherwise falls back to bare task lines anywhere in the text.
    """
    block = TASKS_BLOCK_RE.search(plan)
    if block is None:
        fallback = (parse_task_line(line) for line in BARE_TASK_LINE_RE.findall(plan))
        return [task for task in fallback if task is not None]

    tasks: list[Task] = []
    phase: str | None = None
    for raw_line in block.group(1).split("\n"):
        line = raw_line.strip()
        if header := PHASE_HEADER_RE.match(line):
            phase = header.group(1).strip()
            continue
        if line.startswith("- [ ]"):
            task = parse_task_line(line, phase)
            if task is not None:
                tasks.append(task)
    return tasks


def format_task_line(task: Task) -> str:
    line = f"- [ ] {task.id}: {task.description}"
    if task.file_path:
        line += f" | File: {task.file_path}"
    if task.depends_on:
        line += f" | DependsOn: {', '.join(task.depends_on)}"
    if task.complexity:
        line += f" | Complexity: {task.complexity.value}"
    return line


def format_tasks_block(tasks: list[Task]) -> str:
    """Serialize tasks back into a fenced block. ``parse_tasks`` reads it back unchanged."""
    lines = ["```tasks"]
    phase: str | None = None
    for task in tasks:
        if task.phase and task.phase != phase:
            lines.append(f"## {task.phase}")
            phase = task.phase
        lines.append(format_task_line(task))
    lines.append("```")
    return "\n".join(lines)


def phase_number(phase: str | None) -> int | None:
    if not phase:
        return None
    match = PHASE_NUMBER_RE.search(phase)
    return int(match.group(1)) if match else None


def complexity_score(tasks: list[Task]) -> int:
    return sum(task.weight for task in tasks)


def needs_refinement(tasks: list[Task], count_threshold: int = 8, score_threshold: int = 14) -> bool:
    """Large or complexity-heavy task lists get one sub-planning pass."""
    if not tasks:
        return False
    high = sum(1 for t in tasks if t.complexity == TaskComplexity.HIGH)
    return (
        len(tasks) >= count_threshold
        or complexity_score(tasks) >= score_threshold
        or high >= 2
    )
