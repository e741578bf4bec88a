"""Prompt templates for planner, worker and judge sessions."""

from __future__ import annotations

from typing import TYPE_CHECKING

from .models import PlanningMode

if TYPE_CHECKING:
    from .models import Feature, JudgeResult, PipelineStep, QualityGateResult, Task

PLAN_MARKER = "[SPEC_GENERATED]"

_MARKER_INSTRUCTION = f"""\
After the plan is complete, output exactly:
"{PLAN_MARKER} Please review the plan above."
"""

_TASKS_FORMAT = """\
List the implementation tasks in a fenced block tagged `tasks`:

```tasks
## Phase 1: <name>
- [ ] T001: <description> | File: <path> | Complexity: low
- [ ] T002: <description> | File: <path> | DependsOn: T001 | Complexity: medium
```
"""

PLANNING_LITE = """\
## Planning Phase (Lite)

Before writing any code, explore the codebase and produce a short outline with
these sections: Goal, Approach, Files to Touch, Tasks, Risks.

""" + _TASKS_FORMAT + """
Then proceed straight to implementation. Do not wait for approval.

"""

PLANNING_LITE_WITH_APPROVAL = """\
## Planning Phase (Lite, approval required)

Before writing any code, explore the codebase and produce a short outline with
these sections: Goal, Approach, Files to Touch, Tasks, Risks.

""" + _TASKS_FORMAT + "\n" + _MARKER_INSTRUCTION + """
Stop after the marker. Do NOT implement anything until the plan is approved.

"""

PLANNING_SPEC = """\
## Specification Phase

Before writing any code, explore the codebase and write a specification with
these sections:
- Problem and Solution summary
- Acceptance Criteria
- Verification / Test Strategy
- Security / Privacy / Auth considerations
- Performance / Scalability considerations
- UX states (loading, empty state, error state)
- Data Schema / API Contract / Validation
- Files to Modify

""" + _TASKS_FORMAT + "\n" + _MARKER_INSTRUCTION + """
Stop after the marker. Do NOT implement anything until the plan is approved.

"""

PLANNING_FULL = """\
## Full Specification Phase

Before writing any code, perform a thorough analysis of the codebase and write a
complete specification with these sections:
- User Story and Problem Statement
- Acceptance Criteria (numbered, testable)
- Technical Context and affected modules
- Verification / Test Strategy
- Security / Privacy / Auth considerations
- Performance / Scalability / Latency considerations
- UX states (loading, empty state, error state)
- Data Schema / API Contract / Validation
- Risks and Mitigations

Group the tasks into phases (foundation, core implementation, integration and
testing).

""" + _TASKS_FORMAT + "\n" + _MARKER_INSTRUCTION + """
Stop after the marker. Do NOT implement anything until the plan is approved.

"""


def planning_prefix(feature: Feature) -> str:
    """Select the planning preamble for the feature's mode. Empty for ``skip``."""
    mode = feature.planning_mode
    if mode == PlanningMode.SKIP:
        return ""
    if mode == PlanningMode.LITE:
        return PLANNING_LITE_WITH_APPROVAL if feature.require_plan_approval else PLANNING_LITE
    if mode == PlanningMode.SPEC:
        return PLANNING_SPEC
    return PLANNING_FULL


def build_feature_prompt(feature: Feature) -> str:
    """Build the feature description block shared by most prompts."""
    title = feature.title
    if not title:
        title = feature.description.splitlines()[0][:60] if feature.description.strip() else feature.id
    prompt = f"""\
## Feature Implementation Task

**Feature ID:** {feature.id}
**Title:** {title}
**Description:** {feature.description}
"""
    if feature.spec:
        prompt += f"\n**Specification:**\n{feature.spec}\n"

    if feature.skip_tests:
        prompt += """
## Instructions

Implement this feature by:
1. Exploring the codebase to understand the existing structure
2. Writing the necessary code changes
3. Following existing patterns and conventions
"""
    else:
        prompt += """
## Instructions

Implement this feature by:
1. Exploring the codebase to understand the existing structure
2. Writing the necessary code changes
3. Adding or updating tests for the new behaviour
4. Running the project's lint, type check, test and build commands
"""
    prompt += """
When done, wrap your final summary in <summary> tags:

<summary>
## Summary
- What changed
- Files modified
- Notes for the reviewer
</summary>
"""
    return prompt


def build_initial_prompt(feature: Feature) -> str:
    return planning_prefix(feature) + build_feature_prompt(feature)


def build_resume_prompt(feature: Feature, previous_output: str) -> str:
    return f"""\
## Continuing Feature Implementation

{build_feature_prompt(feature)}

## Previous Context
The following is the output from a previous implementation attempt. Continue from where you left off:

{previous_output}

## Instructions
Review the previous work and continue the implementation. If the feature appears complete, verify it works correctly."""


def build_approved_plan_prompt(plan_content: str, feedback: str | None = None) -> str:
    """Continuation prompt used when an approved plan has no parsable tasks."""
    prompt = "The plan/specification has been approved. Now implement it.\n"
    if feedback:
        prompt += f"\n## User Feedback\n{feedback}\n"
    prompt += f"""
## Approved Plan

{plan_content}

## Instructions

Implement all the changes described in the plan above."""
    return prompt


def build_plan_quality_revision_prompt(
    plan_content: str, issues: list[str], mode: PlanningMode,
) -> str:
    issue_list = "\n".join(f"- {issue}" for issue in issues)
    if mode == PlanningMode.LITE:
        format_hint = "Use the lite planning outline format (Goal, Approach, Files to Touch, Tasks, Risks)."
    else:
        format_hint = "Use the specification format with a ```tasks``` block and required sections."
    return f"""\
The plan/specification failed quality gates.

Missing items:
{issue_list}

Current plan/specification:
{plan_content}

Revise the plan/specification to address ALL missing items while preserving scope.
{format_hint}

{_MARKER_INSTRUCTION}"""


def build_plan_revision_prompt(
    previous_plan: str, previous_version: int, feedback: str | None,
) -> str:
    """Revision prompt after a human rejected the plan with feedback or edits."""
    return f"""\
The user has requested revisions to the plan/specification.

## Previous Plan (v{previous_version})
{previous_plan}

## User Feedback
{feedback or "Please revise the plan based on the edits above."}

## Instructions
Please regenerate the specification incorporating the user's feedback.
Keep the same format with the ```tasks block for task definitions.

{_MARKER_INSTRUCTION}"""


def build_subplan_prompt(plan_content: str, tasks: list[Task]) -> str:
    task_summary = "\n".join(_task_line(t) for t in tasks)
    return f"""\
You are a sub-planner. Refine the task list into smaller, executable tasks with clear dependencies.

Rules:
- Output ONLY a ```tasks``` block (no other text).
- Use sequential IDs (T001, T002, ...).
- Include File, DependsOn (optional), and Complexity (optional) fields.
- Keep scope identical; do not add new features.

## Original Plan Context
{plan_content}

## Current Tasks
{task_summary}

Return ONLY the refined tasks block."""


def build_task_prompt(
    task: Task,
    completed: list[Task],
    upcoming: list[Task],
    plan_content: str,
    feedback: str | None = None,
) -> str:
    """Task-scoped prompt: the task itself, progress so far and the full plan."""
    details = [f"**Task ID:** {task.id}", f"**Description:** {task.description}"]
    if task.file_path:
        details.append(f"**Primary File:** {task.file_path}")
    if task.phase:
        details.append(f"**Phase:** {task.phase}")
    if task.depends_on:
        details.append(f"**Depends On:** {', '.join(task.depends_on)}")
    if task.complexity:
        details.append(f"**Complexity:** {task.complexity.value}")

    prompt = f"""\
# Task Execution: {task.id}

You are executing a specific task as part of a larger feature implementation.

## Your Current Task

{chr(10).join(details)}

## Context

"""
    if completed:
        done = "\n".join(f"- [x] {t.id}: {t.description}" for t in completed)
        prompt += f"### Already Completed ({len(completed)} tasks)\n{done}\n\n"

    if upcoming:
        shown = "\n".join(f"- [ ] {t.id}: {t.description}" for t in upcoming[:3])
        prompt += f"### Coming Up Next ({len(upcoming)} tasks remaining)\n{shown}\n"
        if len(upcoming) > 3:
            prompt += f"... and {len(upcoming) - 3} more tasks\n"
        prompt += "\n"

    if feedback:
        prompt += f"### User Feedback\n{feedback}\n\n"

    prompt += f"""\
### Reference: Full Plan
<details>
{plan_content}
</details>

## Instructions

1. Focus ONLY on completing task {task.id}: "{task.description}"
2. Do not work on other tasks
3. Use the existing codebase patterns
4. When done, summarize what you implemented

Begin implementing task {task.id} now."""
    return prompt


def build_pipeline_step_prompt(step: PipelineStep, feature: Feature, previous_output: str) -> str:
    prompt = f"""\
## Pipeline Step: {step.name}

This is an automated pipeline step following the initial feature implementation.

### Feature Context
{build_feature_prompt(feature)}

"""
    if previous_output:
        prompt += f"""\
### Previous Work
The following is the output from the previous work on this feature:

{previous_output}

"""
    prompt += f"""\
### Pipeline Step Instructions
{step.instructions}

### Task
Complete the pipeline step instructions above. Review the previous work and apply the required changes or actions."""
    return prompt


def build_quality_fix_prompt(feature: Feature, failing: list[QualityGateResult]) -> str:
    if failing:
        blocks = []
        for check in failing:
            output = (check.output or "")[-2000:]
            block = f"- {check.name}"
            if output:
                block += f"\n  Output:\n{output}"
            blocks.append(block)
        failures = "\n".join(blocks)
    else:
        failures = "No failing checks reported."
    return f"""\
## Quality Gate Fix Required

{build_feature_prompt(feature)}

### Failing Checks
{failures}

## Task
Fix the issues causing the quality checks to fail. Re-run the failing checks if needed and ensure all checks pass."""


def build_judge_fix_prompt(feature: Feature, result: JudgeResult) -> str:
    issues = "\n".join(f"- {i}" for i in result.issues) or "No issues provided."
    recommendations = "\n".join(f"- {r}" for r in result.recommendations) or "No recommendations provided."
    return f"""\
## Judge Revision Required

{build_feature_prompt(feature)}

### Issues
{issues}

### Recommendations
{recommendations}

## Task
Address the judge feedback above. Update the implementation so it fully satisfies the feature requirements."""


def build_judge_prompt(
    feature: Feature,
    tasks: list[Task],
    quality: list[QualityGateResult],
    agent_output: str,
) -> str:
    if tasks:
        task_summary = "\n".join(f"- {t.id}: {t.description}" for t in tasks[:20])
    else:
        task_summary = "No plan tasks recorded."
    if quality:
        quality_summary = "\n".join(f"- {c.name}: {c.status}" for c in quality)
    else:
        quality_summary = "No quality checks recorded."
    excerpt = agent_output[-6000:]

    return f"""\
You are the judge agent. Evaluate whether the feature implementation is complete and aligned with the plan.

Return ONLY JSON (no markdown, no prose):
{{"verdict":"pass|revise|fail","issues":["..."],"recommendations":["..."],"confidence":0.0}}

Feature:
Title: {feature.title or feature.id}
Description: {feature.description}

Plan Tasks:
{task_summary}

Quality Checks:
{quality_summary}

Implementation Output (excerpt):
{excerpt}

Guidance:
- "pass" if the feature is complete and quality checks are acceptable.
- "revise" if there are fixable gaps or missing tasks.
- "fail" if the implementation is fundamentally misaligned.
"""


def _task_line(task: Task) -> str:
    line = f"- {task.id}: {task.description}"
    if task.file_path:
        line += f" | File: {task.file_path}"
    if task.depends_on:
        line += f" | DependsOn: {', '.join(task.depends_on)}"
    if task.complexity:
        line += f" | Complexity: {task.complexity.value}"
    return line
