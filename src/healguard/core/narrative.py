"""Audit narratives.

`describe` turns an issue/action/outcome triple into a structured record;
`render` turns that record into text. Both are pure.
"""

from __future__ import annotations

from healguard.models import (
    DetectedIssue,
    EventType,
    HealingAction,
    HealingResult,
    HealingStep,
    NarrativeRecord,
)


def _step_text(step: HealingStep) -> str:
    text = f"{step.action} -> {step.target}" if step.target else step.action
    if step.parameters:
        params = ", ".join(f"{k}={v}" for k, v in sorted(step.parameters.items()))
        text += f" ({params})"
    return text


def describe(
    issue: DetectedIssue,
    action: HealingAction,
    result: HealingResult | None = None,
    block_reason: str | None = None,
    before_version: str | None = None,
    after_version: str | None = None,
) -> NarrativeRecord:
    """Build the structured narrative for an executed or blocked action."""
    if result is None:
        disposition = EventType.HEALING_BLOCKED
        headline = f"Blocked {action.strategy} for {issue.category} issue"
        outcome = f"Not executed: {block_reason or 'blocked by policy'}"
    elif result.success:
        disposition = EventType.HEALING_SUCCEEDED
        headline = f"Healed {issue.category} issue with {action.strategy}"
        outcome = result.outcome_description or "Completed successfully"
    else:
        disposition = EventType.HEALING_FAILED
        headline = f"Failed to heal {issue.category} issue with {action.strategy}"
        outcome = result.outcome_description or "Execution failed"

    return NarrativeRecord(
        headline=headline,
        disposition=disposition,
        issue_summary=issue.signature.description or issue.category,
        strategy=action.strategy,
        severity=issue.severity,
        category=issue.category,
        component=issue.context.component,
        steps=[_step_text(s) for s in action.steps],
        outcome=outcome,
        block_reason=block_reason,
        steps_completed=result.steps_completed if result else 0,
        total_steps=result.total_steps if result else len(action.steps),
        before_version=before_version,
        after_version=after_version,
        affected_resources=list(issue.affected_resources),
        lessons=list(result.lessons) if result else [],
        preventive_measures=list(result.preventive_measures) if result else [],
        rollback_steps=[_step_text(s) for s in action.rollback_plan],
    )


def render(record: NarrativeRecord) -> str:
    """Render a narrative record as markdown."""
    lines = [
        f"## {record.headline}",
        "",
        f"**Severity:** {record.severity.value}  ",
        f"**Component:** {record.component}  ",
        f"**Strategy:** {record.strategy}",
        "",
        f"**Issue:** {record.issue_summary}",
        "",
    ]

    if record.steps:
        lines.append("### Steps")
        lines.extend(f"{i}. {s}" for i, s in enumerate(record.steps, start=1))
        lines.append("")

    lines.append("### Outcome")
    lines.append(record.outcome)
    if record.disposition != EventType.HEALING_BLOCKED:
        lines.append(f"Steps completed: {record.steps_completed}/{record.total_steps}")
    lines.append("")

    if record.before_version or record.after_version:
        lines.append("### Versions")
        lines.append(f"- Before: {record.before_version or 'n/a'}")
        lines.append(f"- After: {record.after_version or 'n/a'}")
        lines.append("")

    if record.affected_resources:
        lines.append("### Affected Resources")
        lines.extend(f"- {r}" for r in record.affected_resources)
        lines.append("")

    if record.rollback_steps:
        lines.append("### Rollback Plan")
        lines.extend(f"{i}. {s}" for i, s in enumerate(record.rollback_steps, start=1))
        lines.append("")

    if record.lessons:
        lines.append("### Lessons")
        lines.extend(f"- {lesson}" for lesson in record.lessons)
        lines.append("")

    if record.preventive_measures:
        lines.append("### Preventive Measures")
        lines.extend(f"- {m}" for m in record.preventive_measures)
        lines.append("")

    return "\n".join(lines).rstrip() + "\n"
