from __future__ import annotations

from typing import List, Sequence

from .config import EscalationThresholds
from .models import DetectionIssue, SourceResult

# "unclear" is audit output only; it never sends a sheet to a paid backend.
ESCALATING_ISSUES = frozenset({"missing", "multiple"})


def escalation_reasons(
    result: SourceResult,
    issues: Sequence[DetectionIssue],
    total_questions: int,
    thresholds: EscalationThresholds = EscalationThresholds(),
) -> List[str]:
    """Which Tier-1 quality checks failed. An empty list means Tier 1 is trusted."""
    reasons: List[str] = []
    if total_questions <= 0:
        return ["incomplete"]

    completion = len(result.answers) / float(total_questions)
    counted = sum(1 for issue in issues if issue.kind in ESCALATING_ISSUES)
    if result.confidence < thresholds.min_confidence:
        reasons.append("low_confidence")
    if counted > total_questions * thresholds.max_issue_ratio:
        reasons.append("too_many_issues")
    if completion < thresholds.min_completion:
        reasons.append("incomplete")
    return reasons


def should_escalate(
    result: SourceResult,
    issues: Sequence[DetectionIssue],
    total_questions: int,
    thresholds: EscalationThresholds = EscalationThresholds(),
) -> bool:
    return bool(escalation_reasons(result, issues, total_questions, thresholds))
