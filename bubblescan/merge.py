from __future__ import annotations

from typing import Any, Dict, List

from .models import AnswerMap, SourceResult

USE_GEOMETRIC = "use-geometric"
USE_INFERENCE = "use-inference"
MANUAL_REVIEW = "manual-review"


def merge_answers(primary: SourceResult, secondary: SourceResult) -> AnswerMap:
    """
    Combine two answer maps. Agreement and single-source answers are kept as is;
    on disagreement the more confident source wins, and equal confidence keeps
    the primary (Tier 1) answer.
    """
    primary_wins = primary.confidence >= secondary.confidence
    merged: AnswerMap = {}
    for question in sorted(set(primary.answers) | set(secondary.answers)):
        first = primary.answers.get(question)
        second = secondary.answers.get(question)
        if first is None:
            merged[question] = second
        elif second is None or first == second:
            merged[question] = first
        else:
            merged[question] = first if primary_wins else second
    return merged


def compare_sources(primary: SourceResult, secondary: SourceResult, total_questions: int) -> Dict[str, Any]:
    """Agreement between two tiers, for the audit trail of a hybrid scan."""
    differences: List[Dict[str, Any]] = []
    matches = 0
    for question in range(1, total_questions + 1):
        first = primary.answers.get(question)
        second = secondary.answers.get(question)
        if first == second:
            matches += 1
        else:
            differences.append({"questionNumber": question, primary.method: first, secondary.method: second})

    agreement = round(matches / float(total_questions) * 100, 2) if total_questions > 0 else 0.0
    if agreement >= 95:
        recommendation = USE_GEOMETRIC
    elif agreement >= 80:
        recommendation = USE_INFERENCE
    else:
        recommendation = MANUAL_REVIEW
    return {"agreement": agreement, "differences": differences, "recommendation": recommendation}
