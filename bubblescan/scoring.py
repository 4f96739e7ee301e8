"""
Scoring against an answer key, plus the summary helpers used for reports.
"""

from __future__ import annotations

from collections import Counter
from typing import Any, Dict, List, Optional, Sequence

from .config import logger
from .errors import ValidationError
from .models import AnswerKey, AnswerMap, QuestionResult, ScoredResult

PASS = "pass"
FAIL = "fail"

GRADE_BANDS = (
    (90.0, "A+"),
    (80.0, "A"),
    (70.0, "B"),
    (60.0, "C"),
    (50.0, "D"),
    (40.0, "E"),
)


def grade_for(percentage: float) -> str:
    for floor, grade in GRADE_BANDS:
        if percentage >= floor:
            return grade
    return "F"


def score(
    final_answers: AnswerMap,
    answer_key: AnswerKey,
    passing_marks: Optional[float] = None,
    default_passing_ratio: float = 0.4,
) -> ScoredResult:
    per_question: List[QuestionResult] = []
    obtained = 0.0
    total = 0.0

    for question in sorted(answer_key):
        entry = answer_key[question]
        student_answer = final_answers.get(question)
        is_correct = student_answer is not None and student_answer == entry.correct_option
        marks = entry.marks_allocated if is_correct else 0.0
        obtained += marks
        total += entry.marks_allocated
        per_question.append(
            QuestionResult(
                question_number=question,
                student_answer=student_answer,
                correct_answer=entry.correct_option,
                is_correct=is_correct,
                marks_obtained=marks,
                marks_allocated=entry.marks_allocated,
            )
        )

    if passing_marks is None:
        passing_marks = total * default_passing_ratio

    if not final_answers:
        # Blank sheet: nothing may be credited, whatever the loop above computed.
        if obtained:
            logger.warning("Scoring produced %.2f marks for an empty answer map; forcing 0", obtained)
        return ScoredResult(
            obtained_marks=0.0,
            total_marks=total,
            percentage=0.0,
            grade="F",
            status=FAIL,
            per_question=tuple(per_question),
        )

    # Grade from the exact ratio; only the reported percentage is rounded.
    percentage = obtained / total * 100 if total > 0 else 0.0
    return ScoredResult(
        obtained_marks=obtained,
        total_marks=total,
        percentage=round(percentage, 2),
        grade=grade_for(percentage),
        status=PASS if obtained >= passing_marks else FAIL,
        per_question=tuple(per_question),
    )


def summarize(result: ScoredResult) -> str:
    correct = sum(1 for item in result.per_question if item.is_correct)
    answered = sum(1 for item in result.per_question if item.student_answer is not None)
    unanswered = len(result.per_question) - answered
    return "\n".join(
        [
            f"Score: {result.obtained_marks:g}/{result.total_marks:g} ({result.percentage}%)",
            f"Grade: {result.grade}",
            f"Status: {result.status.upper()}",
            f"Correct: {correct}/{len(result.per_question)}",
            f"Wrong: {answered - correct}",
            f"Unanswered: {unanswered}",
        ]
    )


def class_statistics(results: Sequence[ScoredResult]) -> Dict[str, Any]:
    if not results:
        raise ValidationError("No results to compute statistics from")

    percentages = [r.percentage for r in results]
    marks = [r.obtained_marks for r in results]
    passed = sum(1 for r in results if r.status == PASS)
    distribution = Counter(r.grade for r in results)

    return {
        "totalStudents": len(results),
        "averageMarks": round(sum(marks) / len(marks), 2),
        "averagePercentage": round(sum(percentages) / len(percentages), 2),
        "highestMarks": max(marks),
        "lowestMarks": min(marks),
        "passCount": passed,
        "failCount": len(results) - passed,
        "passRate": round(passed / len(results) * 100, 2),
        "gradeDistribution": {grade: distribution.get(grade, 0) for _, grade in GRADE_BANDS + ((0.0, "F"),)},
    }
