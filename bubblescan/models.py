from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple

from .errors import ValidationError

# questionNumber -> option label. MULTIPLE / EMPTY outcomes are absent keys.
AnswerMap = Dict[int, str]

ISSUE_KINDS = ("missing", "multiple", "unclear")


@dataclass(frozen=True)
class DetectionIssue:
    question_number: int
    kind: str
    message: str

    def __post_init__(self) -> None:
        if self.kind not in ISSUE_KINDS:
            raise ValueError(f"unknown issue kind: {self.kind}")

    def to_dict(self) -> Dict[str, Any]:
        return {"questionNumber": self.question_number, "kind": self.kind, "message": self.message}


@dataclass(frozen=True)
class SourceResult:
    answers: AnswerMap
    confidence: float
    method: str


@dataclass(frozen=True)
class SheetIdentity:
    exam_id: Optional[str] = None
    student_id: Optional[str] = None


@dataclass(frozen=True)
class AnswerKeyEntry:
    correct_option: str
    marks_allocated: float = 1.0


AnswerKey = Mapping[int, AnswerKeyEntry]


@dataclass(frozen=True)
class QuestionResult:
    question_number: int
    student_answer: Optional[str]
    correct_answer: str
    is_correct: bool
    marks_obtained: float
    marks_allocated: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "questionNumber": self.question_number,
            "studentAnswer": self.student_answer,
            "correctAnswer": self.correct_answer,
            "isCorrect": self.is_correct,
            "marksObtained": self.marks_obtained,
            "marksAllocated": self.marks_allocated,
        }


@dataclass(frozen=True)
class ScoredResult:
    obtained_marks: float
    total_marks: float
    percentage: float
    grade: str
    status: str
    per_question: Tuple[QuestionResult, ...] = field(default_factory=tuple)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "obtainedMarks": self.obtained_marks,
            "totalMarks": self.total_marks,
            "percentage": self.percentage,
            "grade": self.grade,
            "status": self.status,
            "questionResults": [item.to_dict() for item in self.per_question],
        }


def _question_number(raw: Any) -> int:
    key = str(raw).strip()
    if key.lower().startswith("q_"):
        key = key[2:]
    if not key.isdigit() or int(key) < 1:
        raise ValidationError(f"Invalid question number in answer key: {raw!r}")
    return int(key)


def _option(raw: Any, question: int) -> str:
    value = str(raw or "").strip().upper()
    if not value:
        raise ValidationError(f"Answer key has no correct option for question {question}")
    return value[0]


def answer_key_from_mapping(raw: Mapping[Any, Any]) -> Dict[int, AnswerKeyEntry]:
    """
    Normalize an externally supplied answer key.

    Accepts keys like 1, "1" or "q_1" and values that are either a bare
    option letter or a dict with correctOption/correct_answer and marks.
    """
    normalized: Dict[int, AnswerKeyEntry] = {}
    for key, value in raw.items():
        question = _question_number(key)
        marks: Any = 1
        if isinstance(value, Mapping):
            option = value.get("correctOption", value.get("correct_answer", value.get("answer")))
            marks = value.get("marks", value.get("marksAllocated", 1))
        else:
            option = value
        try:
            marks_value = float(marks if marks is not None else 1)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Invalid marks for question {question}: {marks!r}") from exc
        if marks_value < 0:
            raise ValidationError(f"Marks for question {question} must not be negative")
        normalized[question] = AnswerKeyEntry(_option(option, question), marks_value)
    return dict(sorted(normalized.items()))
