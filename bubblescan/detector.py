"""
Tier 1: deterministic fill-ratio sampling of every bubble on the canonical raster.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence, Tuple

import cv2
import numpy as np

from .config import DetectionConfig, logger
from .layout import BoundingBox, BubbleRegion
from .models import AnswerMap, DetectionIssue, SourceResult

GEOMETRIC_METHOD = "geometric"


@dataclass(frozen=True)
class FillSample:
    question_number: int
    option: str
    fill_ratio: float


@dataclass(frozen=True)
class DetectionResult:
    source: SourceResult
    issues: Tuple[DetectionIssue, ...]
    fill_ratios: Dict[int, Tuple[float, ...]] = field(default_factory=dict)

    @property
    def answers(self) -> AnswerMap:
        return self.source.answers

    @property
    def confidence(self) -> float:
        return self.source.confidence


def prepare_binary(raster: np.ndarray, config: DetectionConfig) -> np.ndarray:
    """
    Inverse binary for fill sampling: ink is 255, paper is 0.

    Otsu separates filled from empty bubbles on evenly lit sheets; the adaptive
    threshold copes with shadows. Whichever has more contrast wins.
    """
    gray = raster
    if gray.ndim == 3:
        gray = cv2.cvtColor(gray, cv2.COLOR_BGR2GRAY)
    gray = cv2.normalize(gray, None, 0, 255, cv2.NORM_MINMAX).astype(np.uint8)
    blurred = cv2.GaussianBlur(gray, (5, 5), 0)

    _, binary_otsu = cv2.threshold(blurred, 0, 255, cv2.THRESH_BINARY_INV + cv2.THRESH_OTSU)
    binary_adaptive = cv2.adaptiveThreshold(
        blurred,
        255,
        cv2.ADAPTIVE_THRESH_GAUSSIAN_C,
        cv2.THRESH_BINARY_INV,
        config.block_size,
        config.threshold_offset,
    )

    std_otsu = float(np.std(binary_otsu))
    std_adaptive = float(np.std(binary_adaptive))
    use_otsu = std_otsu >= std_adaptive
    binary = binary_otsu if use_otsu else binary_adaptive
    logger.debug("Binary method: %s, std=%.1f", "otsu" if use_otsu else "adaptive", max(std_otsu, std_adaptive))

    kernel = cv2.getStructuringElement(cv2.MORPH_ELLIPSE, (2, 2))
    return cv2.morphologyEx(binary, cv2.MORPH_OPEN, kernel, iterations=1)


def fill_ratio(binary: np.ndarray, box: BoundingBox) -> float:
    height, width = binary.shape[:2]
    x0 = max(0, box.x)
    y0 = max(0, box.y)
    x1 = min(width, box.x + box.width)
    y1 = min(height, box.y + box.height)
    if x1 <= x0 or y1 <= y0:
        return 0.0
    roi = binary[y0:y1, x0:x1]
    return float(cv2.countNonZero(roi)) / float(roi.size)


def _sample_region(binary: np.ndarray, region: BubbleRegion) -> List[FillSample]:
    return [
        FillSample(region.question_number, option.label, fill_ratio(binary, option.box))
        for option in region.options
    ]


def _classify(
    samples: Sequence[FillSample], config: DetectionConfig
) -> Tuple[str, List[DetectionIssue]]:
    question = samples[0].question_number
    marked = [s for s in samples if s.fill_ratio > config.fill_threshold]

    if not marked:
        return "", [DetectionIssue(question, "missing", f"No answer detected for question {question}")]

    # max() keeps the first of equal ratios, so ties resolve in option order.
    darkest = max(marked, key=lambda s: s.fill_ratio)
    if len(marked) > 1:
        return darkest.option, [
            DetectionIssue(question, "multiple", f"Multiple marks detected in question {question}")
        ]

    runner_up = max((s.fill_ratio for s in samples if s is not darkest), default=0.0)
    if runner_up > config.unclear_ratio:
        return darkest.option, [
            DetectionIssue(question, "unclear", f"Question {question}: unclear marking, runner-up fill {runner_up:.2f}")
        ]
    return darkest.option, []


def aggregate_confidence(
    fill_ratios: Dict[int, Tuple[float, ...]],
    answered: int,
    total_questions: int,
    threshold: float,
) -> float:
    """
    Mean clarity of the questions with a mark above threshold, scaled by completion.
    Clarity is max - runner-up; each question contributes min(1, max * clarity * 2).
    """
    confidence_sum = 0.0
    contributing = 0
    for ratios in fill_ratios.values():
        ordered = sorted(ratios, reverse=True)
        top = ordered[0] if ordered else 0.0
        second = ordered[1] if len(ordered) > 1 else 0.0
        if top > threshold:
            confidence_sum += min(1.0, top * (top - second) * 2)
            contributing += 1

    if total_questions <= 0:
        return 0.0
    average = confidence_sum / contributing if contributing else 0.0
    return average * (answered / float(total_questions))


def detect_bubbles(
    raster: np.ndarray,
    regions: Sequence[BubbleRegion],
    config: DetectionConfig = DetectionConfig(),
) -> DetectionResult:
    binary = prepare_binary(raster, config)

    answers: AnswerMap = {}
    issues: List[DetectionIssue] = []
    fill_ratios: Dict[int, Tuple[float, ...]] = {}

    for region in regions:
        samples = _sample_region(binary, region)
        fill_ratios[region.question_number] = tuple(s.fill_ratio for s in samples)
        answer, question_issues = _classify(samples, config)
        if answer:
            answers[region.question_number] = answer
        issues.extend(question_issues)

    confidence = aggregate_confidence(fill_ratios, len(answers), len(regions), config.fill_threshold)
    logger.info(
        "Geometric detection: %d/%d answered, %d issues, confidence %.3f",
        len(answers),
        len(regions),
        len(issues),
        confidence,
    )
    return DetectionResult(
        source=SourceResult(answers=answers, confidence=confidence, method=GEOMETRIC_METHOD),
        issues=tuple(issues),
        fill_ratios=fill_ratios,
    )


def detection_stats(result: DetectionResult, total_questions: int) -> Dict[str, Any]:
    all_ratios = [ratio for ratios in result.fill_ratios.values() for ratio in ratios]
    average = sum(all_ratios) / len(all_ratios) if all_ratios else 0.0
    return {
        "totalQuestions": total_questions,
        "answeredQuestions": len(result.answers),
        "missingAnswers": total_questions - len(result.answers),
        "multipleMarks": sum(1 for issue in result.issues if issue.kind == "multiple"),
        "averageFillRatio": round(average, 2),
        "confidence": round(result.confidence, 2),
    }
