"""
One scan, end to end:

    bytes -> canonical raster -> {code reader, Tier 1} -> escalation policy
          -> inference chain (when needed) -> merge -> score

Stateless per call; the only shared state is the per-backend limiter held by
the chain's adapters.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import asyncio

import numpy as np

from .adapters import InferenceChain, build_chain
from .codes import CodeReader, UnavailableCodeReader, build_code_reader
from .config import PipelineConfig, Settings, logger
from .detector import GEOMETRIC_METHOD, DetectionResult, detect_bubbles, detection_stats
from .errors import DetectionFailure, MissingIdentifier, ValidationError
from .escalation import escalation_reasons
from .layout import LayoutConfig, fits_raster, regions_for
from .merge import compare_sources, merge_answers
from .models import AnswerKey, AnswerMap, DetectionIssue, ScoredResult, SheetIdentity, SourceResult
from .preprocess import preprocess_image
from .scoring import score, summarize

HYBRID_METHOD = "hybrid"


@dataclass(frozen=True)
class ScanRequest:
    layout: LayoutConfig
    answer_key: AnswerKey
    exam_id: Optional[str] = None
    student_id: Optional[str] = None
    passing_marks: Optional[float] = None
    # "geometric" or a configured tier name; bypasses the escalation policy.
    force_tier: Optional[str] = None
    escalate: bool = True
    content_type: Optional[str] = None


@dataclass(frozen=True)
class ScanOutcome:
    identity: SheetIdentity
    scored: ScoredResult
    final_answers: AnswerMap
    processing_method: str
    confidence: float
    issues: Tuple[DetectionIssue, ...] = ()
    warnings: Tuple[str, ...] = ()
    tier1_confidence: Optional[float] = None
    inference_method: Optional[str] = None
    escalation_reasons: Tuple[str, ...] = ()
    agreement: Optional[Dict[str, Any]] = None
    detection_stats: Optional[Dict[str, Any]] = None
    success: bool = True

    def to_dict(self) -> Dict[str, Any]:
        payload = {
            "success": self.success,
            "examId": self.identity.exam_id,
            "studentId": self.identity.student_id,
            "processingMethod": self.processing_method,
            "confidence": round(self.confidence, 4),
            "answers": {str(q): a for q, a in sorted(self.final_answers.items())},
            "issues": [issue.to_dict() for issue in self.issues],
            "warnings": list(self.warnings),
            "summary": summarize(self.scored),
            "audit": {
                "tier1Confidence": None if self.tier1_confidence is None else round(self.tier1_confidence, 4),
                "inferenceMethod": self.inference_method,
                "escalationReasons": list(self.escalation_reasons),
                "agreement": self.agreement,
                "detectionStats": self.detection_stats,
            },
        }
        payload.update(self.scored.to_dict())
        return payload


class Pipeline:
    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        chain: Optional[InferenceChain] = None,
        code_reader: Optional[CodeReader] = None,
    ):
        self.config = config or PipelineConfig()
        self.chain = chain if chain is not None else InferenceChain()
        self.code_reader = code_reader or UnavailableCodeReader()

    @classmethod
    def from_settings(cls, settings: Settings) -> "Pipeline":
        return cls(
            config=PipelineConfig.from_settings(settings),
            chain=build_chain(settings),
            code_reader=build_code_reader(settings.code_reader),
        )

    async def _read_code(self, raster: np.ndarray, warnings: List[str]) -> Optional[SheetIdentity]:
        try:
            return await asyncio.to_thread(self.code_reader.read, raster)
        except ValidationError:
            raise
        except Exception:
            logger.exception("Code reader %s failed; treating as not found", self.code_reader.name)
            warnings.append("code_reader_error")
            return None

    @staticmethod
    def _resolve_identity(
        request: ScanRequest, from_code: Optional[SheetIdentity], warnings: List[str]
    ) -> SheetIdentity:
        code_exam = from_code.exam_id if from_code else None
        code_student = from_code.student_id if from_code else None

        if request.exam_id and code_exam and request.exam_id != code_exam:
            logger.warning("Exam id on sheet (%s) differs from request (%s)", code_exam, request.exam_id)
            warnings.append("exam_id_mismatch")

        student_id = request.student_id or code_student
        if not student_id:
            raise MissingIdentifier(
                "Student ID could not be read from the sheet. Please select the student manually."
            )
        return SheetIdentity(exam_id=request.exam_id or code_exam, student_id=student_id)

    async def process(self, image_bytes: bytes, request: ScanRequest) -> ScanOutcome:
        if not request.answer_key:
            raise ValidationError("Answer key is empty.")

        layout = request.layout
        total = layout.total_questions
        options = layout.options_per_question
        force = request.force_tier
        forced_adapter = force is not None and force != GEOMETRIC_METHOD
        if forced_adapter:
            self.chain.get(force)  # unknown names fail before any work is done

        warnings: List[str] = []
        raster = await asyncio.to_thread(
            preprocess_image, image_bytes, request.content_type, self.config.preprocess
        )

        regions = regions_for(layout)
        height, width = raster.shape[:2]
        if not fits_raster(layout, width, height):
            logger.warning("Bubble grid for %d questions exceeds the %dx%d raster", total, width, height)
            warnings.append("layout_out_of_bounds")

        detection: Optional[DetectionResult] = None
        if forced_adapter:
            from_code = await self._read_code(raster, warnings)
        else:
            from_code, detection = await asyncio.gather(
                self._read_code(raster, warnings),
                asyncio.to_thread(detect_bubbles, raster, regions, self.config.detection),
            )

        identity = self._resolve_identity(request, from_code, warnings)

        tier1: Optional[SourceResult] = detection.source if detection else None
        issues: Tuple[DetectionIssue, ...] = detection.issues if detection else ()
        reasons: Tuple[str, ...] = ()
        inference: Optional[SourceResult] = None
        agreement: Optional[Dict[str, Any]] = None

        if forced_adapter:
            logger.info("Forced tier %s", force)
            inference = await self.chain.run_single(force, raster, total, options)
            final_answers = dict(inference.answers)
            method = inference.method
            confidence = inference.confidence
        else:
            final_answers = dict(tier1.answers)
            method = tier1.method
            confidence = tier1.confidence
            if force is None and request.escalate:
                reasons = tuple(escalation_reasons(tier1, issues, total, self.config.escalation))

            if reasons and len(self.chain) == 0:
                logger.warning("Escalation wanted (%s) but no inference tier is configured", ", ".join(reasons))
                warnings.append("inference_unavailable")
            elif reasons:
                logger.info("Escalating: %s", ", ".join(reasons))
                chained = await self.chain.run(raster, total, options)
                if chained.result is None:
                    warnings.append("inference_unavailable")
                else:
                    inference = chained.result
                    final_answers = merge_answers(tier1, inference)
                    method = HYBRID_METHOD
                    confidence = max(tier1.confidence, inference.confidence)
                    agreement = compare_sources(tier1, inference, total)

        answered_ratio = len(final_answers) / float(total)
        if answered_ratio < self.config.min_answered_ratio:
            raise DetectionFailure(
                "No answers detected. The sheet appears blank or unreadable.",
                issues=[issue.message for issue in issues[:10]],
            )

        scored = score(
            final_answers,
            request.answer_key,
            passing_marks=request.passing_marks,
            default_passing_ratio=self.config.default_passing_ratio,
        )
        logger.info(
            "Scan complete for student %s: %s %.2f%% via %s (confidence %.3f)",
            identity.student_id,
            scored.grade,
            scored.percentage,
            method,
            confidence,
        )
        return ScanOutcome(
            identity=identity,
            scored=scored,
            final_answers=final_answers,
            processing_method=method,
            confidence=confidence,
            issues=issues,
            warnings=tuple(warnings),
            tier1_confidence=tier1.confidence if tier1 else None,
            inference_method=inference.method if inference else None,
            escalation_reasons=reasons,
            agreement=agreement,
            detection_stats=detection_stats(detection, total) if detection else None,
        )
