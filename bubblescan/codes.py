"""
Printed-code boundary. Sheets carry a QR code with the exam and student ids;
readers return a SheetIdentity or None, and never raise just because nothing was found.
"""

from __future__ import annotations

from typing import Optional

import json

import cv2
import numpy as np

from .config import logger
from .errors import ValidationError
from .models import SheetIdentity


class CodeReader:
    name = "base"

    def read(self, raster: np.ndarray) -> Optional[SheetIdentity]:
        raise NotImplementedError


class UnavailableCodeReader(CodeReader):
    """Stands in when no decoder is deployed: every sheet reads as 'not found'."""

    name = "none"

    def read(self, raster: np.ndarray) -> Optional[SheetIdentity]:
        _require_raster(raster)
        return None


class QRCodeReader(CodeReader):
    name = "qr"

    def __init__(self) -> None:
        self._detector = cv2.QRCodeDetector()

    def read(self, raster: np.ndarray) -> Optional[SheetIdentity]:
        _require_raster(raster)
        text, points, _ = self._detector.detectAndDecode(raster)
        if points is None or not text:
            logger.info("No QR code found on sheet")
            return None
        identity = parse_code_payload(text)
        if identity is None:
            logger.warning("QR code found but payload carried no identifiers")
        return identity


def _require_raster(raster: np.ndarray) -> None:
    if not isinstance(raster, np.ndarray) or raster.ndim != 2 or raster.size == 0:
        raise ValidationError("Code reader expects a non-empty grayscale raster")


def parse_code_payload(text: str) -> Optional[SheetIdentity]:
    """
    Printed sheets encode {"e": examId, "s": studentId}. Older sheets carry the
    bare student id as the whole payload.
    """
    raw = (text or "").strip()
    if not raw:
        return None

    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return SheetIdentity(student_id=raw)

    if isinstance(parsed, dict):
        exam_id = parsed.get("e") or parsed.get("examId")
        student_id = parsed.get("s") or parsed.get("studentId")
        if not exam_id and not student_id:
            return None
        return SheetIdentity(
            exam_id=str(exam_id) if exam_id else None,
            student_id=str(student_id) if student_id else None,
        )
    if isinstance(parsed, (str, int)):
        return SheetIdentity(student_id=str(parsed))
    return None


def build_code_reader(name: str) -> CodeReader:
    if name == "qr":
        return QRCodeReader()
    if name == "none":
        return UnavailableCodeReader()
    raise ValueError(f"unknown code reader: {name}")
