"""Typed failures surfaced by the recognition pipeline."""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class OMRError(Exception):
    code = "OMR_ERROR"
    status_code = 500

    def __init__(self, message: str, issues: Optional[List[str]] = None):
        super().__init__(message)
        self.message = message
        self.issues = list(issues or [])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": False,
            "error": self.code,
            "message": self.message,
            "issues": self.issues,
        }


class ValidationError(OMRError, ValueError):
    """The image or exam configuration is unusable; fix the input and resubmit."""

    code = "INVALID_IMAGE"
    status_code = 400


class MissingIdentifier(OMRError):
    """No student id from the printed code or from the caller."""

    code = "MISSING_STUDENT_ID"
    status_code = 422


class DetectionFailure(OMRError):
    """The sheet looks blank or unreadable after every applicable tier."""

    code = "DETECTION_FAILED"
    status_code = 422


class BackendUnavailable(OMRError):
    code = "BACKEND_UNAVAILABLE"
    status_code = 503

    def __init__(self, backend: str, message: str):
        super().__init__(f"{backend}: {message}")
        self.backend = backend
