from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from functools import lru_cache

from fastapi import Depends, FastAPI, File, Form, Request, UploadFile
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from . import __version__
from .config import SETTINGS, logger
from .errors import OMRError, ValidationError
from .layout import LayoutConfig
from .models import answer_key_from_mapping
from .pipeline import Pipeline, ScanRequest


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class HealthResponse(BaseModel):
    status: str
    mode: str
    version: str
    timestamp: str


class ScanResponse(BaseModel):
    success: bool
    result: dict


app = FastAPI(title="Bubblescan OMR Service")
OMR_VERSION = os.getenv("OMR_VERSION", __version__)
UPLOAD_CHUNK_BYTES = 1024 * 1024


@lru_cache(maxsize=1)
def get_pipeline() -> Pipeline:
    return Pipeline.from_settings(SETTINGS)


@app.exception_handler(OMRError)
async def omr_error_handler(request: Request, exc: OMRError) -> JSONResponse:
    logger.warning("%s on %s: %s", exc.code, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def _mode(pipeline: Pipeline) -> str:
    return "hybrid" if len(pipeline.chain) else "geometric"


def _parse_flag(value: bool | str | None, default: bool) -> bool:
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        return value
    return value.strip().lower() in ("1", "true", "yes", "on")


def _parse_answer_key(value: str) -> dict:
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError as exc:
        raise ValidationError("answerKey is not valid JSON.") from exc
    if not isinstance(parsed, dict) or not parsed:
        raise ValidationError("answerKey must be a non-empty JSON object.")
    return answer_key_from_mapping(parsed)


async def _read_upload(file: UploadFile, max_bytes: int) -> bytes:
    """Read the upload chunk by chunk, stopping as soon as it passes max_bytes."""
    if file.size is not None and file.size > max_bytes:
        raise ValidationError(f"Image too large. Maximum {max_bytes} bytes, got {file.size}.")
    chunks = []
    received = 0
    while True:
        chunk = await file.read(UPLOAD_CHUNK_BYTES)
        if not chunk:
            break
        received += len(chunk)
        if received > max_bytes:
            raise ValidationError(f"Image too large. Maximum {max_bytes} bytes.")
        chunks.append(chunk)
    content = b"".join(chunks)
    if not content:
        raise ValidationError("Uploaded file is empty.")
    return content


@app.get("/health", response_model=HealthResponse)
def health(pipeline: Pipeline = Depends(get_pipeline)) -> HealthResponse:
    return HealthResponse(
        status="ok",
        mode=_mode(pipeline),
        version=OMR_VERSION,
        timestamp=_now_iso(),
    )


@app.get("/version")
def version(pipeline: Pipeline = Depends(get_pipeline)) -> dict:
    return {
        "name": "Bubblescan OMR Service",
        "version": OMR_VERSION,
        "mode": _mode(pipeline),
        "timestamp": _now_iso(),
    }


@app.get("/tiers")
def tiers(pipeline: Pipeline = Depends(get_pipeline)) -> dict:
    return {"tiers": ["geometric", *pipeline.chain.names]}


@app.post("/scan", response_model=ScanResponse)
async def scan(
    file: UploadFile = File(...),
    totalQuestions: int = Form(...),
    answerKey: str = Form(...),
    optionsPerQuestion: int = Form(4),
    passingMarks: float | None = Form(None),
    examId: str | None = Form(None),
    studentId: str | None = Form(None),
    forceTier: str | None = Form(None),
    escalate: bool | str | None = Form(None),
    pipeline: Pipeline = Depends(get_pipeline),
) -> ScanResponse:
    content = await _read_upload(file, pipeline.config.preprocess.max_bytes)
    answer_key = _parse_answer_key(answerKey)
    layout = LayoutConfig(total_questions=totalQuestions, options_per_question=optionsPerQuestion)

    request = ScanRequest(
        layout=layout,
        answer_key=answer_key,
        exam_id=examId or None,
        student_id=studentId or None,
        passing_marks=passingMarks,
        force_tier=forceTier or None,
        escalate=_parse_flag(escalate, True),
        content_type=file.content_type,
    )
    outcome = await pipeline.process(content, request)
    return ScanResponse(success=True, result=outcome.to_dict())
