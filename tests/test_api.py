import asyncio
import io
import json

import cv2
import numpy as np
import pytest
from fastapi import UploadFile
from fastapi.testclient import TestClient

from bubblescan import main
from bubblescan.adapters import InferenceChain
from bubblescan.config import PipelineConfig, PreprocessConfig
from bubblescan.errors import ValidationError
from bubblescan.main import _read_upload, app, get_pipeline
from bubblescan.pipeline import Pipeline

from conftest import ScriptedAdapter, answers_json, cyclic_key

KEY = cyclic_key(20)


@pytest.fixture
def client():
    pipeline = Pipeline(chain=InferenceChain([ScriptedAdapter("fake-ai", response=answers_json(KEY))]))
    app.dependency_overrides[get_pipeline] = lambda: pipeline
    yield TestClient(app)
    app.dependency_overrides.clear()


def _form(**overrides):
    form = {
        "totalQuestions": "20",
        "answerKey": json.dumps({f"q_{q}": a for q, a in KEY.items()}),
        "studentId": "STU-1",
    }
    form.update(overrides)
    return {k: v for k, v in form.items() if v is not None}


def test_health_and_version(client):
    health = client.get("/health")
    assert health.status_code == 200
    assert health.json()["status"] == "ok"
    assert health.json()["mode"] == "hybrid"

    version = client.get("/version").json()
    assert version["name"] == "Bubblescan OMR Service"


def test_tiers_listed_in_order(client):
    assert client.get("/tiers").json() == {"tiers": ["geometric", "fake-ai"]}


def test_scan_success(client, full_sheet_png):
    response = client.post(
        "/scan",
        data=_form(examId="EX-1"),
        files={"file": ("sheet.png", full_sheet_png, "image/png")},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    result = body["result"]
    assert result["obtainedMarks"] == 20
    assert result["grade"] == "A+"
    assert result["status"] == "pass"
    assert result["processingMethod"] == "geometric"
    assert "confidence" in result
    assert result["issues"] == []


def test_scan_escalation_can_be_turned_off(client, half_sheet_png):
    response = client.post(
        "/scan",
        data=_form(escalate="false"),
        files={"file": ("sheet.png", half_sheet_png, "image/png")},
    )
    assert response.json()["result"]["processingMethod"] == "geometric"

    response = client.post(
        "/scan",
        data=_form(),
        files={"file": ("sheet.png", half_sheet_png, "image/png")},
    )
    assert response.json()["result"]["processingMethod"] == "hybrid"


def test_missing_student_is_distinct_error(client, full_sheet_png):
    response = client.post(
        "/scan",
        data=_form(studentId=None),
        files={"file": ("sheet.png", full_sheet_png, "image/png")},
    )

    assert response.status_code == 422
    body = response.json()
    assert body["success"] is False
    assert body["error"] == "MISSING_STUDENT_ID"


def test_blank_sheet_error(client):
    _, blank = cv2.imencode(".png", np.full((1754, 1240), 255, dtype=np.uint8))
    response = client.post(
        "/scan",
        data=_form(),
        files={"file": ("sheet.png", blank.tobytes(), "image/png")},
    )

    assert response.status_code == 422
    assert response.json()["error"] == "DETECTION_FAILED"


def test_invalid_image_error(client):
    response = client.post(
        "/scan",
        data=_form(),
        files={"file": ("sheet.gif", b"GIF89a" + b"\x00" * 64, "image/gif")},
    )

    assert response.status_code == 400
    assert response.json()["error"] == "INVALID_IMAGE"


@pytest.mark.parametrize("answer_key", ["not json", "[]", "{}", '{"q_x": "A"}'])
def test_bad_answer_key(client, full_sheet_png, answer_key):
    response = client.post(
        "/scan",
        data=_form(answerKey=answer_key),
        files={"file": ("sheet.png", full_sheet_png, "image/png")},
    )

    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    assert body["error"] == "INVALID_IMAGE"
    assert "answer" in body["message"].lower()


def test_bad_layout(client, full_sheet_png):
    response = client.post(
        "/scan",
        data=_form(optionsPerQuestion="9"),
        files={"file": ("sheet.png", full_sheet_png, "image/png")},
    )
    assert response.status_code == 400
    assert response.json()["error"] == "INVALID_IMAGE"
    assert "optionsPerQuestion" in response.json()["message"]


def test_empty_upload(client):
    response = client.post("/scan", data=_form(), files={"file": ("sheet.png", b"", "image/png")})
    assert response.status_code == 400
    assert response.json()["error"] == "INVALID_IMAGE"
    assert response.json()["message"] == "Uploaded file is empty."


def test_unknown_forced_tier(client, full_sheet_png):
    response = client.post(
        "/scan",
        data=_form(forceTier="nope-ai"),
        files={"file": ("sheet.png", full_sheet_png, "image/png")},
    )
    assert response.status_code == 400
    assert response.json()["success"] is False
    assert "nope-ai" in response.json()["message"]


def test_oversized_upload_is_rejected_before_processing(full_sheet_png):
    adapter = ScriptedAdapter("fake-ai", response=answers_json(KEY))
    config = PipelineConfig(preprocess=PreprocessConfig(max_bytes=1024))
    pipeline = Pipeline(config=config, chain=InferenceChain([adapter]))
    app.dependency_overrides[get_pipeline] = lambda: pipeline
    try:
        response = TestClient(app).post(
            "/scan",
            data=_form(),
            files={"file": ("sheet.png", full_sheet_png, "image/png")},
        )
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 400
    assert response.json()["error"] == "INVALID_IMAGE"
    assert "too large" in response.json()["message"]
    assert adapter.calls == 0


def test_upload_without_declared_size_is_read_in_bounded_chunks(monkeypatch):
    monkeypatch.setattr(main, "UPLOAD_CHUNK_BYTES", 256)
    stream = io.BytesIO(b"\x89PNG" + b"\x00" * 10_000)

    with pytest.raises(ValidationError, match="too large"):
        asyncio.run(_read_upload(UploadFile(stream), 1024))
    assert stream.tell() <= 1024 + 256

    small = UploadFile(io.BytesIO(b"\x89PNG" + b"\x00" * 600))
    assert len(asyncio.run(_read_upload(small, 1024))) == 604
