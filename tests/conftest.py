from __future__ import annotations

import asyncio
import json
from typing import Dict, Mapping, Optional

import cv2
import numpy as np
import pytest

from bubblescan.adapters import InferenceAdapter
from bubblescan.codes import CodeReader
from bubblescan.layout import LayoutConfig, bubble_center, regions_for
from bubblescan.models import AnswerKeyEntry, SheetIdentity

CANONICAL_SIZE = (2480, 3508)


def draw_sheet(
    layout: LayoutConfig,
    marks: Mapping[int, str],
    width: int = CANONICAL_SIZE[0],
    height: int = CANONICAL_SIZE[1],
    header: bool = True,
) -> np.ndarray:
    """
    White sheet with every bubble outlined. marks maps question -> letters to
    fill solid ("B", or "AC" for a double mark).
    """
    sheet = np.full((height, width), 255, dtype=np.uint8)
    if header:
        cv2.rectangle(sheet, (100, 100), (width - 100, 250), 0, -1)
    for region in regions_for(layout):
        filled = marks.get(region.question_number, "")
        for index, option in enumerate(region.options):
            center = bubble_center(layout, region.question_number, index)
            if option.label in filled:
                cv2.circle(sheet, center, layout.bubble_radius, 0, -1)
            else:
                cv2.circle(sheet, center, layout.bubble_radius, 0, 2)
    return sheet


def encode_png(image: np.ndarray) -> bytes:
    ok, encoded = cv2.imencode(".png", image)
    assert ok
    return encoded.tobytes()


def cyclic_key(total: int, options: int = 4) -> Dict[int, str]:
    letters = "ABCDEF"[:options]
    return {q: letters[(q - 1) % options] for q in range(1, total + 1)}


def key_entries(answers: Mapping[int, str]) -> Dict[int, AnswerKeyEntry]:
    return {q: AnswerKeyEntry(letter) for q, letter in answers.items()}


def answers_json(answers: Mapping[int, str]) -> str:
    return json.dumps({str(q): a for q, a in answers.items()})


class ScriptedAdapter(InferenceAdapter):
    """Inference tier whose backend reply is fixed up front."""

    def __init__(
        self,
        name: str,
        response: Optional[str] = None,
        error: Optional[BaseException] = None,
        delay: float = 0.0,
        **kwargs,
    ):
        super().__init__(name, **kwargs)
        self.response = response
        self.error = error
        self.delay = delay
        self.calls = 0

    async def _complete(self, prompt: str, image_b64: str) -> str:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.response


class FixedCodeReader(CodeReader):
    name = "fixed"

    def __init__(self, identity: Optional[SheetIdentity] = None, error: Optional[Exception] = None):
        self.identity = identity
        self.error = error

    def read(self, raster: np.ndarray) -> Optional[SheetIdentity]:
        if self.error is not None:
            raise self.error
        return self.identity


@pytest.fixture
def layout20() -> LayoutConfig:
    return LayoutConfig(total_questions=20, options_per_question=4)


@pytest.fixture(scope="session")
def full_sheet_png() -> bytes:
    layout = LayoutConfig(total_questions=20, options_per_question=4)
    return encode_png(draw_sheet(layout, cyclic_key(20)))


@pytest.fixture(scope="session")
def half_sheet_png() -> bytes:
    layout = LayoutConfig(total_questions=20, options_per_question=4)
    marks = {q: a for q, a in cyclic_key(20).items() if q <= 10}
    return encode_png(draw_sheet(layout, marks))


@pytest.fixture(scope="session")
def unmarked_sheet_png() -> bytes:
    layout = LayoutConfig(total_questions=20, options_per_question=4)
    return encode_png(draw_sheet(layout, {}))
