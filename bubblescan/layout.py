from __future__ import annotations

from dataclasses import dataclass
from typing import List, Tuple

from .errors import ValidationError

OPTION_LABELS = "ABCDEF"


# ═══════════════════════════════════════════════════════════════════════════════
# SHEET LAYOUT
# Coordinates are pixels on the canonical raster (2480x3508, A4 at 300 dpi).
# Questions run top to bottom within a column, then continue in the next column.
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class LayoutConfig:
    total_questions: int
    options_per_question: int = 4
    origin_x: int = 300
    origin_y: int = 1000
    bubble_radius: int = 28
    bubble_spacing: int = 110
    row_height: int = 150
    column_spacing: int = 200
    questions_per_column: int = 15

    def __post_init__(self) -> None:
        if self.total_questions <= 0:
            raise ValidationError(f"totalQuestions must be positive, got {self.total_questions}")
        if not 2 <= self.options_per_question <= len(OPTION_LABELS):
            raise ValidationError(
                f"optionsPerQuestion must be between 2 and {len(OPTION_LABELS)}, got {self.options_per_question}"
            )
        if self.questions_per_column <= 0:
            raise ValidationError("questionsPerColumn must be positive")
        if self.bubble_radius <= 0 or self.bubble_spacing <= 0 or self.row_height <= 0:
            raise ValidationError("bubble radius, spacing and row height must be positive")

    @property
    def labels(self) -> Tuple[str, ...]:
        return option_labels(self.options_per_question)


@dataclass(frozen=True)
class BoundingBox:
    x: int
    y: int
    width: int
    height: int


@dataclass(frozen=True)
class BubbleOption:
    label: str
    box: BoundingBox


@dataclass(frozen=True)
class BubbleRegion:
    question_number: int
    options: Tuple[BubbleOption, ...]


def option_labels(count: int) -> Tuple[str, ...]:
    return tuple(OPTION_LABELS[:count])


def bubble_center(layout: LayoutConfig, question: int, option_index: int) -> Tuple[int, int]:
    column = (question - 1) // layout.questions_per_column
    row = (question - 1) % layout.questions_per_column
    column_pitch = layout.bubble_spacing * layout.options_per_question + layout.column_spacing
    base_x = layout.origin_x + column * column_pitch
    base_y = layout.origin_y + row * layout.row_height
    return base_x + option_index * layout.bubble_spacing, base_y


def regions_for(layout: LayoutConfig) -> List[BubbleRegion]:
    """Pixel geometry of every bubble. Pure and deterministic."""
    side = layout.bubble_radius * 2
    regions: List[BubbleRegion] = []
    for question in range(1, layout.total_questions + 1):
        options = []
        for index, label in enumerate(layout.labels):
            cx, cy = bubble_center(layout, question, index)
            box = BoundingBox(cx - layout.bubble_radius, cy - layout.bubble_radius, side, side)
            options.append(BubbleOption(label, box))
        regions.append(BubbleRegion(question, tuple(options)))
    return regions


def layout_bounds(layout: LayoutConfig) -> Tuple[int, int, int, int]:
    """(min_x, min_y, max_x, max_y) covered by all bubble boxes."""
    boxes = [option.box for region in regions_for(layout) for option in region.options]
    return (
        min(box.x for box in boxes),
        min(box.y for box in boxes),
        max(box.x + box.width for box in boxes),
        max(box.y + box.height for box in boxes),
    )


def fits_raster(layout: LayoutConfig, width: int, height: int) -> bool:
    min_x, min_y, max_x, max_y = layout_bounds(layout)
    return min_x >= 0 and min_y >= 0 and max_x <= width and max_y <= height
