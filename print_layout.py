"""Arrange rendered cards on printable sheets with bleed, crop and registration marks.

All geometry is in millimetres with the origin at the top-left corner of the
page.  Exporters convert to points (reportlab, bottom-left origin) or pixels.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, List, NamedTuple, Optional, Sequence, Tuple

from PIL import Image, ImageDraw

from card_errors import ValidationError
from util import mm_to_pixels

logger = logging.getLogger(__name__)

PAPER_SIZES_MM = {
    "A4": (210.0, 297.0),
    "A3": (297.0, 420.0),
    "Letter": (215.9, 279.4),
    "Legal": (215.9, 355.6),
}
ORIENTATIONS = ("portrait", "landscape")

MARK_COLOR = (0, 0, 0)


class Box(NamedTuple):
    x: float
    y: float
    width: float
    height: float

    @property
    def right(self) -> float:
        return self.x + self.width

    @property
    def bottom(self) -> float:
        return self.y + self.height

    def inset(self, amount: float) -> "Box":
        return Box(self.x + amount, self.y + amount, self.width - 2 * amount, self.height - 2 * amount)


class MarkSegment(NamedTuple):
    x1: float
    y1: float
    x2: float
    y2: float

    @property
    def length(self) -> float:
        return math.hypot(self.x2 - self.x1, self.y2 - self.y1)


class RegistrationMark(NamedTuple):
    """Crosshair target centred on ``(x, y)``."""

    x: float
    y: float
    radius: float


class SheetSlot(NamedTuple):
    index: int
    row: int
    column: int
    bleed_box: Box
    trim_box: Box
    card_box: Optional[Box] = None
    card: Optional[Any] = None
    card_index: Optional[int] = None

    @property
    def is_empty(self) -> bool:
        return self.card is None


@dataclass(frozen=True)
class PrintSheet:
    number: int
    page_width_mm: float
    page_height_mm: float
    columns: int
    rows: int
    slots: Tuple[SheetSlot, ...]
    crop_marks: Tuple[MarkSegment, ...] = ()
    registration_marks: Tuple[RegistrationMark, ...] = ()
    mark_line_width_mm: float = 0.1

    @property
    def filled_slots(self) -> List[SheetSlot]:
        return [slot for slot in self.slots if not slot.is_empty]

    @property
    def cards(self) -> List[Any]:
        return [slot.card for slot in self.filled_slots]


@dataclass(frozen=True)
class LayoutSettings:
    paper_size: str = "A4"
    orientation: str = "portrait"
    cards_per_page: int = 2
    margin_mm: float = 10.0
    bleed_mm: float = 3.0
    include_cut_marks: bool = True
    include_registration_marks: bool = True
    mark_length_mm: float = 5.0
    mark_line_width_mm: float = 0.1

    @classmethod
    def from_config(cls, config: Any) -> "LayoutSettings":
        return cls(
            paper_size=config.paper_size,
            orientation=config.orientation,
            cards_per_page=config.cards_per_page,
            margin_mm=config.margin_mm,
            bleed_mm=config.bleed_mm,
            include_cut_marks=config.include_cut_marks,
            include_registration_marks=config.include_registration_marks,
            mark_length_mm=config.mark_length_mm,
            mark_line_width_mm=config.mark_line_width_mm,
        )

    @property
    def page_size(self) -> Tuple[float, float]:
        return page_size_mm(self.paper_size, self.orientation)


def page_size_mm(paper_size: str, orientation: str = "portrait") -> Tuple[float, float]:
    try:
        width, height = PAPER_SIZES_MM[paper_size]
    except KeyError as exc:
        raise ValidationError(f"Unknown paper size {paper_size!r}.") from exc
    if orientation not in ORIENTATIONS:
        raise ValidationError(f"Unknown orientation {orientation!r}.")
    if orientation == "landscape":
        return height, width
    return width, height


def choose_grid(cards_per_page: int, orientation: str = "portrait") -> Tuple[int, int]:
    """Return ``(columns, rows)`` for ``cards_per_page`` cards.

    Picks the most compact grid (shortest long side, then fewest cells) that
    holds the requested count.  The long side of the grid follows the long
    axis of the page: rows on portrait paper, columns on landscape paper.
    """

    if cards_per_page < 1:
        raise ValidationError(f"cards_per_page must be at least 1, got {cards_per_page}.")

    best: Optional[Tuple[int, int]] = None
    for short in range(1, int(math.isqrt(cards_per_page)) + 1):
        long_side = math.ceil(cards_per_page / short)
        candidate = (short, long_side)
        if best is None or (long_side, short * long_side) < (best[1], best[0] * best[1]):
            best = candidate
    short, long_side = best  # type: ignore[misc]

    if orientation == "landscape":
        return long_side, short
    return short, long_side


def _contain(box: Box, aspect: float) -> Box:
    if aspect <= 0 or box.width <= 0 or box.height <= 0:
        return box
    width = box.width
    height = width / aspect
    if height > box.height:
        height = box.height
        width = height * aspect
    return Box(box.x + (box.width - width) / 2.0, box.y + (box.height - height) / 2.0, width, height)


def _card_aspect(card: Any) -> float:
    image = getattr(card, "image", None)
    if image is None or not image.height:
        return 0.0
    return image.width / float(image.height)


def crop_marks_for_box(box: Box, length: float, page_width: float, page_height: float) -> List[MarkSegment]:
    """Two outward segments at each corner of ``box``, clipped to the page."""

    segments: List[MarkSegment] = []
    for corner_x, dx in ((box.x, -1.0), (box.right, 1.0)):
        for corner_y, dy in ((box.y, -1.0), (box.bottom, 1.0)):
            end_x = min(max(corner_x + dx * length, 0.0), page_width)
            end_y = min(max(corner_y + dy * length, 0.0), page_height)
            if end_x != corner_x:
                segments.append(MarkSegment(corner_x, corner_y, end_x, corner_y))
            if end_y != corner_y:
                segments.append(MarkSegment(corner_x, corner_y, corner_x, end_y))
    return segments


def registration_marks_for_page(
    page_width: float, page_height: float, margin: float, mark_length: float
) -> List[RegistrationMark]:
    if margin <= 0:
        return []
    radius = min(mark_length, margin) / 2.0
    offset = margin / 2.0
    return [
        RegistrationMark(x, y, radius)
        for y in (offset, page_height - offset)
        for x in (offset, page_width - offset)
    ]


def layout_sheets(cards: Sequence[Any], settings: LayoutSettings) -> List[PrintSheet]:
    """Place ``cards`` row-major on as many sheets as needed.

    Every sheet holds at most ``settings.cards_per_page`` cards; unused grid
    cells are kept as empty slots.
    """

    page_width, page_height = settings.page_size
    columns, rows = choose_grid(settings.cards_per_page, settings.orientation)
    margin, bleed = settings.margin_mm, settings.bleed_mm

    cell_width = (page_width - 2 * margin) / columns
    cell_height = (page_height - 2 * margin) / rows
    if cell_width <= 2 * bleed or cell_height <= 2 * bleed:
        raise ValidationError(
            f"A {columns}x{rows} grid on {settings.paper_size} with {margin}mm margin and "
            f"{bleed}mm bleed leaves no printable card area."
        )

    registration: Tuple[RegistrationMark, ...] = ()
    if settings.include_registration_marks:
        registration = tuple(
            registration_marks_for_page(page_width, page_height, margin, settings.mark_length_mm)
        )

    per_page = settings.cards_per_page
    sheets: List[PrintSheet] = []
    for start in range(0, len(cards), per_page):
        batch = cards[start:start + per_page]
        slots: List[SheetSlot] = []
        marks: List[MarkSegment] = []
        for index in range(columns * rows):
            row, column = divmod(index, columns)
            bleed_box = Box(margin + column * cell_width, margin + row * cell_height, cell_width, cell_height)
            trim_box = bleed_box.inset(bleed)
            if index < len(batch):
                card = batch[index]
                slots.append(
                    SheetSlot(index, row, column, bleed_box, trim_box, _contain(trim_box, _card_aspect(card)), card, start + index)
                )
                if settings.include_cut_marks:
                    marks.extend(crop_marks_for_box(bleed_box, settings.mark_length_mm, page_width, page_height))
            else:
                slots.append(SheetSlot(index, row, column, bleed_box, trim_box))

        sheets.append(
            PrintSheet(
                number=len(sheets) + 1,
                page_width_mm=page_width,
                page_height_mm=page_height,
                columns=columns,
                rows=rows,
                slots=tuple(slots),
                crop_marks=tuple(marks),
                registration_marks=registration,
                mark_line_width_mm=settings.mark_line_width_mm,
            )
        )

    logger.debug(
        "Laid out %d card(s) on %d sheet(s) of %s %s (%dx%d grid)",
        len(cards),
        len(sheets),
        settings.paper_size,
        settings.orientation,
        columns,
        rows,
    )
    return sheets


def _px(value: float, dpi: float) -> int:
    return int(round(mm_to_pixels(value, dpi)))


def render_sheet_image(sheet: PrintSheet, dpi: float = 300, include_marks: bool = True) -> Image.Image:
    """Rasterise ``sheet`` to an RGB image at ``dpi``."""

    page = Image.new("RGB", (_px(sheet.page_width_mm, dpi), _px(sheet.page_height_mm, dpi)), "white")
    for slot in sheet.filled_slots:
        box = slot.card_box or slot.trim_box
        size = (max(1, _px(box.width, dpi)), max(1, _px(box.height, dpi)))
        image = slot.card.image.convert("RGB").resize(size, Image.Resampling.LANCZOS)
        page.paste(image, (_px(box.x, dpi), _px(box.y, dpi)))

    if include_marks:
        draw = ImageDraw.Draw(page)
        line_width = max(1, _px(sheet.mark_line_width_mm, dpi))
        for segment in sheet.crop_marks:
            draw.line(
                [(_px(segment.x1, dpi), _px(segment.y1, dpi)), (_px(segment.x2, dpi), _px(segment.y2, dpi))],
                fill=MARK_COLOR,
                width=line_width,
            )
        for mark in sheet.registration_marks:
            cx, cy, radius = _px(mark.x, dpi), _px(mark.y, dpi), _px(mark.radius, dpi)
            draw.ellipse([cx - radius, cy - radius, cx + radius, cy + radius], outline=MARK_COLOR, width=line_width)
            draw.line([(cx - radius, cy), (cx + radius, cy)], fill=MARK_COLOR, width=line_width)
            draw.line([(cx, cy - radius), (cx, cy + radius)], fill=MARK_COLOR, width=line_width)
    return page
