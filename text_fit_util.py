"""Utility helpers for fitting card text within element bounding boxes."""
from __future__ import annotations

import logging
import math
from functools import lru_cache
from pathlib import Path
from typing import List, NamedTuple, Optional, Tuple, Union

from PIL import ImageFont

logger = logging.getLogger(__name__)

FONT_DIR = Path(__file__).resolve().parent / "fonts"

_WIDTH_PADDING_RATIO = 0.95
_MIN_SCALE = 0.7
_SHRINK_STEP = 0.5
MIN_FONT_SIZE = 4.6

# System faces tried after the bundled fonts directory, by weight/style.
_SYSTEM_FALLBACKS = {
    ("normal", "normal"): ("DejaVuSans.ttf", "LiberationSans-Regular.ttf", "Arial.ttf"),
    ("bold", "normal"): ("DejaVuSans-Bold.ttf", "LiberationSans-Bold.ttf", "Arial Bold.ttf"),
    ("normal", "italic"): ("DejaVuSans-Oblique.ttf", "LiberationSans-Italic.ttf", "Arial Italic.ttf"),
    ("bold", "italic"): ("DejaVuSans-BoldOblique.ttf", "LiberationSans-BoldItalic.ttf", "Arial Bold Italic.ttf"),
}

AnyFont = Union[ImageFont.FreeTypeFont, ImageFont.ImageFont]


class TextFit(NamedTuple):
    font: AnyFont
    font_size: float
    text: str
    width: float
    was_shrunk: bool
    was_truncated: bool


def _normalise_weight(weight: str) -> str:
    value = (weight or "normal").strip().lower()
    if value in {"bold", "bolder", "600", "700", "800", "900"}:
        return "bold"
    return "normal"


def _normalise_style(style: str) -> str:
    value = (style or "normal").strip().lower()
    return "italic" if value in {"italic", "oblique"} else "normal"


def _font_candidates(family: str, weight: str, style: str) -> List[str]:
    suffix = {
        ("normal", "normal"): ("-Regular", ""),
        ("bold", "normal"): ("-Bold", " Bold"),
        ("normal", "italic"): ("-Italic", " Italic"),
        ("bold", "italic"): ("-BoldItalic", " Bold Italic"),
    }[(weight, style)]
    candidates: List[str] = []
    cleaned = (family or "").split(",")[0].strip().strip("\"'")
    if cleaned:
        compact = cleaned.replace(" ", "")
        for stem in (compact, cleaned):
            for ending in suffix:
                for extension in (".ttf", ".otf"):
                    local = FONT_DIR / f"{stem}{ending}{extension}"
                    candidates.append(str(local))
        candidates.extend(f"{compact}{ending}.ttf" for ending in suffix)
    candidates.extend(_SYSTEM_FALLBACKS[(weight, style)])
    return candidates


@lru_cache(maxsize=64)
def resolve_font_path(family: str, weight: str = "normal", style: str = "normal") -> Optional[str]:
    """Return the first font file for ``family`` that FreeType can open."""

    for candidate in _font_candidates(family, _normalise_weight(weight), _normalise_style(style)):
        try:
            ImageFont.truetype(candidate, 12)
        except OSError:
            continue
        return candidate
    logger.debug("No TrueType face found for %r; using Pillow's default font", family)
    return None


def load_font(family: str, size: float, weight: str = "normal", style: str = "normal") -> AnyFont:
    effective_size = max(1, int(round(size)))
    font_path = resolve_font_path(family, weight, style)
    if font_path is not None:
        try:
            return ImageFont.truetype(font_path, effective_size)
        except OSError:
            logger.debug("Failed to reload %s at %spx", font_path, effective_size)
    return ImageFont.load_default(effective_size)


def measure_text_width(font: AnyFont, text: str) -> float:
    if not text:
        return 0.0
    try:
        return float(font.getlength(text))
    except AttributeError:
        left, _, right, _ = font.getbbox(text)
        return float(right - left)


def font_metrics(font: AnyFont) -> Tuple[float, float]:
    """Return ``(ascent, descent)`` for ``font``."""

    try:
        ascent, descent = font.getmetrics()
        return float(ascent), float(descent)
    except AttributeError:
        _, top, _, bottom = font.getbbox("Ag")
        return float(-min(top, 0) + bottom), 0.0


def truncate_line_to_width(font: AnyFont, line: str, target_width: float) -> str:
    trimmed = line.rstrip()
    if not trimmed:
        return trimmed

    if measure_text_width(font, trimmed) <= target_width:
        return trimmed

    ellipsis = "…"
    while trimmed and measure_text_width(font, trimmed + ellipsis) > target_width:
        trimmed = trimmed[:-1].rstrip()

    return (trimmed + ellipsis) if trimmed else ellipsis


def fit_text_to_width(
    text: str,
    max_width: float,
    *,
    family: str,
    size: float,
    weight: str = "normal",
    style: str = "normal",
    width_padding: float = _WIDTH_PADDING_RATIO,
    min_scale: float = _MIN_SCALE,
) -> TextFit:
    """Shrink ``size`` until ``text`` fits ``max_width``, then truncate.

    The font never drops below ``size * min_scale`` (nor ``MIN_FONT_SIZE``);
    text that still overflows at that size is cut with an ellipsis.
    """

    current_size = max(float(size), MIN_FONT_SIZE)
    font = load_font(family, current_size, weight, style)
    text_width = measure_text_width(font, text)
    if max_width <= 0:
        return TextFit(font, current_size, text, text_width, False, False)

    target_width = max_width * width_padding
    if text_width <= target_width:
        return TextFit(font, current_size, text, text_width, False, False)

    min_size = max(current_size * min_scale, MIN_FONT_SIZE)
    while text_width > target_width and current_size > min_size:
        new_size = max(current_size - _SHRINK_STEP, min_size)
        if math.isclose(new_size, current_size, rel_tol=1e-3, abs_tol=1e-3):
            break
        current_size = new_size
        font = load_font(family, current_size, weight, style)
        text_width = measure_text_width(font, text)

    if text_width <= target_width:
        return TextFit(font, current_size, text, text_width, True, False)

    truncated = truncate_line_to_width(font, text, target_width)
    return TextFit(
        font,
        current_size,
        truncated,
        measure_text_width(font, truncated),
        True,
        truncated != text,
    )


__all__ = [
    "TextFit",
    "fit_text_to_width",
    "font_metrics",
    "load_font",
    "measure_text_width",
    "resolve_font_path",
    "truncate_line_to_width",
]
