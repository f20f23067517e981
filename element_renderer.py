"""Draw template elements onto a card surface.

Every element is painted into its own transparent layer sized to its box,
then faded, rotated about the layer centre and alpha-composited onto the
card.  Renderers are looked up by element class; the registry must cover
every class in :data:`template_model.ELEMENT_CLASSES`.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Mapping, NamedTuple, Optional, Tuple, Type

import qrcode
from PIL import Image, ImageColor, ImageDraw, ImageOps

from asset_loader import AssetLoader
from card_errors import AssetLoadError, RenderError
from dynamic_fields import IMAGE, QR, apply_text_transform, resolve, resolve_text, substitute_placeholders
from template_model import (
    ELEMENT_CLASSES,
    DynamicFieldElement,
    ImageElement,
    QrElement,
    ShapeElement,
    TemplateElement,
    TextElement,
    TextStyle,
)
from text_fit_util import fit_text_to_width, font_metrics

logger = logging.getLogger(__name__)

RENDERED = "rendered"
SKIPPED = "skipped"
HIDDEN = "hidden"

Color = Tuple[int, int, int, int]


class Frame(NamedTuple):
    """Element box inside its layer, in output pixels."""

    left: int
    top: int
    width: int
    height: int


class DisplayItem(NamedTuple):
    """What was drawn for one element; consumed by the vector exporter."""

    kind: str
    element_id: str
    box: Tuple[float, float, float, float]
    rotation: float
    opacity: float
    payload: Dict[str, Any]


class ElementOutcome(NamedTuple):
    element_id: str
    status: str
    reason: str = ""
    bbox: Optional[Tuple[float, float, float, float]] = None
    display: Optional[DisplayItem] = None


@dataclass(frozen=True)
class RenderContext:
    """Per-job rendering state, copied per record with :meth:`for_record`."""

    assets: AssetLoader = field(default_factory=AssetLoader)
    output_dpi: Optional[float] = None
    dpi_scale: float = 1.0
    student: Mapping[str, Any] = field(default_factory=dict)
    school: Mapping[str, Any] = field(default_factory=dict)

    def for_record(self, student: Optional[Mapping[str, Any]], school: Optional[Mapping[str, Any]] = None) -> "RenderContext":
        return replace(self, student=dict(student or {}), school=dict(school if school is not None else self.school))

    def scaled(self, dpi_scale: float) -> "RenderContext":
        return replace(self, dpi_scale=dpi_scale)


def parse_color(value: Optional[str], default: Optional[Color] = None) -> Optional[Color]:
    """Parse a CSS-style colour; ``None``/``transparent`` give ``default``."""

    text = (value or "").strip()
    if not text or text.lower() in {"none", "transparent"}:
        return default
    try:
        rgb = ImageColor.getrgb(text)
    except ValueError as exc:
        raise RenderError(f"Invalid colour {value!r}") from exc
    if len(rgb) == 3:
        return (rgb[0], rgb[1], rgb[2], 255)
    return tuple(rgb)  # type: ignore[return-value]


def _stroke_px(width: float, scale: float) -> int:
    if width <= 0:
        return 0
    return max(1, int(round(width * scale)))


# ---------------------------------------------------------------------------
# Text
# ---------------------------------------------------------------------------


def _draw_text(layer: Image.Image, frame: Frame, text: str, style: TextStyle, context: RenderContext) -> Dict[str, Any]:
    value = apply_text_transform(text or "", style.text_transform)
    payload: Dict[str, Any] = {
        "text": value,
        "font_family": style.font_family,
        "font_weight": style.font_weight,
        "font_style": style.font_style,
        "color": style.color,
        "align": style.text_align,
        "lines": [],
    }
    if not value.strip():
        payload["font_size"] = style.font_size * context.dpi_scale
        return payload

    fill = parse_color(style.color, (0, 0, 0, 255))
    stroke_fill = parse_color(style.stroke_color)
    stroke_width = _stroke_px(style.stroke_width, context.dpi_scale) if stroke_fill else 0

    fits = [
        fit_text_to_width(
            line,
            frame.width,
            family=style.font_family,
            size=style.font_size * context.dpi_scale,
            weight=style.font_weight,
            style=style.font_style,
        )
        for line in value.split("\n")
    ]
    heights = [sum(font_metrics(fit.font)) for fit in fits]
    cursor = frame.top + (frame.height - sum(heights)) / 2.0

    draw = ImageDraw.Draw(layer)
    for line, fit, line_height in zip(value.split("\n"), fits, heights):
        if style.text_align == "center":
            x = frame.left + (frame.width - fit.width) / 2.0
        elif style.text_align == "right":
            x = frame.left + frame.width - fit.width
        else:
            x = frame.left
        if fit.text:
            draw.text(
                (x, cursor),
                fit.text,
                font=fit.font,
                fill=fill,
                stroke_width=stroke_width,
                stroke_fill=stroke_fill,
            )
        ascent, _ = font_metrics(fit.font)
        payload["lines"].append(
            {
                "text": fit.text,
                "x": x - frame.left,
                "baseline": cursor + ascent - frame.top,
                "font_size": fit.font_size,
            }
        )
        if fit.was_truncated:
            logger.debug("Text %r truncated to %r", line, fit.text)
        cursor += line_height

    payload["font_size"] = min(fit.font_size for fit in fits)
    return payload


def _render_text(element: TextElement, layer: Image.Image, frame: Frame, context: RenderContext):
    text = substitute_placeholders(element.text, context.student, context.school)
    return "text", _draw_text(layer, frame, text, element.style, context)


# ---------------------------------------------------------------------------
# Images
# ---------------------------------------------------------------------------


def fit_image(image: Image.Image, size: Tuple[int, int], mode: str) -> Image.Image:
    """Return an RGBA image of exactly ``size`` using the ``fill``/``contain``/``cover`` policy."""

    width, height = size
    image = image.convert("RGBA")
    if mode == "fill":
        return image.resize((width, height), Image.Resampling.LANCZOS)
    if mode == "cover":
        return ImageOps.fit(image, (width, height), Image.Resampling.LANCZOS, centering=(0.5, 0.5))

    fitted = ImageOps.contain(image, (width, height), Image.Resampling.LANCZOS)
    canvas = Image.new("RGBA", (width, height), (0, 0, 0, 0))
    canvas.paste(fitted, ((width - fitted.width) // 2, (height - fitted.height) // 2))
    return canvas


def _draw_image(layer: Image.Image, frame: Frame, source: str, mode: str, context: RenderContext) -> Dict[str, Any]:
    if frame.width < 1 or frame.height < 1:
        raise AssetLoadError(source, "element box is empty")
    image = context.assets.load(source)
    fitted = fit_image(image, (frame.width, frame.height), mode)
    layer.alpha_composite(fitted, dest=(frame.left, frame.top))
    return {"source": source, "fit": mode}


def _render_image(element: ImageElement, layer: Image.Image, frame: Frame, context: RenderContext):
    source = substitute_placeholders(element.image_url, context.student, context.school).strip()
    if not source:
        raise AssetLoadError(element.image_url, "no image source")
    return "image", _draw_image(layer, frame, source, element.image_fit, context)


# ---------------------------------------------------------------------------
# Shapes
# ---------------------------------------------------------------------------


def _render_shape(element: ShapeElement, layer: Image.Image, frame: Frame, context: RenderContext):
    scale = context.dpi_scale
    fill = parse_color(element.fill_color)
    outline = parse_color(element.stroke_color)
    stroke_width = _stroke_px(element.stroke_width, scale) if outline else 0
    left, top = frame.left, frame.top
    right, bottom = frame.left + frame.width, frame.top + frame.height
    draw = ImageDraw.Draw(layer)

    if element.shape_type == "line":
        color = outline or fill or (0, 0, 0, 255)
        width = max(1, _stroke_px(element.stroke_width, scale))
        draw.line([(left, top), (right, bottom)], fill=color, width=width)
    elif element.shape_type == "circle":
        diameter = min(frame.width, frame.height)
        cx, cy = left + frame.width / 2.0, top + frame.height / 2.0
        radius = diameter / 2.0
        draw.ellipse(
            [cx - radius, cy - radius, cx + radius, cy + radius],
            fill=fill,
            outline=outline,
            width=stroke_width,
        )
    else:
        box = [left, top, max(left, right - 1), max(top, bottom - 1)]
        radius = element.corner_radius * scale
        if radius > 0:
            draw.rounded_rectangle(box, radius=radius, fill=fill, outline=outline, width=stroke_width)
        else:
            draw.rectangle(box, fill=fill, outline=outline, width=stroke_width)

    return "shape", {
        "shape_type": element.shape_type,
        "fill": element.fill_color,
        "stroke": element.stroke_color,
        "stroke_width": stroke_width,
        "corner_radius": element.corner_radius * scale,
    }


# ---------------------------------------------------------------------------
# QR codes
# ---------------------------------------------------------------------------


def build_qr_image(payload: str, foreground: str = "#000000", background: str = "#FFFFFF") -> Image.Image:
    qr = qrcode.QRCode(error_correction=qrcode.constants.ERROR_CORRECT_M, box_size=1, border=2)
    qr.add_data(payload)
    qr.make(fit=True)
    return qr.make_image(fill_color=foreground, back_color=background).convert("RGBA")


def _draw_qr(layer: Image.Image, frame: Frame, payload: str, foreground: str, background: str) -> Dict[str, Any]:
    if not payload:
        raise AssetLoadError("qr", "empty QR payload")
    side = min(frame.width, frame.height)
    if side < 1:
        raise AssetLoadError("qr", "element box is empty")
    matrix = build_qr_image(payload, foreground, background)
    modules = matrix.width
    if side < modules:
        raise AssetLoadError("qr", f"box too small for {modules} modules")
    # Whole pixels per module keep every module the same size.
    side = side // modules * modules
    matrix = matrix.resize((side, side), Image.Resampling.NEAREST)
    layer.alpha_composite(
        matrix,
        dest=(frame.left + (frame.width - side) // 2, frame.top + (frame.height - side) // 2),
    )
    return {"data": payload}


def _render_qr(element: QrElement, layer: Image.Image, frame: Frame, context: RenderContext):
    if element.data:
        payload = substitute_placeholders(element.data, context.student, context.school)
    else:
        payload = resolve_text("qr_code", context.student, context.school)
    return "qr", _draw_qr(layer, frame, payload.strip(), element.foreground_color, element.background_color)


# ---------------------------------------------------------------------------
# Dynamic fields
# ---------------------------------------------------------------------------


def _render_dynamic_field(element: DynamicFieldElement, layer: Image.Image, frame: Frame, context: RenderContext):
    value = resolve(element.field_name, context.student, context.school)
    if value.kind == IMAGE:
        if value.is_empty:
            raise AssetLoadError(element.field_name, "no asset for field")
        return "image", _draw_image(layer, frame, str(value), element.image_fit, context)
    if value.kind == QR:
        return "qr", _draw_qr(layer, frame, str(value), element.style.color, "#FFFFFF")
    return "text", _draw_text(layer, frame, str(value), element.style, context)


Renderer = Callable[[Any, Image.Image, Frame, RenderContext], Tuple[str, Dict[str, Any]]]

_RENDERERS: Dict[Type[TemplateElement], Renderer] = {
    TextElement: _render_text,
    ImageElement: _render_image,
    ShapeElement: _render_shape,
    QrElement: _render_qr,
    DynamicFieldElement: _render_dynamic_field,
}

_UNHANDLED = sorted(name for name, cls in ELEMENT_CLASSES.items() if cls not in _RENDERERS)
if _UNHANDLED:
    raise RuntimeError(f"No renderer registered for element types: {', '.join(_UNHANDLED)}")


def _padding(element: TemplateElement, scale: float) -> int:
    if isinstance(element, ShapeElement):
        pad = int(math.ceil(_stroke_px(element.stroke_width, scale) / 2.0))
        return max(pad, 1) if element.shape_type == "line" else pad
    style = getattr(element, "style", None)
    if isinstance(style, TextStyle) and style.stroke_color:
        return _stroke_px(style.stroke_width, scale)
    return 0


def _composite(surface: Image.Image, layer: Image.Image, element: TemplateElement, left: float, top: float) -> None:
    if element.opacity < 1.0:
        opacity = element.opacity
        layer.putalpha(layer.getchannel("A").point(lambda value: int(round(value * opacity))))

    centre_x = left + layer.width / 2.0
    centre_y = top + layer.height / 2.0
    if element.rotation % 360:
        # Editor rotation is clockwise; PIL rotates counter-clockwise.
        layer = layer.rotate(-element.rotation, resample=Image.Resampling.BICUBIC, expand=True)

    dest_x = int(round(centre_x - layer.width / 2.0))
    dest_y = int(round(centre_y - layer.height / 2.0))
    crop_left, crop_top = max(0, -dest_x), max(0, -dest_y)
    crop_right = min(layer.width, surface.width - dest_x)
    crop_bottom = min(layer.height, surface.height - dest_y)
    if crop_right <= crop_left or crop_bottom <= crop_top:
        return
    if (crop_left, crop_top, crop_right, crop_bottom) != (0, 0, layer.width, layer.height):
        layer = layer.crop((crop_left, crop_top, crop_right, crop_bottom))
    surface.alpha_composite(layer, dest=(dest_x + crop_left, dest_y + crop_top))


def render_element(element: TemplateElement, surface: Image.Image, context: RenderContext) -> ElementOutcome:
    """Draw ``element`` onto the RGBA ``surface`` and report what happened.

    Asset problems skip the element and are reported in the outcome; any
    other drawing failure raises :class:`RenderError`.
    """

    renderer = _RENDERERS.get(type(element))
    if renderer is None:
        raise RenderError(f"No renderer for element type {type(element).__name__}")

    scale = context.dpi_scale
    left, top = element.x * scale, element.y * scale
    width = int(round(element.width * scale))
    height = int(round(element.height * scale))
    bbox = (left, top, left + element.width * scale, top + element.height * scale)
    pad = _padding(element, scale)

    layer_size = (width + 2 * pad, height + 2 * pad)
    if layer_size[0] < 1 or layer_size[1] < 1:
        return ElementOutcome(element.id, SKIPPED, "empty bounding box", bbox)

    layer = Image.new("RGBA", layer_size, (0, 0, 0, 0))
    frame = Frame(pad, pad, width, height)
    try:
        kind, payload = renderer(element, layer, frame, context)
    except AssetLoadError as exc:
        logger.warning("Skipping element %r: %s", element.id, exc)
        return ElementOutcome(element.id, SKIPPED, str(exc), bbox)
    except RenderError:
        raise
    except (OSError, ValueError, TypeError) as exc:
        raise RenderError(f"Failed to draw element {element.id!r}: {exc}") from exc

    _composite(surface, layer, element, left - pad, top - pad)
    display = DisplayItem(
        kind,
        element.id,
        (left, top, element.width * scale, element.height * scale),
        element.rotation,
        element.opacity,
        payload,
    )
    return ElementOutcome(element.id, RENDERED, "", bbox, display)


def summarise_outcomes(outcomes: List[ElementOutcome]) -> Dict[str, int]:
    counts = {RENDERED: 0, SKIPPED: 0, HIDDEN: 0}
    for outcome in outcomes:
        counts[outcome.status] = counts.get(outcome.status, 0) + 1
    return counts
