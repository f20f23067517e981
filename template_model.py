"""Immutable card template model with parsing, serialisation and validation.

A template is a canvas (pixel size, physical size and DPI) plus an ordered
list of positioned elements.  Element kinds form a closed set; every kind is
a frozen dataclass deriving from :class:`TemplateElement`.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field, fields, replace
from typing import Any, ClassVar, Dict, Iterable, List, Mapping, Optional, Tuple, Type

from card_errors import ValidationError
from dynamic_fields import is_known_token

logger = logging.getLogger(__name__)

PIXEL_TOLERANCE = 1.0

ORIENTATIONS = ("landscape", "portrait")
TEXT_ALIGNMENTS = ("left", "center", "right")
TEXT_TRANSFORMS = ("none", "uppercase", "lowercase", "title")
IMAGE_FITS = ("fill", "contain", "cover")
SHAPE_TYPES = ("rectangle", "circle", "line")

ID_CARD_PRESETS = {
    "standard": {"widthInches": 3.37, "heightInches": 2.13, "dpi": 300},
    "large": {"widthInches": 4.0, "heightInches": 3.0, "dpi": 300},
}


@dataclass(frozen=True)
class Canvas:
    width_px: int
    height_px: int
    width_inches: float
    height_inches: float
    dpi: float
    orientation: str = "landscape"
    background_color: Optional[str] = None
    background_image: Optional[str] = None

    @property
    def area(self) -> float:
        return float(self.width_px) * float(self.height_px)


@dataclass(frozen=True)
class TextStyle:
    font_family: str = "Arial"
    font_size: float = 16.0
    font_weight: str = "normal"
    font_style: str = "normal"
    color: str = "#000000"
    text_align: str = "left"
    stroke_color: Optional[str] = None
    stroke_width: float = 0.0
    text_transform: str = "none"


@dataclass(frozen=True)
class TemplateElement:
    id: str
    x: float = 0.0
    y: float = 0.0
    width: float = 0.0
    height: float = 0.0
    rotation: float = 0.0
    z_index: int = 0
    opacity: float = 1.0
    locked: bool = False
    visible: bool = True

    element_type: ClassVar[str] = ""


@dataclass(frozen=True)
class TextElement(TemplateElement):
    text: str = ""
    style: TextStyle = field(default_factory=TextStyle)

    element_type: ClassVar[str] = "text"


@dataclass(frozen=True)
class ImageElement(TemplateElement):
    image_url: str = ""
    image_fit: str = "contain"

    element_type: ClassVar[str] = "image"


@dataclass(frozen=True)
class ShapeElement(TemplateElement):
    shape_type: str = "rectangle"
    fill_color: Optional[str] = None
    stroke_color: Optional[str] = None
    stroke_width: float = 0.0
    corner_radius: float = 0.0

    element_type: ClassVar[str] = "shape"


@dataclass(frozen=True)
class DynamicFieldElement(TemplateElement):
    field_name: str = ""
    style: TextStyle = field(default_factory=TextStyle)
    image_fit: str = "cover"

    element_type: ClassVar[str] = "dynamic_field"


@dataclass(frozen=True)
class QrElement(TemplateElement):
    data: str = ""
    foreground_color: str = "#000000"
    background_color: str = "#FFFFFF"

    element_type: ClassVar[str] = "qr"


@dataclass(frozen=True)
class Template:
    id: str
    name: str
    canvas: Canvas
    elements: Tuple[TemplateElement, ...] = ()
    version: int = 1
    description: str = ""

    def element(self, element_id: str) -> Optional[TemplateElement]:
        for candidate in self.elements:
            if candidate.id == element_id:
                return candidate
        return None


ELEMENT_CLASSES: Dict[str, Type[TemplateElement]] = {
    cls.element_type: cls
    for cls in (TextElement, ImageElement, ShapeElement, DynamicFieldElement, QrElement)
}

# Spellings used by the editors that produced older template payloads.
_TYPE_ALIASES = {
    "dynamic-field": ("dynamic_field", None),
    "dynamicfield": ("dynamic_field", None),
    "qr-code": ("qr", None),
    "qr_code": ("qr", None),
    "rect": ("shape", "rectangle"),
    "rectangle": ("shape", "rectangle"),
    "circle": ("shape", "circle"),
    "line": ("shape", "line"),
}

_COMMON_KEYS = (
    ("id", "id"),
    ("x", "x"),
    ("y", "y"),
    ("width", "width"),
    ("height", "height"),
    ("rotation", "rotation"),
    ("z_index", "zIndex"),
    ("opacity", "opacity"),
    ("locked", "locked"),
    ("visible", "visible"),
)

_STYLE_KEYS = (
    ("font_family", "fontFamily"),
    ("font_size", "fontSize"),
    ("font_weight", "fontWeight"),
    ("font_style", "fontStyle"),
    ("color", "color"),
    ("text_align", "textAlign"),
    ("stroke_color", "strokeColor"),
    ("stroke_width", "strokeWidth"),
    ("text_transform", "textTransform"),
)

_PAYLOAD_KEYS: Dict[Type[TemplateElement], Tuple[Tuple[str, str], ...]] = {
    TextElement: (("text", "text"),),
    ImageElement: (("image_url", "imageUrl"), ("image_fit", "imageFit")),
    ShapeElement: (
        ("shape_type", "shapeType"),
        ("fill_color", "fillColor"),
        ("stroke_color", "strokeColor"),
        ("stroke_width", "strokeWidth"),
        ("corner_radius", "cornerRadius"),
    ),
    DynamicFieldElement: (("field_name", "fieldName"), ("image_fit", "imageFit")),
    QrElement: (
        ("data", "data"),
        ("foreground_color", "foregroundColor"),
        ("background_color", "backgroundColor"),
    ),
}

_KEY_ALIASES = {
    "fieldName": ("field", "dynamicFieldType"),
    "imageUrl": ("src",),
    "fillColor": ("fill",),
    "strokeColor": ("stroke",),
    "cornerRadius": ("rx",),
    "rotation": ("angle",),
    "color": ("fill",),
    "data": ("qrData",),
}

_CANVAS_KEYS = (
    ("width_px", "widthPx", ("width",)),
    ("height_px", "heightPx", ("height",)),
    ("width_inches", "widthInches", ()),
    ("height_inches", "heightInches", ()),
    ("dpi", "dpi", ()),
    ("orientation", "orientation", ()),
    ("background_color", "backgroundColor", ()),
    ("background_image", "backgroundImage", ()),
)


def _field_types(cls: type) -> Dict[str, Any]:
    return {item.name: item for item in fields(cls)}


def _lookup(data: Mapping[str, Any], key: str, aliases: Iterable[str] = ()) -> Any:
    if key in data:
        return data[key]
    for alias in aliases:
        if alias in data:
            return data[alias]
    return None


def _coerce(value: Any, default: Any, name: str) -> Any:
    """Coerce ``value`` to the type of the dataclass ``default``."""

    if value is None:
        return default
    try:
        if isinstance(default, bool):
            if isinstance(value, str):
                return value.strip().lower() in {"1", "true", "yes", "on"}
            return bool(value)
        if isinstance(default, int):
            return int(round(float(value)))
        if isinstance(default, float):
            return float(value)
    except (TypeError, ValueError, OverflowError) as exc:
        raise ValidationError(f"{name} must be numeric, got {value!r}.") from exc
    return str(value) if not isinstance(value, str) else value


def _build(cls: type, data: Mapping[str, Any], keys, label: str, extra: Optional[Dict[str, Any]] = None):
    declared = _field_types(cls)
    kwargs: Dict[str, Any] = dict(extra or {})
    for attribute, key in keys:
        raw = _lookup(data, key, _KEY_ALIASES.get(key, ()))
        if raw is None:
            continue
        default = declared[attribute].default
        if default is None:
            kwargs[attribute] = str(raw)
        else:
            kwargs[attribute] = _coerce(raw, default, f"{label}.{key}")
    return cls(**kwargs)


def text_style_from_dict(data: Mapping[str, Any], label: str = "style") -> TextStyle:
    return _build(TextStyle, data, _STYLE_KEYS, label)


def element_from_dict(data: Mapping[str, Any], position: int = 0) -> TemplateElement:
    raw_type = str(data.get("type", "")).strip().lower()
    element_type, shape_hint = _TYPE_ALIASES.get(raw_type, (raw_type, None))
    cls = ELEMENT_CLASSES.get(element_type)
    label = f"elements[{position}]"
    if cls is None:
        raise ValidationError(f"{label} has unknown element type {raw_type!r}.")

    element_id = _lookup(data, "id")
    if element_id is None or not str(element_id).strip():
        raise ValidationError(f"{label} is missing an id.")

    # Editors may nest the variant payload under "properties".
    merged: Dict[str, Any] = dict(data.get("properties") or {})
    merged.update({key: value for key, value in data.items() if key != "properties"})

    extra: Dict[str, Any] = {"id": str(element_id)}
    if "style" in _field_types(cls):
        extra["style"] = text_style_from_dict(merged, label)
    if shape_hint is not None and "shapeType" not in merged:
        extra["shape_type"] = shape_hint

    keys = tuple(item for item in _COMMON_KEYS if item[0] != "id") + _PAYLOAD_KEYS[cls]
    return _build(cls, merged, keys, label, extra)


def canvas_from_dict(data: Mapping[str, Any]) -> Canvas:
    values: Dict[str, Any] = {}
    for attribute, key, aliases in _CANVAS_KEYS:
        raw = _lookup(data, key, aliases)
        if raw is not None:
            values[attribute] = raw

    missing = [key for attribute, key, _ in _CANVAS_KEYS[:5] if attribute not in values]
    if missing:
        raise ValidationError(f"canvas is missing {', '.join(missing)}.")

    try:
        width_px = int(round(float(values["width_px"])))
        height_px = int(round(float(values["height_px"])))
        width_inches = float(values["width_inches"])
        height_inches = float(values["height_inches"])
        dpi = float(values["dpi"])
    except (TypeError, ValueError, OverflowError) as exc:
        raise ValidationError(f"canvas dimensions must be numeric: {exc}") from exc

    orientation = values.get("orientation")
    if orientation is None:
        orientation = "portrait" if height_px > width_px else "landscape"

    return Canvas(
        width_px=width_px,
        height_px=height_px,
        width_inches=width_inches,
        height_inches=height_inches,
        dpi=dpi,
        orientation=str(orientation).lower(),
        background_color=values.get("background_color"),
        background_image=values.get("background_image"),
    )


def canvas_from_preset(name: str, orientation: str = "landscape", **overrides: Any) -> Canvas:
    preset = ID_CARD_PRESETS.get(name)
    if preset is None:
        raise ValidationError(f"Unknown canvas preset {name!r}.")
    width_in, height_in = preset["widthInches"], preset["heightInches"]
    if orientation == "portrait":
        width_in, height_in = height_in, width_in
    dpi = preset["dpi"]
    data = {
        "widthPx": round(width_in * dpi),
        "heightPx": round(height_in * dpi),
        "widthInches": width_in,
        "heightInches": height_in,
        "dpi": dpi,
        "orientation": orientation,
    }
    data.update(overrides)
    return canvas_from_dict(data)


def template_from_dict(data: Mapping[str, Any], *, validate: bool = True) -> Template:
    canvas_data = data.get("canvas")
    if not isinstance(canvas_data, Mapping):
        raise ValidationError("template is missing a canvas object.")

    canvas = canvas_from_dict(canvas_data)
    background = data.get("background")
    if isinstance(background, Mapping):
        # Exported editor payloads keep the background beside the canvas.
        canvas = replace(
            canvas,
            background_color=canvas.background_color or background.get("color"),
            background_image=canvas.background_image or background.get("image"),
        )

    raw_elements = data.get("elements") or []
    if not isinstance(raw_elements, (list, tuple)):
        raise ValidationError("template elements must be a list.")
    elements = tuple(
        element_from_dict(item, position) for position, item in enumerate(raw_elements)
    )

    template = Template(
        id=str(data.get("id") or ""),
        name=str(data.get("name") or "Untitled"),
        canvas=canvas,
        elements=elements,
        version=_coerce(data.get("version"), 1, "version"),
        description=str(data.get("description") or ""),
    )
    if validate:
        validate_template(template)
    return template


def _dump(obj: Any, keys) -> Dict[str, Any]:
    return {key: getattr(obj, attribute) for attribute, key in keys}


def element_to_dict(element: TemplateElement) -> Dict[str, Any]:
    cls = type(element)
    data: Dict[str, Any] = {"type": cls.element_type}
    data.update(_dump(element, _COMMON_KEYS))
    data.update(_dump(element, _PAYLOAD_KEYS[cls]))
    style = getattr(element, "style", None)
    if isinstance(style, TextStyle):
        data.update(_dump(style, _STYLE_KEYS))
    return data


def canvas_to_dict(canvas: Canvas) -> Dict[str, Any]:
    return {key: getattr(canvas, attribute) for attribute, key, _ in _CANVAS_KEYS}


def template_to_dict(template: Template) -> Dict[str, Any]:
    return {
        "id": template.id,
        "name": template.name,
        "version": template.version,
        "description": template.description,
        "canvas": canvas_to_dict(template.canvas),
        "elements": [element_to_dict(element) for element in template.elements],
    }


def _check_finite(value: float, name: str) -> None:
    if not math.isfinite(value):
        raise ValidationError(f"{name} must be a finite number, got {value!r}.")


def validate_template(template: Template) -> Template:
    """Check the template invariants and return it unchanged."""

    canvas = template.canvas
    for name in ("width_inches", "height_inches", "dpi"):
        _check_finite(getattr(canvas, name), f"canvas.{name}")
    if canvas.width_px <= 0 or canvas.height_px <= 0 or canvas.area <= 0:
        raise ValidationError(
            f"canvas area must be positive, got {canvas.width_px}x{canvas.height_px}px."
        )
    if canvas.dpi <= 0:
        raise ValidationError(f"canvas.dpi must be positive, got {canvas.dpi}.")
    if canvas.width_inches <= 0 or canvas.height_inches <= 0:
        raise ValidationError("canvas physical size must be positive.")
    if canvas.orientation not in ORIENTATIONS:
        raise ValidationError(f"canvas.orientation must be one of {ORIENTATIONS}.")

    for axis, pixels, inches in (
        ("width", canvas.width_px, canvas.width_inches),
        ("height", canvas.height_px, canvas.height_inches),
    ):
        expected = inches * canvas.dpi
        if abs(pixels - expected) > PIXEL_TOLERANCE:
            raise ValidationError(
                f"canvas {axis} of {pixels}px does not match {inches}in at "
                f"{canvas.dpi:g}dpi ({expected:.2f}px)."
            )

    seen = set()
    for position, element in enumerate(template.elements):
        label = f"element {element.id!r}"
        if type(element) not in _PAYLOAD_KEYS:
            raise ValidationError(f"elements[{position}] has unsupported type {type(element).__name__}.")
        if element.id in seen:
            raise ValidationError(f"Duplicate element id {element.id!r}.")
        seen.add(element.id)

        for name in ("x", "y", "width", "height", "rotation", "opacity"):
            _check_finite(float(getattr(element, name)), f"{label}.{name}")
        if element.width < 0 or element.height < 0:
            raise ValidationError(f"{label} has a negative size.")
        if not 0.0 <= element.opacity <= 1.0:
            raise ValidationError(f"{label}.opacity must be between 0 and 1.")

        if isinstance(element, (ImageElement, DynamicFieldElement)):
            if element.image_fit not in IMAGE_FITS:
                raise ValidationError(f"{label}.imageFit must be one of {IMAGE_FITS}.")
        if isinstance(element, ShapeElement) and element.shape_type not in SHAPE_TYPES:
            raise ValidationError(f"{label}.shapeType must be one of {SHAPE_TYPES}.")
        style = getattr(element, "style", None)
        if isinstance(style, TextStyle):
            _check_finite(style.font_size, f"{label}.fontSize")
            if style.font_size <= 0:
                raise ValidationError(f"{label}.fontSize must be positive.")
            if style.text_align not in TEXT_ALIGNMENTS:
                raise ValidationError(f"{label}.textAlign must be one of {TEXT_ALIGNMENTS}.")
            if style.text_transform not in TEXT_TRANSFORMS:
                raise ValidationError(f"{label}.textTransform must be one of {TEXT_TRANSFORMS}.")
        if isinstance(element, DynamicFieldElement):
            if not is_known_token(element.field_name):
                logger.warning(
                    "Element %r uses unknown dynamic field %r; it will render empty.",
                    element.id,
                    element.field_name,
                )

    return template


def paint_order(template: Template) -> List[TemplateElement]:
    """Return the elements sorted by ``z_index``; ties keep list order."""

    return sorted(template.elements, key=lambda element: element.z_index)
