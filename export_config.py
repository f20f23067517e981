"""Export job configuration: print layout, output format and job limits."""
from __future__ import annotations

import json
import math
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Union

from card_errors import ValidationError
from print_layout import ORIENTATIONS, PAPER_SIZES_MM

FORMATS = ("raster", "document", "vector", "snapshot")
IMAGE_FORMATS = ("png", "jpeg")
COLOR_SPACES = ("RGB", "CMYK")
VECTOR_FIDELITIES = ("partial", "full")

QUALITY_PRESETS = {"low": 60, "medium": 80, "high": 92, "maximum": 100}

# Format names used by the editor's export dialog.
_FORMAT_ALIASES = {
    "png": ("raster", "png"),
    "jpg": ("raster", "jpeg"),
    "jpeg": ("raster", "jpeg"),
    "image": ("raster", None),
    "pdf": ("document", None),
    "eps": ("vector", None),
    "json": ("snapshot", None),
}

_CAMEL_KEYS = {
    "format": ("format",),
    "dpi": ("dpi",),
    "paper_size": ("paperSize",),
    "orientation": ("orientation",),
    "cards_per_page": ("cardsPerPage",),
    "margin_mm": ("margin", "marginMm"),
    "bleed_mm": ("bleed", "bleedMm"),
    "include_cut_marks": ("includeCutMarks", "cutMarks", "includeCropMarks"),
    "include_registration_marks": ("includeRegistrationMarks", "registrationMarks"),
    "quality": ("quality",),
    "color_space": ("colorSpace", "colorMode"),
    "raster_per_sheet": ("rasterPerSheet",),
    "image_format": ("imageFormat",),
    "mark_length_mm": ("markLength", "markLengthMm"),
    "mark_line_width_mm": ("markLineWidth", "markLineWidthMm"),
    "asset_timeout": ("assetTimeout",),
    "workers": ("workers",),
    "vector_fidelity": ("vectorFidelity",),
}


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


@dataclass(frozen=True)
class ExportConfig:
    """Settings for one export job.

    Defaults follow the print dialog: A4 portrait, two cards per page,
    10 mm margin, 3 mm bleed, cut and registration marks on.
    """

    format: str = "document"
    dpi: float = 300.0
    paper_size: str = "A4"
    orientation: str = "portrait"
    cards_per_page: int = 2
    margin_mm: float = 10.0
    bleed_mm: float = 3.0
    include_cut_marks: bool = True
    include_registration_marks: bool = True
    quality: Union[str, int] = "high"
    color_space: str = "RGB"
    raster_per_sheet: bool = False
    image_format: str = "png"
    mark_length_mm: float = 5.0
    mark_line_width_mm: float = 0.1
    asset_timeout: float = 8.0
    workers: int = 4
    vector_fidelity: str = "partial"

    def __post_init__(self) -> None:
        self.validate()

    @property
    def jpeg_quality(self) -> int:
        if isinstance(self.quality, str):
            return QUALITY_PRESETS[self.quality]
        return int(self.quality)

    @property
    def image_extension(self) -> str:
        return "jpg" if self.image_format == "jpeg" else "png"

    def validate(self) -> "ExportConfig":
        if self.format not in FORMATS:
            raise ValidationError(f"format must be one of {FORMATS}, got {self.format!r}.")
        for name in ("dpi", "margin_mm", "bleed_mm", "mark_length_mm", "mark_line_width_mm", "asset_timeout"):
            value = getattr(self, name)
            if not isinstance(value, (int, float)) or not math.isfinite(value):
                raise ValidationError(f"{name} must be a finite number, got {value!r}.")
        if self.dpi <= 0:
            raise ValidationError(f"dpi must be positive, got {self.dpi}.")
        if self.paper_size not in PAPER_SIZES_MM:
            raise ValidationError(f"paper_size must be one of {tuple(PAPER_SIZES_MM)}, got {self.paper_size!r}.")
        if self.orientation not in ORIENTATIONS:
            raise ValidationError(f"orientation must be one of {ORIENTATIONS}, got {self.orientation!r}.")
        if self.cards_per_page < 1:
            raise ValidationError(f"cards_per_page must be at least 1, got {self.cards_per_page}.")
        if self.margin_mm < 0 or self.bleed_mm < 0:
            raise ValidationError("margin_mm and bleed_mm must not be negative.")
        if self.mark_length_mm <= 0 or self.mark_line_width_mm <= 0:
            raise ValidationError("mark_length_mm and mark_line_width_mm must be positive.")
        if self.asset_timeout <= 0:
            raise ValidationError(f"asset_timeout must be positive, got {self.asset_timeout}.")
        if self.workers < 1:
            raise ValidationError(f"workers must be at least 1, got {self.workers}.")
        if isinstance(self.quality, str):
            if self.quality not in QUALITY_PRESETS:
                raise ValidationError(
                    f"quality must be one of {tuple(QUALITY_PRESETS)} or 1-100, got {self.quality!r}."
                )
        elif (
            isinstance(self.quality, bool)
            or not isinstance(self.quality, (int, float))
            or not math.isfinite(self.quality)
            or not 1 <= self.quality <= 100
        ):
            raise ValidationError(f"quality must be between 1 and 100, got {self.quality}.")
        if self.color_space not in COLOR_SPACES:
            raise ValidationError(f"color_space must be one of {COLOR_SPACES}, got {self.color_space!r}.")
        if self.image_format not in IMAGE_FORMATS:
            raise ValidationError(f"image_format must be one of {IMAGE_FORMATS}, got {self.image_format!r}.")
        if self.vector_fidelity not in VECTOR_FIDELITIES:
            raise ValidationError(
                f"vector_fidelity must be one of {VECTOR_FIDELITIES}, got {self.vector_fidelity!r}."
            )
        return self

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ExportConfig":
        """Build a config from snake_case or camelCase keys."""

        values: Dict[str, Any] = {}
        for attribute, aliases in _CAMEL_KEYS.items():
            for key in (attribute,) + aliases:
                if key in data and data[key] is not None:
                    values[attribute] = data[key]
                    break
        return cls(**_normalise_values(values))

    def with_overrides(self, **overrides: Any) -> "ExportConfig":
        cleaned = {key: value for key, value in overrides.items() if value is not None}
        if not cleaned:
            return self
        return replace(self, **_normalise_values(cleaned))

    def to_dict(self) -> Dict[str, Any]:
        return {_CAMEL_KEYS[name][0]: value for name, value in asdict(self).items()}


def _normalise_values(values: Dict[str, Any]) -> Dict[str, Any]:
    result = dict(values)
    known = {item.name for item in fields(ExportConfig)}
    unknown = sorted(set(result) - known)
    if unknown:
        raise ValidationError(f"Unknown export settings: {', '.join(unknown)}.")

    if "format" in result:
        raw_format = str(result["format"]).strip().lower()
        canonical, image_format = _FORMAT_ALIASES.get(raw_format, (raw_format, None))
        result["format"] = canonical
        if image_format and "image_format" not in result:
            result["image_format"] = image_format
    if "image_format" in result:
        image_format = str(result["image_format"]).strip().lower()
        result["image_format"] = "jpeg" if image_format == "jpg" else image_format

    try:
        for name in ("dpi", "margin_mm", "bleed_mm", "mark_length_mm", "mark_line_width_mm", "asset_timeout"):
            if name in result:
                result[name] = float(result[name])
        for name in ("cards_per_page", "workers"):
            if name in result:
                result[name] = int(result[name])
    except (TypeError, ValueError, OverflowError) as exc:
        raise ValidationError(f"Invalid numeric export setting: {exc}") from exc

    for name in ("include_cut_marks", "include_registration_marks", "raster_per_sheet"):
        if name in result:
            result[name] = _as_bool(result[name])

    if "quality" in result:
        result["quality"] = _normalise_quality(result["quality"])
    if "paper_size" in result:
        result["paper_size"] = _normalise_paper_size(str(result["paper_size"]))
    if "orientation" in result:
        result["orientation"] = str(result["orientation"]).strip().lower()
    if "color_space" in result:
        result["color_space"] = str(result["color_space"]).strip().upper()
    if "vector_fidelity" in result:
        result["vector_fidelity"] = str(result["vector_fidelity"]).strip().lower()
    return result


def _normalise_quality(value: Any) -> Union[str, int]:
    if isinstance(value, str):
        text = value.strip().lower()
        if text in QUALITY_PRESETS:
            return text
        try:
            value = float(text)
        except ValueError as exc:
            raise ValidationError(f"Unknown quality {value!r}.") from exc
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"Unknown quality {value!r}.")
    if not math.isfinite(value):
        raise ValidationError(f"quality must be finite, got {value!r}.")
    if 0 < value <= 1:
        # Values up to 1 are fractions: 0.92 is 92, 1 is 100.
        return int(round(value * 100))
    return int(round(value))


def _normalise_paper_size(value: str) -> str:
    text = value.strip()
    for name in PAPER_SIZES_MM:
        if name.lower() == text.lower():
            return name
    return text


def load_export_config(path: Union[str, Path]) -> ExportConfig:
    config_path = Path(path)
    try:
        data = json.loads(config_path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise ValidationError(f"Cannot read export config {config_path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise ValidationError(f"Export config {config_path} is not valid JSON: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ValidationError(f"Export config {config_path} must contain a JSON object.")
    return ExportConfig.from_mapping(data)
