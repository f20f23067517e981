"""Export adapters: raster sets, print PDFs, partial EPS and JSON snapshots.

Every adapter builds its artifact fully in memory; :func:`write_artifact`
is the only function that touches the filesystem.
"""
from __future__ import annotations

import datetime as _dt
import json
import logging
import zipfile
from dataclasses import dataclass
from io import BytesIO
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import fitz  # PyMuPDF
from PIL import Image
from reportlab.lib.units import mm
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas

from card_errors import ExportError, RenderError, UnsupportedFormatError, ValidationError
from element_renderer import DisplayItem, parse_color
from export_config import ExportConfig
from print_layout import PrintSheet, render_sheet_image
from template_model import Template, template_from_dict, template_to_dict
from util import POINTS_PER_INCH, atomic_write_bytes, sanitize_filename_component, unique_filenames

logger = logging.getLogger(__name__)

EXPORT_VERSION = "1.0"
ZIP_FILENAME = "ID_Cards_Print_Ready.zip"
CREATOR = "idcard-render"

MEDIA_TYPES = {
    "png": "image/png",
    "jpg": "image/jpeg",
    "zip": "application/zip",
    "pdf": "application/pdf",
    "eps": "application/postscript",
    "json": "application/json",
}

_PS_FONTS = {
    "times": ("Times-Roman", "Times-Bold", "Times-Italic", "Times-BoldItalic"),
    "courier": ("Courier", "Courier-Bold", "Courier-Oblique", "Courier-BoldOblique"),
    "helvetica": ("Helvetica", "Helvetica-Bold", "Helvetica-Oblique", "Helvetica-BoldOblique"),
}


@dataclass(frozen=True)
class Artifact:
    filename: str
    data: bytes
    media_type: str
    fidelity: str = "full"

    @property
    def size(self) -> int:
        return len(self.data)


# ---------------------------------------------------------------------------
# Raster set
# ---------------------------------------------------------------------------


def encode_image(image: Image.Image, image_format: str = "png", quality: int = 92, dpi: Optional[float] = None) -> bytes:
    buffer = BytesIO()
    options: Dict[str, Any] = {}
    if dpi:
        options["dpi"] = (dpi, dpi)
    if image_format == "jpeg":
        image.convert("RGB").save(buffer, format="JPEG", quality=quality, **options)
    else:
        image.save(buffer, format="PNG", **options)
    return buffer.getvalue()


def zip_artifacts(artifacts: Sequence[Artifact], filename: str = ZIP_FILENAME) -> Artifact:
    buffer = BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for artifact in artifacts:
            archive.writestr(artifact.filename, artifact.data)
    fidelity = "partial" if any(item.fidelity == "partial" for item in artifacts) else "full"
    return Artifact(filename, buffer.getvalue(), MEDIA_TYPES["zip"], fidelity)


def card_filename(label: str, extension: str) -> str:
    return f"{sanitize_filename_component(label, 'Card')}_ID_Card.{extension}"


def export_raster_set(
    cards: Sequence[Any],
    config: ExportConfig,
    sheets: Optional[Sequence[PrintSheet]] = None,
) -> Artifact:
    """One image per card (or per sheet); more than one image is zipped."""

    extension = config.image_extension
    items: List[Tuple[str, Image.Image]]
    if config.raster_per_sheet:
        if not sheets:
            raise ExportError("Per-sheet raster export needs at least one laid out sheet.")
        items = [
            (f"Sheet_{sheet.number:03d}.{extension}", render_sheet_image(sheet, config.dpi, include_marks=True))
            for sheet in sheets
        ]
    else:
        if not cards:
            raise ExportError("No rendered cards to export.")
        items = [(card_filename(card.label, extension), card.image) for card in cards]

    names = unique_filenames(name for name, _ in items)
    artifacts = [
        Artifact(name, encode_image(image, config.image_format, config.jpeg_quality, config.dpi), MEDIA_TYPES[extension])
        for name, (_, image) in zip(names, items)
    ]
    if len(artifacts) == 1:
        return artifacts[0]
    return zip_artifacts(artifacts)


# ---------------------------------------------------------------------------
# Paginated print document
# ---------------------------------------------------------------------------


def _draw_marks(pdf: canvas.Canvas, sheet: PrintSheet, color_space: str) -> None:
    page_height = sheet.page_height_mm
    if color_space == "CMYK":
        # Registration black prints on every plate.
        pdf.setStrokeColorCMYK(1, 1, 1, 1)
    else:
        pdf.setStrokeColorRGB(0, 0, 0)
    pdf.setLineWidth(sheet.mark_line_width_mm * mm)

    for segment in sheet.crop_marks:
        pdf.line(
            segment.x1 * mm,
            (page_height - segment.y1) * mm,
            segment.x2 * mm,
            (page_height - segment.y2) * mm,
        )
    for mark in sheet.registration_marks:
        x, y, radius = mark.x * mm, (page_height - mark.y) * mm, mark.radius * mm
        pdf.circle(x, y, radius, stroke=1, fill=0)
        pdf.line(x - radius, y, x + radius, y)
        pdf.line(x, y - radius, x, y + radius)


def export_document(sheets: Sequence[PrintSheet], config: ExportConfig, title: str = "ID Cards") -> Artifact:
    """Render ``sheets`` into a print-ready PDF, one page per sheet."""

    if not sheets:
        raise ExportError("No sheets to export.")

    buffer = BytesIO()
    first = sheets[0]
    pdf = canvas.Canvas(buffer, pagesize=(first.page_width_mm * mm, first.page_height_mm * mm))
    pdf.setTitle(title)
    pdf.setSubject(f"Print-ready ID cards; colour space {config.color_space}")
    pdf.setCreator(CREATOR)
    pdf.setKeywords([f"colorSpace={config.color_space}", f"dpi={config.dpi:g}"])

    for sheet in sheets:
        width, height = sheet.page_width_mm * mm, sheet.page_height_mm * mm
        pdf.setPageSize((width, height))
        raster = render_sheet_image(sheet, config.dpi, include_marks=False)
        pdf.drawImage(ImageReader(raster), 0, 0, width=width, height=height)
        _draw_marks(pdf, sheet, config.color_space)
        pdf.showPage()
        logger.debug("Wrote sheet %d with %d card(s)", sheet.number, len(sheet.filled_slots))

    pdf.save()
    filename = f"{sanitize_filename_component(title, 'ID_Cards')}_Print.pdf"
    return Artifact(filename, buffer.getvalue(), MEDIA_TYPES["pdf"])


def proof_images(pdf_bytes: bytes, dpi: int = 72) -> List[Image.Image]:
    """Rasterise every page of an exported PDF for a visual check."""

    images: List[Image.Image] = []
    with fitz.open(stream=pdf_bytes, filetype="pdf") as doc:
        for page in doc:
            pix = page.get_pixmap(dpi=dpi, alpha=False)
            images.append(Image.open(BytesIO(pix.tobytes("png"))).convert("RGB"))
    return images


# ---------------------------------------------------------------------------
# Partial vector description (EPS)
# ---------------------------------------------------------------------------


def _ps_string(text: str) -> str:
    encoded = text.encode("latin-1", errors="replace").decode("latin-1")
    escaped = encoded.replace("\\", "\\\\").replace("(", "\\(").replace(")", "\\)")
    return f"({escaped})"


def _ps_font(payload: Mapping[str, Any]) -> str:
    family = str(payload.get("font_family") or "").lower()
    faces = _PS_FONTS["helvetica"]
    for key, candidate in _PS_FONTS.items():
        if key in family:
            faces = candidate
            break
    bold = str(payload.get("font_weight", "normal")).lower() in {"bold", "bolder", "600", "700", "800", "900"}
    italic = str(payload.get("font_style", "normal")).lower() in {"italic", "oblique"}
    return faces[int(bold) + 2 * int(italic)]


def _ps_color(value: Optional[str]) -> Optional[str]:
    try:
        rgba = parse_color(value)
    except RenderError:
        return None
    if rgba is None:
        return None
    return " ".join(f"{channel / 255:.3f}" for channel in rgba[:3]) + " setrgbcolor"


def _fmt(value: float) -> str:
    return f"{value:.2f}"


def _eps_item(item: DisplayItem, to_pt: float) -> List[str]:
    x, y, width, height = (value * to_pt for value in item.box)
    lines = [f"% {item.kind} {item.element_id}"]
    if item.kind in {"image", "qr"}:
        lines.append(f"% {item.kind} content omitted")
        return lines

    half_w, half_h = width / 2.0, height / 2.0
    lines.append("gsave")
    lines.append(f"{_fmt(x + half_w)} {_fmt(-(y + half_h))} translate")
    if item.rotation:
        lines.append(f"{_fmt(-item.rotation)} rotate")
    payload = item.payload

    if item.kind == "background":
        color = _ps_color(payload.get("color"))
        if color:
            lines.append(f"{color} {_fmt(-half_w)} {_fmt(-half_h)} {_fmt(width)} {_fmt(height)} rectfill")
        if payload.get("image"):
            lines.append("% background image omitted")
    elif item.kind == "text":
        color = _ps_color(payload.get("color")) or "0 0 0 setrgbcolor"
        lines.append(color)
        for line in payload.get("lines", []):
            if not line.get("text"):
                continue
            size = line["font_size"] * to_pt
            lines.append(f"/{_ps_font(payload)} findfont {_fmt(size)} scalefont setfont")
            lines.append(
                f"{_fmt(-half_w + line['x'] * to_pt)} {_fmt(half_h - line['baseline'] * to_pt)} moveto "
                f"{_ps_string(line['text'])} show"
            )
    elif item.kind == "shape":
        fill = _ps_color(payload.get("fill"))
        stroke = _ps_color(payload.get("stroke"))
        stroke_width = float(payload.get("stroke_width") or 0) * to_pt
        shape_type = payload.get("shape_type")
        if shape_type == "line":
            lines.append(stroke or fill or "0 0 0 setrgbcolor")
            lines.append(f"{_fmt(max(stroke_width, 0.25))} setlinewidth")
            lines.append(f"newpath {_fmt(-half_w)} {_fmt(half_h)} moveto {_fmt(half_w)} {_fmt(-half_h)} lineto stroke")
        else:
            if shape_type == "circle":
                path = f"newpath 0 0 {_fmt(min(half_w, half_h))} 0 360 arc closepath"
            else:
                if payload.get("corner_radius"):
                    lines.append("% rounded corners approximated")
                path = (
                    f"newpath {_fmt(-half_w)} {_fmt(-half_h)} moveto {_fmt(width)} 0 rlineto "
                    f"0 {_fmt(height)} rlineto {_fmt(-width)} 0 rlineto closepath"
                )
            if fill:
                lines.append(f"{fill} {path} fill")
            if stroke and stroke_width > 0:
                lines.append(f"{stroke} {_fmt(stroke_width)} setlinewidth {path} stroke")
    lines.append("grestore")
    return lines


def card_to_eps(card: Any) -> str:
    """Describe ``card`` as EPS; text and shapes only, images are omitted."""

    to_pt = POINTS_PER_INCH / float(card.dpi)
    width_pt = card.image.width * to_pt
    height_pt = card.image.height * to_pt
    header = [
        "%!PS-Adobe-3.0 EPSF-3.0",
        f"%%BoundingBox: 0 0 {int(round(width_pt))} {int(round(height_pt))}",
        f"%%HiResBoundingBox: 0 0 {width_pt:.3f} {height_pt:.3f}",
        f"%%Title: {card.label}",
        f"%%Creator: {CREATOR}",
        "%%Fidelity: partial",
        "%%EndComments",
        # Element coordinates below are y-down from the top edge.
        f"0 {_fmt(height_pt)} translate",
    ]
    body: List[str] = []
    for item in card.display_list:
        body.extend(_eps_item(item, to_pt))
    return "\n".join(header + body + ["showpage", "%%EOF", ""])


def export_vector(cards: Sequence[Any], config: ExportConfig) -> Artifact:
    if config.vector_fidelity != "partial":
        raise UnsupportedFormatError(
            "Full-fidelity vector export is not supported; images and QR codes are only available as raster."
        )
    if not cards:
        raise ExportError("No rendered cards to export.")

    names = unique_filenames(card_filename(card.label, "eps") for card in cards)
    artifacts = [
        Artifact(name, card_to_eps(card).encode("latin-1", errors="replace"), MEDIA_TYPES["eps"], "partial")
        for name, card in zip(names, cards)
    ]
    if len(artifacts) == 1:
        return artifacts[0]
    return zip_artifacts(artifacts, "ID_Cards_Vector.zip")


# ---------------------------------------------------------------------------
# Structured snapshot
# ---------------------------------------------------------------------------


def snapshot_payload(
    template: Template,
    config: Optional[ExportConfig] = None,
    parameters: Optional[Mapping[str, Any]] = None,
    exported_at: Optional[_dt.datetime] = None,
) -> Dict[str, Any]:
    params: Dict[str, Any] = config.to_dict() if config is not None else {}
    params.update(parameters or {})
    moment = exported_at or _dt.datetime.now(_dt.timezone.utc)
    return {
        "template": template_to_dict(template),
        "parameters": params,
        "exportedAt": moment.isoformat(),
        "exportVersion": EXPORT_VERSION,
    }


def export_snapshot(
    template: Template,
    config: Optional[ExportConfig] = None,
    parameters: Optional[Mapping[str, Any]] = None,
    exported_at: Optional[_dt.datetime] = None,
) -> Artifact:
    payload = snapshot_payload(template, config, parameters, exported_at)
    data = json.dumps(payload, indent=2, ensure_ascii=False).encode("utf-8")
    filename = f"{sanitize_filename_component(template.name, 'Template')}_Template.json"
    return Artifact(filename, data, MEDIA_TYPES["json"])


def load_snapshot(text: Union[str, bytes]) -> Tuple[Template, Dict[str, Any]]:
    """Parse a snapshot back into ``(template, parameters)``."""

    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValidationError(f"Snapshot is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict) or not isinstance(payload.get("template"), dict):
        raise ValidationError("Snapshot has no template object.")
    version = str(payload.get("exportVersion", ""))
    if version.split(".")[0] != EXPORT_VERSION.split(".")[0]:
        raise ValidationError(f"Unsupported snapshot version {version!r}.")

    template = template_from_dict(payload["template"])
    params = dict(payload.get("parameters") or {})
    params["exportedAt"] = payload.get("exportedAt")
    return template, params


# ---------------------------------------------------------------------------
# Dispatch and output
# ---------------------------------------------------------------------------


def export(
    config: ExportConfig,
    *,
    template: Template,
    cards: Sequence[Any] = (),
    sheets: Sequence[PrintSheet] = (),
    parameters: Optional[Mapping[str, Any]] = None,
) -> Artifact:
    """Build the artifact for ``config.format``."""

    if config.format == "raster":
        return export_raster_set(cards, config, sheets)
    if config.format == "document":
        return export_document(sheets, config, title=template.name)
    if config.format == "vector":
        return export_vector(cards, config)
    if config.format == "snapshot":
        return export_snapshot(template, config, parameters)
    raise UnsupportedFormatError(f"Unsupported export format {config.format!r}")


def write_artifact(artifact: Artifact, directory: Union[str, Path]) -> Path:
    try:
        path = atomic_write_bytes(Path(directory) / artifact.filename, artifact.data)
    except OSError as exc:
        raise ExportError(f"Could not write {artifact.filename}: {exc}") from exc
    logger.info("Wrote %s (%d bytes)", path, artifact.size)
    return path
