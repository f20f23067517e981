"""Compose personalised ID cards from templates and run print export jobs."""
from __future__ import annotations

import argparse
import json
import logging
import re
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from io import BytesIO
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, NamedTuple, Optional, Sequence, Tuple

import pandas as pd
from PIL import Image

from asset_loader import AssetLoader
from card_errors import (
    AssetLoadError,
    CardEngineError,
    ExportError,
    JobCancelledError,
    UnsupportedFormatError,
    ValidationError,
)
from dynamic_fields import resolve_text
from element_renderer import (
    HIDDEN,
    SKIPPED,
    DisplayItem,
    ElementOutcome,
    RenderContext,
    fit_image,
    parse_color,
    render_element,
    summarise_outcomes,
)
from export_config import FORMATS, ExportConfig, load_export_config
from exporters import Artifact, export, load_snapshot, write_artifact
from print_layout import LayoutSettings, layout_sheets
from template_model import Template, paint_order, template_from_dict, validate_template
from util import configure_logging, normalise_string

logger = logging.getLogger(__name__)

DEFAULT_OUTPUT_ROOT = Path("ID Cards")
DEFAULT_BACKGROUND = "#FFFFFF"


@dataclass(frozen=True)
class RenderedCard:
    student_id: str
    label: str
    template_id: str
    template_version: int
    dpi: float
    image: Image.Image = field(compare=False, repr=False)
    display_list: Tuple[DisplayItem, ...] = field(default=(), compare=False, repr=False)

    @property
    def size(self) -> Tuple[int, int]:
        return self.image.size

    def to_png_bytes(self) -> bytes:
        buffer = BytesIO()
        self.image.save(buffer, format="PNG", dpi=(self.dpi, self.dpi))
        return buffer.getvalue()


class CardResult(NamedTuple):
    card: RenderedCard
    outcomes: Tuple[ElementOutcome, ...]

    @property
    def skipped(self) -> List[ElementOutcome]:
        return [outcome for outcome in self.outcomes if outcome.status == SKIPPED]


@dataclass
class JobSummary:
    succeeded: List[str] = field(default_factory=list)
    failed: List[Dict[str, str]] = field(default_factory=list)
    skipped_elements: Dict[str, List[Dict[str, str]]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "succeeded": list(self.succeeded),
            "failed": [dict(item) for item in self.failed],
            "skippedElements": {key: list(value) for key, value in self.skipped_elements.items()},
        }


class BatchResult(NamedTuple):
    results: List[Optional[CardResult]]
    summary: JobSummary

    @property
    def cards(self) -> List[RenderedCard]:
        return [result.card for result in self.results if result is not None]


class ExportJobResult(NamedTuple):
    artifacts: List[Artifact]
    summary: JobSummary
    paths: Sequence[Path] = ()


def student_identifier(student: Mapping[str, Any], index: Optional[int] = None) -> str:
    value = resolve_text("student_id", student)
    if value:
        return value
    return f"row-{index + 1}" if index is not None else ""


def student_label(student: Mapping[str, Any]) -> str:
    """Human readable label for filenames: the student's name, else their id."""

    return resolve_text("student_name", student) or resolve_text("student_id", student) or "Student"


def compose_card(
    template: Template,
    student: Mapping[str, Any],
    school: Optional[Mapping[str, Any]] = None,
    context: Optional[RenderContext] = None,
) -> CardResult:
    """Render one card for ``student``.

    The card is drawn at ``context.output_dpi`` (the canvas dpi when unset);
    every coordinate and size is multiplied by ``output_dpi / canvas.dpi``.
    Problems with single elements are reported in the outcomes; only a
    :class:`RenderError` aborts the card.
    """

    context = (context or RenderContext()).for_record(student, school)
    canvas = template.canvas
    output_dpi = context.output_dpi or canvas.dpi
    context = context.scaled(output_dpi / canvas.dpi)
    size = (
        max(1, int(round(canvas.width_px * context.dpi_scale))),
        max(1, int(round(canvas.height_px * context.dpi_scale))),
    )

    background = canvas.background_color or DEFAULT_BACKGROUND
    surface = Image.new("RGBA", size, parse_color(background, (255, 255, 255, 255)))
    outcomes: List[ElementOutcome] = []
    display: List[DisplayItem] = [
        DisplayItem(
            "background",
            "background",
            (0.0, 0.0, float(size[0]), float(size[1])),
            0.0,
            1.0,
            {"color": background, "image": canvas.background_image},
        )
    ]

    if canvas.background_image:
        try:
            image = context.assets.load(canvas.background_image)
        except AssetLoadError as exc:
            logger.warning("Skipping background image: %s", exc)
            outcomes.append(ElementOutcome("background", SKIPPED, str(exc)))
        else:
            surface.alpha_composite(fit_image(image, size, "fill"))

    for element in paint_order(template):
        if not element.visible or element.locked:
            reason = "hidden" if not element.visible else "locked"
            outcomes.append(ElementOutcome(element.id, HIDDEN, reason))
            continue
        outcome = render_element(element, surface, context)
        outcomes.append(outcome)
        if outcome.display is not None:
            display.append(outcome.display)

    card = RenderedCard(
        student_id=student_identifier(context.student),
        label=student_label(context.student),
        template_id=template.id,
        template_version=template.version,
        dpi=output_dpi,
        image=surface.convert("RGB"),
        display_list=tuple(display),
    )
    return CardResult(card, tuple(outcomes))


def _check_cancelled(cancel_event: Optional[threading.Event], where: str) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise JobCancelledError(f"Export job cancelled {where}.")


def generate_cards(
    template: Template,
    students: Iterable[Mapping[str, Any]],
    school: Optional[Mapping[str, Any]] = None,
    config: Optional[ExportConfig] = None,
    *,
    workers: Optional[int] = None,
    cancel_event: Optional[threading.Event] = None,
    context: Optional[RenderContext] = None,
) -> BatchResult:
    """Render a card per student on a bounded thread pool.

    ``results[i]`` belongs to ``students[i]`` (``None`` when that card
    failed); failures never stop the rest of the batch.
    """

    config = config or ExportConfig()
    validate_template(template)
    records = list(students)
    if context is None:
        context = RenderContext(assets=AssetLoader(timeout=config.asset_timeout), output_dpi=config.dpi)

    def _compose(record: Mapping[str, Any]) -> CardResult:
        _check_cancelled(cancel_event, "before rendering a card")
        return compose_card(template, record, school, context)

    results: List[Optional[CardResult]] = [None] * len(records)
    summary = JobSummary()
    max_workers = max(1, min(workers or config.workers, len(records) or 1))

    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        futures = [executor.submit(_compose, record) for record in records]
        try:
            for index, (record, future) in enumerate(zip(records, futures)):
                _check_cancelled(cancel_event, "between cards")
                student_id = student_identifier(record, index)
                label = student_label(record)
                try:
                    result = future.result()
                except JobCancelledError:
                    raise
                except Exception as exc:
                    logger.error("❌ %s: %s", label, exc)
                    summary.failed.append({"studentId": student_id, "reason": str(exc)})
                    continue

                results[index] = result
                summary.succeeded.append(student_id)
                if result.skipped:
                    summary.skipped_elements[student_id] = [
                        {"elementId": outcome.element_id, "reason": outcome.reason} for outcome in result.skipped
                    ]
                logger.info("✅ %s %s", label, summarise_outcomes(list(result.outcomes)))
        except JobCancelledError:
            executor.shutdown(wait=True, cancel_futures=True)
            raise

    return BatchResult(results, summary)


def _needs_sheets(config: ExportConfig) -> bool:
    return config.format == "document" or (config.format == "raster" and config.raster_per_sheet)


def run_export_job(
    template: Template,
    students: Iterable[Mapping[str, Any]],
    school: Optional[Mapping[str, Any]] = None,
    config: Optional[ExportConfig] = None,
    output_dir: Optional[Path] = None,
    cancel_event: Optional[threading.Event] = None,
    *,
    workers: Optional[int] = None,
    context: Optional[RenderContext] = None,
) -> ExportJobResult:
    """Render, lay out and export cards; write the artifact when ``output_dir`` is given."""

    config = config or ExportConfig()
    validate_template(template)
    if config.format == "vector" and config.vector_fidelity == "full":
        raise UnsupportedFormatError("Full-fidelity vector export is not supported.")

    records = list(students)
    parameters = {"studentCount": len(records)}
    if config.format == "snapshot":
        summary = JobSummary()
        artifact = export(config, template=template, parameters=parameters)
    else:
        batch = generate_cards(
            template,
            records,
            school,
            config,
            workers=workers,
            cancel_event=cancel_event,
            context=context,
        )
        summary = batch.summary
        cards = batch.cards
        if not cards:
            raise ExportError(f"No cards rendered; {len(summary.failed)} record(s) failed.")
        sheets = layout_sheets(cards, LayoutSettings.from_config(config)) if _needs_sheets(config) else []
        artifact = export(config, template=template, cards=cards, sheets=sheets, parameters=parameters)

    _check_cancelled(cancel_event, "before writing output")
    paths = [write_artifact(artifact, output_dir)] if output_dir is not None else []
    return ExportJobResult([artifact], summary, paths)


def _load_tabular_file(path: Path, **kwargs) -> pd.DataFrame:
    """Load a spreadsheet or CSV file based on its extension."""
    if path.suffix.lower() == ".csv":
        return pd.read_csv(path, **kwargs)
    return pd.read_excel(path, **kwargs)


def _column_key(column: Any) -> str:
    """'Student Name' -> 'student_name'."""
    return re.sub(r"\W+", "_", normalise_string(column).lower()).strip("_")


def load_records(path: Path) -> List[Dict[str, Any]]:
    try:
        df = _load_tabular_file(path, header=0)
    except (OSError, ValueError) as exc:
        raise ValidationError(f"Failed to read '{path}': {exc}") from exc

    df.columns = [_column_key(column) for column in df.columns]
    records = []
    for row in df.to_dict(orient="records"):
        records.append({key: (None if pd.isna(value) else value) for key, value in row.items() if key})
    return records


def _read_json(path: Path) -> Any:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise ValidationError(f"Cannot read {path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise ValidationError(f"{path} is not valid JSON: {exc}") from exc


def load_template(path: Path) -> Template:
    """Load a template file or a template snapshot."""

    data = _read_json(path)
    if not isinstance(data, dict):
        raise ValidationError(f"{path} must contain a JSON object.")
    if "exportVersion" in data and "template" in data:
        template, _ = load_snapshot(path.read_text(encoding="utf-8"))
        return template
    return template_from_dict(data)


def load_school(path: Optional[Path]) -> Dict[str, Any]:
    if path is None:
        return {}
    data = _read_json(path)
    if not isinstance(data, dict):
        raise ValidationError(f"{path} must contain a JSON object.")
    return data


def _parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Render personalised ID cards and export print-ready files.")
    parser.add_argument("--template", type=Path, required=True, help="Template JSON file (or template snapshot)")
    parser.add_argument("--students", type=Path, help="CSV or Excel sheet with one student per row")
    parser.add_argument("--school", type=Path, help="JSON file with the school record")
    parser.add_argument("--config", type=Path, help="JSON export configuration")
    parser.add_argument("--format", help=f"Output format: {', '.join(FORMATS)} (or png, jpg, pdf, eps, json)")
    parser.add_argument("--dpi", type=float, help="Output resolution in dots per inch")
    parser.add_argument(
        "--output-dir",
        type=Path,
        default=DEFAULT_OUTPUT_ROOT,
        help="Directory where the exported file will be written",
    )
    parser.add_argument("--workers", type=int, help="Number of cards rendered in parallel")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _parse_args(argv)
    configure_logging(args.verbose)

    try:
        config = load_export_config(args.config) if args.config else ExportConfig()
        config = config.with_overrides(format=args.format, dpi=args.dpi, workers=args.workers)
        if args.students is None and config.format != "snapshot":
            logger.error("--students is required for %s export", config.format)
            return 2
        template = load_template(args.template)
        students = load_records(args.students) if args.students is not None else []
        result = run_export_job(
            template,
            students,
            load_school(args.school),
            config,
            output_dir=args.output_dir,
        )
    except CardEngineError as exc:
        logger.error("%s", exc)
        return 1

    print(json.dumps(result.summary.to_dict(), indent=2))
    for path in result.paths:
        print(f"Saved {path}")
    print(f"Generated {len(result.summary.succeeded)} ID card(s)")
    return 1 if result.summary.failed else 0


if __name__ == "__main__":
    raise SystemExit(main())
