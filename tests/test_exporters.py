import datetime
import io
import json
import os
import sys
import tempfile
import unittest
import zipfile
from pathlib import Path

import fitz
from PIL import Image

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from card_errors import UnsupportedFormatError, ValidationError
from export_config import ExportConfig
from exporters import (
    EXPORT_VERSION,
    ZIP_FILENAME,
    card_to_eps,
    export,
    export_document,
    export_raster_set,
    export_snapshot,
    export_vector,
    load_snapshot,
    proof_images,
    write_artifact,
)
from id_card_maker import compose_card
from print_layout import LayoutSettings, layout_sheets
from template_model import template_from_dict


def _template():
    return template_from_dict(
        {
            "id": "tpl-export",
            "name": "Export Test",
            "canvas": {
                "widthPx": 337,
                "heightPx": 213,
                "widthInches": 3.37,
                "heightInches": 2.13,
                "dpi": 100,
                "backgroundColor": "#EEF4FF",
            },
            "elements": [
                {"id": "band", "type": "shape", "width": 337, "height": 30, "fillColor": "#003366"},
                {"id": "ring", "type": "shape", "shapeType": "circle", "x": 280, "y": 150,
                 "width": 40, "height": 40, "strokeColor": "#000000", "strokeWidth": 1},
                {"id": "name", "type": "dynamic_field", "fieldName": "student_name",
                 "x": 10, "y": 60, "width": 200, "height": 30, "fontSize": 16},
                {"id": "qr", "type": "qr", "x": 250, "y": 60, "width": 70, "height": 70},
            ],
        }
    )


def _cards(names):
    template = _template()
    return [
        compose_card(template, {"student_name": name, "student_id": f"S{index}"}).card
        for index, name in enumerate(names)
    ]


class SnapshotTests(unittest.TestCase):
    def test_round_trip_matches_element_for_element(self):
        template = _template()
        config = ExportConfig(format="snapshot", dpi=600)

        artifact = export_snapshot(template, config, {"studentCount": 3})
        loaded, params = load_snapshot(artifact.data)

        self.assertEqual(loaded, template)
        self.assertEqual(params["dpi"], 600)
        self.assertEqual(params["studentCount"], 3)
        self.assertIn("exportedAt", params)
        self.assertEqual(artifact.filename, "Export_Test_Template.json")
        self.assertEqual(artifact.media_type, "application/json")

    def test_snapshot_records_version_and_timestamp(self):
        moment = datetime.datetime(2024, 5, 1, 12, 0, tzinfo=datetime.timezone.utc)

        payload = json.loads(export_snapshot(_template(), exported_at=moment).data)

        self.assertEqual(payload["exportVersion"], EXPORT_VERSION)
        self.assertEqual(payload["exportedAt"], "2024-05-01T12:00:00+00:00")

    def test_rejects_foreign_version(self):
        data = json.loads(export_snapshot(_template()).data)
        data["exportVersion"] = "9.0"

        with self.assertRaises(ValidationError):
            load_snapshot(json.dumps(data))

    def test_rejects_invalid_json(self):
        with self.assertRaises(ValidationError):
            load_snapshot("{not json")


class RasterTests(unittest.TestCase):
    def test_single_card_is_a_plain_png(self):
        card = _cards(["Asha Rao"])[0]

        artifact = export_raster_set([card], ExportConfig(format="raster"))

        self.assertEqual(artifact.filename, "Asha_Rao_ID_Card.png")
        self.assertEqual(artifact.media_type, "image/png")
        self.assertEqual(Image.open(io.BytesIO(artifact.data)).size, card.image.size)

    def test_many_cards_are_zipped_with_unique_names(self):
        cards = _cards(["Asha Rao", "Asha Rao", "Ravi Kumar"])

        artifact = export_raster_set(cards, ExportConfig(format="raster"))

        self.assertEqual(artifact.filename, ZIP_FILENAME)
        with zipfile.ZipFile(io.BytesIO(artifact.data)) as archive:
            self.assertEqual(
                archive.namelist(),
                ["Asha_Rao_ID_Card.png", "Asha_Rao_ID_Card_2.png", "Ravi_Kumar_ID_Card.png"],
            )

    def test_jpeg_output(self):
        artifact = export_raster_set(_cards(["Asha Rao"]), ExportConfig.from_mapping({"format": "jpg", "quality": "low"}))

        self.assertEqual(artifact.filename, "Asha_Rao_ID_Card.jpg")
        self.assertEqual(Image.open(io.BytesIO(artifact.data)).format, "JPEG")

    def test_per_sheet_raster(self):
        config = ExportConfig(format="raster", raster_per_sheet=True, cards_per_page=4, dpi=30)
        cards = _cards(["A", "B", "C", "D", "E"])
        sheets = layout_sheets(cards, LayoutSettings.from_config(config))

        artifact = export_raster_set(cards, config, sheets)

        with zipfile.ZipFile(io.BytesIO(artifact.data)) as archive:
            self.assertEqual(archive.namelist(), ["Sheet_001.png", "Sheet_002.png"])


class DocumentTests(unittest.TestCase):
    def _export(self, count, **overrides):
        config = ExportConfig(format="document", cards_per_page=4, dpi=72, **overrides)
        cards = _cards([f"Student {index}" for index in range(count)])
        sheets = layout_sheets(cards, LayoutSettings.from_config(config))
        return sheets, export_document(sheets, config, title="Sunrise Cards")

    def test_one_page_per_sheet(self):
        sheets, artifact = self._export(10)

        with fitz.open(stream=artifact.data, filetype="pdf") as doc:
            self.assertEqual(doc.page_count, 3)
            self.assertAlmostEqual(doc[0].rect.width, 210 / 25.4 * 72, places=1)
            self.assertAlmostEqual(doc[0].rect.height, 297 / 25.4 * 72, places=1)
            self.assertEqual(doc.metadata["title"], "Sunrise Cards")
        self.assertEqual(artifact.filename, "Sunrise_Cards_Print.pdf")
        self.assertEqual(len(sheets), 3)

    def test_marks_are_vector_drawings(self):
        _, artifact = self._export(4)

        with fitz.open(stream=artifact.data, filetype="pdf") as doc:
            drawings = doc[0].get_drawings()
            self.assertEqual(len(doc[0].get_images()), 1)
        self.assertGreaterEqual(len(drawings), 4 * 8)

    def test_without_marks_page_has_no_drawings(self):
        _, artifact = self._export(4, include_cut_marks=False, include_registration_marks=False)

        with fitz.open(stream=artifact.data, filetype="pdf") as doc:
            self.assertEqual(doc[0].get_drawings(), [])

    def test_colour_space_is_recorded(self):
        _, artifact = self._export(1, color_space="CMYK")

        with fitz.open(stream=artifact.data, filetype="pdf") as doc:
            self.assertIn("CMYK", doc.metadata["subject"])

    def test_proof_images(self):
        _, artifact = self._export(5)

        images = proof_images(artifact.data, dpi=20)

        self.assertEqual(len(images), 2)
        self.assertEqual(images[0].mode, "RGB")


class VectorTests(unittest.TestCase):
    def test_eps_is_partial_and_keeps_text(self):
        card = _cards(["Ravi Kumar"])[0]

        eps = card_to_eps(card)

        self.assertTrue(eps.startswith("%!PS-Adobe-3.0 EPSF-3.0"))
        self.assertIn("%%Fidelity: partial", eps)
        self.assertIn("%%BoundingBox: 0 0 243 153", eps)
        self.assertIn("(Ravi Kumar) show", eps)
        self.assertIn("% qr content omitted", eps)
        self.assertIn("arc", eps)
        self.assertTrue(eps.rstrip().endswith("%%EOF"))

    def test_eps_escapes_parentheses(self):
        card = _cards(["Asha (Jr)"])[0]

        self.assertIn("(Asha \\(Jr\\)) show", card_to_eps(card))

    def test_vector_artifact_is_flagged_partial(self):
        artifact = export_vector(_cards(["Asha Rao"]), ExportConfig(format="vector"))

        self.assertEqual(artifact.fidelity, "partial")
        self.assertEqual(artifact.filename, "Asha_Rao_ID_Card.eps")

    def test_full_fidelity_is_unsupported(self):
        with self.assertRaises(UnsupportedFormatError):
            export_vector(_cards(["Asha Rao"]), ExportConfig(format="vector", vector_fidelity="full"))


class DispatchTests(unittest.TestCase):
    def test_dispatch_by_format(self):
        template = _template()
        cards = _cards(["Asha Rao"])

        self.assertEqual(export(ExportConfig(format="snapshot"), template=template).media_type, "application/json")
        self.assertEqual(export(ExportConfig(format="raster"), template=template, cards=cards).media_type, "image/png")
        self.assertEqual(
            export(ExportConfig(format="vector"), template=template, cards=cards).media_type,
            "application/postscript",
        )


class WriteArtifactTests(unittest.TestCase):
    def test_writes_without_leftover_temp_files(self):
        artifact = export_snapshot(_template())
        with tempfile.TemporaryDirectory() as tmp:
            path = write_artifact(artifact, Path(tmp) / "out")

            self.assertEqual(path.read_bytes(), artifact.data)
            self.assertEqual(os.listdir(Path(tmp) / "out"), [artifact.filename])


if __name__ == "__main__":
    unittest.main()
