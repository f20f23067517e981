import json
import sys
import tempfile
import unittest
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from card_errors import ValidationError
from export_config import ExportConfig, load_export_config


class ExportConfigTests(unittest.TestCase):
    def test_defaults_follow_print_dialog(self):
        config = ExportConfig()

        self.assertEqual((config.paper_size, config.orientation), ("A4", "portrait"))
        self.assertEqual(config.cards_per_page, 2)
        self.assertEqual((config.margin_mm, config.bleed_mm), (10.0, 3.0))
        self.assertTrue(config.include_cut_marks)
        self.assertTrue(config.include_registration_marks)
        self.assertEqual(config.jpeg_quality, 92)

    def test_camel_case_mapping(self):
        config = ExportConfig.from_mapping(
            {
                "format": "pdf",
                "paperSize": "a3",
                "orientation": "Landscape",
                "cardsPerPage": "6",
                "margin": 5,
                "bleed": 2,
                "includeCutMarks": "false",
                "quality": "maximum",
                "colorSpace": "cmyk",
            }
        )

        self.assertEqual(config.format, "document")
        self.assertEqual(config.paper_size, "A3")
        self.assertEqual(config.orientation, "landscape")
        self.assertEqual(config.cards_per_page, 6)
        self.assertEqual((config.margin_mm, config.bleed_mm), (5.0, 2.0))
        self.assertFalse(config.include_cut_marks)
        self.assertEqual(config.jpeg_quality, 100)
        self.assertEqual(config.color_space, "CMYK")

    def test_fractional_quality(self):
        self.assertEqual(ExportConfig.from_mapping({"quality": 0.85}).jpeg_quality, 85)
        self.assertEqual(ExportConfig.from_mapping({"quality": 70}).jpeg_quality, 70)
        self.assertEqual(ExportConfig.from_mapping({"quality": 1}).jpeg_quality, 100)
        self.assertEqual(ExportConfig.from_mapping({"quality": 1.0}).jpeg_quality, 100)

    def test_non_finite_quality_rejected(self):
        for value in (float("nan"), float("inf"), "nan"):
            with self.subTest(value=value):
                with self.assertRaises(ValidationError):
                    ExportConfig.from_mapping({"quality": value})
        with self.assertRaises(ValidationError):
            ExportConfig(quality=float("nan"))

    def test_infinite_worker_count_rejected(self):
        with self.assertRaises(ValidationError):
            ExportConfig.from_mapping({"workers": float("inf")})

    def test_format_alias_sets_image_format(self):
        config = ExportConfig.from_mapping({"format": "jpeg"})

        self.assertEqual((config.format, config.image_format, config.image_extension), ("raster", "jpeg", "jpg"))

    def test_invalid_values_rejected(self):
        for bad in (
            {"format": "tiff"},
            {"dpi": 0},
            {"paperSize": "B5"},
            {"cardsPerPage": 0},
            {"bleed": -1},
            {"quality": "ultra"},
            {"quality": 101},
            {"colorSpace": "LAB"},
            {"workers": 0},
            {"dpi": "high"},
        ):
            with self.subTest(bad=bad):
                with self.assertRaises(ValidationError):
                    ExportConfig.from_mapping(bad)

    def test_overrides_ignore_none(self):
        config = ExportConfig().with_overrides(format="eps", dpi=None, workers=2)

        self.assertEqual(config.format, "vector")
        self.assertEqual(config.dpi, 300.0)
        self.assertEqual(config.workers, 2)

    def test_to_dict_uses_camel_case(self):
        data = ExportConfig().to_dict()

        self.assertEqual(data["paperSize"], "A4")
        self.assertEqual(data["cardsPerPage"], 2)
        self.assertEqual(ExportConfig.from_mapping(data), ExportConfig())

    def test_load_from_file(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp, "export.json")
            path.write_text(json.dumps({"format": "png", "dpi": 600}), encoding="utf-8")

            config = load_export_config(path)

        self.assertEqual((config.format, config.dpi), ("raster", 600.0))

    def test_load_rejects_bad_json(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp, "export.json")
            path.write_text("[1, 2", encoding="utf-8")

            with self.assertRaises(ValidationError):
                load_export_config(path)


if __name__ == "__main__":
    unittest.main()
