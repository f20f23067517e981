import base64
import sys
import unittest
from io import BytesIO
from pathlib import Path

from PIL import Image

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import element_renderer
from card_errors import RenderError
from element_renderer import (
    RENDERED,
    SKIPPED,
    RenderContext,
    fit_image,
    parse_color,
    render_element,
)
from template_model import (
    ELEMENT_CLASSES,
    DynamicFieldElement,
    ImageElement,
    QrElement,
    ShapeElement,
    TextElement,
    TextStyle,
)

WHITE = (255, 255, 255, 255)


def _surface(size=(300, 200)):
    return Image.new("RGBA", size, WHITE)


def _data_uri(size, color):
    buffer = BytesIO()
    Image.new("RGB", size, color).save(buffer, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode("ascii")


def _has_ink(image, box):
    region = image.crop(box).convert("L")
    return min(region.getdata()) < 128


class RegistryTests(unittest.TestCase):
    def test_every_element_class_has_a_renderer(self):
        for cls in ELEMENT_CLASSES.values():
            self.assertIn(cls, element_renderer._RENDERERS)


class ShapeTests(unittest.TestCase):
    def test_rectangle_fill(self):
        surface = _surface()
        element = ShapeElement(id="r", x=10, y=10, width=50, height=30, fill_color="#FF0000")

        outcome = render_element(element, surface, RenderContext())

        self.assertEqual(outcome.status, RENDERED)
        self.assertEqual(surface.getpixel((30, 20)), (255, 0, 0, 255))
        self.assertEqual(surface.getpixel((70, 20)), WHITE)

    def test_circle_is_inscribed(self):
        surface = _surface()
        element = ShapeElement(id="c", shape_type="circle", x=0, y=0, width=100, height=50, fill_color="#0000FF")

        render_element(element, surface, RenderContext())

        self.assertEqual(surface.getpixel((50, 25)), (0, 0, 255, 255))
        self.assertEqual(surface.getpixel((5, 25)), WHITE)

    def test_horizontal_line_with_zero_height(self):
        surface = _surface()
        element = ShapeElement(id="l", shape_type="line", x=10, y=50, width=100, height=0,
                               stroke_color="#000000", stroke_width=3)

        outcome = render_element(element, surface, RenderContext())

        self.assertEqual(outcome.status, RENDERED)
        self.assertTrue(_has_ink(surface, (20, 48, 100, 53)))

    def test_opacity_blends_with_background(self):
        surface = _surface()
        element = ShapeElement(id="r", width=40, height=40, fill_color="#FF0000", opacity=0.5)

        render_element(element, surface, RenderContext())

        red, green, blue, _ = surface.getpixel((20, 20))
        self.assertEqual(red, 255)
        self.assertTrue(120 <= green <= 135)
        self.assertTrue(120 <= blue <= 135)

    def test_rotation_turns_about_centre(self):
        surface = _surface()
        element = ShapeElement(id="bar", x=50, y=90, width=100, height=20, rotation=90, fill_color="#000000")

        render_element(element, surface, RenderContext())

        self.assertEqual(surface.getpixel((100, 60))[:3], (0, 0, 0))
        self.assertEqual(surface.getpixel((60, 100)), WHITE)

    def test_invalid_colour_raises_render_error(self):
        element = ShapeElement(id="r", width=10, height=10, fill_color="not-a-colour")

        with self.assertRaises(RenderError):
            render_element(element, _surface(), RenderContext())

    def test_bounding_box_scales_linearly(self):
        element = ShapeElement(id="r", x=12.5, y=7, width=33, height=21, fill_color="#00FF00")

        base = render_element(element, _surface((600, 400)), RenderContext(dpi_scale=1.0)).bbox
        for scale in (0.5, 2.0, 2.37):
            scaled = render_element(element, _surface((600, 400)), RenderContext(dpi_scale=scale)).bbox
            for original, value in zip(base, scaled):
                self.assertAlmostEqual(value, original * scale, places=6)

    def test_empty_box_is_skipped(self):
        element = ShapeElement(id="r", width=0, height=0, fill_color="#000000")

        outcome = render_element(element, _surface(), RenderContext())

        self.assertEqual(outcome.status, SKIPPED)


class TextTests(unittest.TestCase):
    def test_text_is_drawn_inside_its_box(self):
        surface = _surface()
        element = TextElement(id="t", x=20, y=20, width=200, height=40, text="Ravi Kumar",
                              style=TextStyle(font_size=20))

        outcome = render_element(element, surface, RenderContext())

        self.assertEqual(outcome.status, RENDERED)
        self.assertTrue(_has_ink(surface, (20, 20, 220, 60)))
        self.assertFalse(_has_ink(surface, (0, 100, 300, 200)))
        self.assertEqual(outcome.display.payload["text"], "Ravi Kumar")

    def test_placeholders_resolve_from_context(self):
        surface = _surface()
        element = TextElement(id="t", width=200, height=40, text="{{student_name}}")
        context = RenderContext().for_record({"student_name": "Asha Rao"})

        outcome = render_element(element, surface, context)

        self.assertEqual(outcome.display.payload["text"], "Asha Rao")

    def test_right_alignment_hugs_right_edge(self):
        surface = _surface()
        element = TextElement(id="t", x=0, y=0, width=300, height=50, text="ID",
                              style=TextStyle(font_size=24, text_align="right"))

        render_element(element, surface, RenderContext())

        self.assertTrue(_has_ink(surface, (240, 0, 300, 50)))
        self.assertFalse(_has_ink(surface, (0, 0, 150, 50)))

    def test_uppercase_transform(self):
        element = TextElement(id="t", width=200, height=40, text="asha",
                              style=TextStyle(text_transform="uppercase"))

        outcome = render_element(element, _surface(), RenderContext())

        self.assertEqual(outcome.display.payload["text"], "ASHA")


class ImageTests(unittest.TestCase):
    def test_fit_modes(self):
        wide = Image.new("RGB", (200, 100), (255, 0, 0))

        filled = fit_image(wide, (50, 50), "fill")
        contained = fit_image(wide, (50, 50), "contain")
        covered = fit_image(wide, (50, 50), "cover")

        self.assertEqual(filled.size, (50, 50))
        self.assertEqual(filled.getpixel((25, 2))[3], 255)
        self.assertEqual(contained.getpixel((25, 2))[3], 0)
        self.assertGreater(contained.getpixel((25, 25))[0], 240)
        self.assertEqual(covered.getpixel((25, 2))[3], 255)

    def test_image_element_renders_asset(self):
        surface = _surface()
        element = ImageElement(id="i", x=10, y=10, width=40, height=40,
                               image_url=_data_uri((10, 10), (0, 128, 0)), image_fit="fill")

        outcome = render_element(element, surface, RenderContext())

        self.assertEqual(outcome.status, RENDERED)
        red, green, blue, _ = surface.getpixel((30, 30))
        self.assertTrue(120 <= green <= 136 and red < 10 and blue < 10)

    def test_missing_asset_skips_only_that_element(self):
        surface = _surface()
        element = ImageElement(id="photo", width=40, height=40, image_url="/nonexistent/photo.png")

        with self.assertLogs("element_renderer", level="WARNING"):
            outcome = render_element(element, surface, RenderContext())

        self.assertEqual(outcome.status, SKIPPED)
        self.assertIn("photo.png", outcome.reason)
        self.assertEqual(surface.getpixel((20, 20)), WHITE)


class QrTests(unittest.TestCase):
    def test_qr_defaults_to_student_id_and_is_centred(self):
        surface = _surface()
        element = QrElement(id="q", x=0, y=0, width=200, height=100)
        context = RenderContext().for_record({"student_id": "S-001"})

        outcome = render_element(element, surface, context)

        self.assertEqual(outcome.status, RENDERED)
        self.assertEqual(outcome.display.payload["data"], "S-001")
        self.assertTrue(_has_ink(surface, (50, 0, 150, 100)))
        self.assertFalse(_has_ink(surface, (0, 0, 49, 100)))
        self.assertFalse(_has_ink(surface, (151, 0, 200, 100)))

    def test_modules_are_whole_pixels(self):
        surface = _surface()
        element = QrElement(id="q", x=0, y=0, width=60, height=60, data="S-001")

        outcome = render_element(element, surface, RenderContext())

        # 25 modules including the quiet zone: two pixels each, centred in the box.
        self.assertEqual(outcome.status, RENDERED)
        self.assertTrue(_has_ink(surface, (9, 9, 51, 51)))
        self.assertFalse(_has_ink(surface, (0, 0, 60, 5)))
        self.assertFalse(_has_ink(surface, (55, 0, 60, 60)))

    def test_box_smaller_than_matrix_is_skipped(self):
        surface = _surface()
        element = QrElement(id="q", width=30, height=30, data="x" * 300)

        with self.assertLogs("element_renderer", level="WARNING"):
            outcome = render_element(element, surface, RenderContext())

        self.assertEqual(outcome.status, SKIPPED)
        self.assertIn("too small", outcome.reason)
        self.assertFalse(_has_ink(surface, (0, 0, 30, 30)))

    def test_empty_payload_is_skipped(self):
        element = QrElement(id="q", width=50, height=50)

        outcome = render_element(element, _surface(), RenderContext())

        self.assertEqual(outcome.status, SKIPPED)


class DynamicFieldTests(unittest.TestCase):
    def test_text_token(self):
        surface = _surface()
        element = DynamicFieldElement(id="d", x=20, y=20, width=250, height=40, field_name="student_name")
        context = RenderContext().for_record({"student_name": "Ravi Kumar"})

        outcome = render_element(element, surface, context)

        self.assertEqual(outcome.display.kind, "text")
        self.assertTrue(_has_ink(surface, (20, 20, 270, 60)))

    def test_image_token_uses_photo(self):
        surface = _surface()
        element = DynamicFieldElement(id="d", x=0, y=0, width=60, height=80, field_name="photo")
        context = RenderContext().for_record({"photo_url": _data_uri((30, 40), (0, 0, 255))})

        outcome = render_element(element, surface, context)

        self.assertEqual(outcome.display.kind, "image")
        self.assertGreater(surface.getpixel((30, 40))[2], 240)

    def test_missing_photo_is_skipped(self):
        element = DynamicFieldElement(id="d", width=60, height=80, field_name="photo")

        with self.assertLogs("element_renderer", level="WARNING"):
            outcome = render_element(element, _surface(), RenderContext())

        self.assertEqual(outcome.status, SKIPPED)

    def test_unknown_token_renders_nothing(self):
        surface = _surface()
        element = DynamicFieldElement(id="d", width=250, height=40, field_name="favourite_colour")

        outcome = render_element(element, surface, RenderContext())

        self.assertEqual(outcome.status, RENDERED)
        self.assertFalse(_has_ink(surface, (0, 0, 300, 200)))


class ColourTests(unittest.TestCase):
    def test_parse_color(self):
        self.assertEqual(parse_color("#336699"), (51, 102, 153, 255))
        self.assertIsNone(parse_color("transparent"))
        self.assertEqual(parse_color(None, WHITE), WHITE)


if __name__ == "__main__":
    unittest.main()
