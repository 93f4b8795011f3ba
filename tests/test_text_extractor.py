import os
import sys
import tempfile
import unittest
from pathlib import Path
from unittest import mock

PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from PIL import Image

import text_extractor
from context_schema import OCRResult, TextRegion
from text_extractor import TextExtractor


class TextExtractorTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.image_path = os.path.join(self._tmp.name, "capture_1.png")
        Image.new("RGB", (20, 10), color="white").save(self.image_path)
        self.extractor = TextExtractor(timeout_seconds=1)
        self.addCleanup(self.extractor.close)

    def test_primary_result_is_used_when_it_has_text(self) -> None:
        primary = OCRResult(text="hello", confidence=0.9, regions=[TextRegion("hello", 0.9)])

        with mock.patch.object(self.extractor, "_extract_with_vision", return_value=primary), mock.patch.object(
            text_extractor.pytesseract, "image_to_string"
        ) as tesseract:
            result = self.extractor.extract(self.image_path)

        self.assertIs(result, primary)
        tesseract.assert_not_called()

    def test_fallback_has_fixed_confidence(self) -> None:
        with mock.patch.object(self.extractor, "_extract_with_vision", return_value=None), mock.patch.object(
            text_extractor.pytesseract, "image_to_string", return_value="  Quarterly report draft \n"
        ):
            result = self.extractor.extract(self.image_path)

        self.assertEqual(result.text, "Quarterly report draft")
        self.assertEqual(result.confidence, 0.8)
        self.assertEqual(result.regions, [])

    def test_all_methods_failing_returns_empty_result(self) -> None:
        with mock.patch.object(self.extractor, "_extract_with_vision", return_value=None), mock.patch.object(
            text_extractor.pytesseract, "image_to_string", side_effect=RuntimeError("Tesseract process timeout")
        ):
            result = self.extractor.extract(self.image_path)

        self.assertEqual(result, OCRResult("", 0.0, []))

    def test_vision_unavailable_skips_primary(self) -> None:
        with mock.patch.object(text_extractor, "Vision", None):
            self.assertIsNone(self.extractor._extract_with_vision(self.image_path))

    def test_missing_image_raises(self) -> None:
        with self.assertRaises(FileNotFoundError):
            self.extractor.extract(os.path.join(self._tmp.name, "gone.png"))


class BuildResultTests(unittest.TestCase):
    def test_confidence_is_mean_of_regions(self) -> None:
        result = text_extractor.build_result([TextRegion("To: jane", 0.9), TextRegion("Subject: hi", 0.7)])

        self.assertEqual(result.text, "To: jane\nSubject: hi")
        self.assertAlmostEqual(result.confidence, 0.8)

    def test_no_regions_means_zero_confidence(self) -> None:
        self.assertEqual(text_extractor.build_result([]).confidence, 0.0)


class TextHelperTests(unittest.TestCase):
    def test_clean_text_strips_artifacts_and_whitespace(self) -> None:
        self.assertEqual(text_extractor.clean_text("  Hello | world [x]\n\n{y} "), "Hello world x y")

    def test_extract_patterns(self) -> None:
        patterns = text_extractor.extract_patterns(
            "Email bob@example.com or see https://example.com/x on 12/25/2024 at 3:30 PM"
        )

        self.assertEqual(patterns["emails"], ["bob@example.com"])
        self.assertEqual(patterns["urls"], ["https://example.com/x"])
        self.assertEqual(patterns["dates"], ["12/25/2024"])
        self.assertEqual(patterns["times"], ["3:30 PM"])

    def test_email_and_calendar_predicates(self) -> None:
        self.assertTrue(text_extractor.is_email_composition("To: jane@co.com\nSubject: Hi"))
        self.assertFalse(text_extractor.is_email_composition("def main():\n    pass"))
        self.assertTrue(text_extractor.is_calendar_content("Add invitees to the standup"))
        self.assertFalse(text_extractor.is_calendar_content("git push origin main"))

    def test_commitment_phrases_are_deduplicated_in_order(self) -> None:
        phrases = text_extractor.extract_commitment_phrases(
            "I'll send the report. Remind me to book flights! I'll send the report."
        )

        self.assertEqual(phrases, ["I'll send the report", "Remind me to book flights"])


if __name__ == "__main__":
    unittest.main()
