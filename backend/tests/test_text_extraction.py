import asyncio
import io
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

import fitz
from PIL import Image

from expense_ingest.core.errors import (
    OcrFailedError,
    OcrNotConfiguredError,
    UnsupportedFileError,
    ValidationFailedError,
)
from expense_ingest.services.text_extraction import DocumentTextExtractor, is_supported_extension

OCR_TARGET = "expense_ingest.services.text_extraction.pytesseract.image_to_string"


class _Language:
    def __init__(self, code):
        self.code = code

    def get_language_code(self):
        return self.code


def _png_bytes() -> bytes:
    buffer = io.BytesIO()
    Image.new("RGBA", (40, 20), (255, 255, 255, 255)).save(buffer, format="PNG")
    return buffer.getvalue()


def _pdf_bytes(pages: int) -> bytes:
    doc = fitz.open()
    for i in range(pages):
        page = doc.new_page(width=200, height=100)
        page.insert_text((20, 50), f"Page {i + 1}")
    data = doc.tobytes()
    doc.close()
    return data


class DocumentTextExtractorTests(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.tessdata = Path(self._tmp.name)
        (self.tessdata / "eng.traineddata").write_bytes(b"data")
        self.extractor = DocumentTextExtractor(self.tessdata, _Language("eng"), dpi=72)

    def tearDown(self):
        self._tmp.cleanup()

    def test_image_is_ocrd_as_rgb(self):
        with patch(OCR_TARGET, return_value="  Mercado Sol\nTotal 10,00  ") as ocr:
            result = asyncio.run(self.extractor.extract("a.png", "PNG", _png_bytes()))

        self.assertEqual(result.raw_text, "Mercado Sol\nTotal 10,00")
        self.assertEqual(result.page_texts, ["Mercado Sol\nTotal 10,00"])
        self.assertTrue(result.is_ocr_used)
        image = ocr.call_args.args[0]
        self.assertEqual(image.mode, "RGB")
        self.assertEqual(ocr.call_args.kwargs["lang"], "eng")
        self.assertIn("--tessdata-dir", ocr.call_args.kwargs["config"])

    def test_pdf_pages_join_with_newline(self):
        with patch(OCR_TARGET, side_effect=["first", "second"]) as ocr:
            result = asyncio.run(self.extractor.extract("a.pdf", ".pdf", _pdf_bytes(2)))

        self.assertEqual(ocr.call_count, 2)
        self.assertEqual(result.page_texts, ["first", "second"])
        self.assertEqual(result.raw_text, "first\nsecond")

    def test_accepts_binary_stream(self):
        with patch(OCR_TARGET, return_value="x"):
            result = asyncio.run(self.extractor.extract("a.png", "png", io.BytesIO(_png_bytes())))
        self.assertEqual(result.raw_text, "x")

    def test_missing_language_data(self):
        extractor = DocumentTextExtractor(self.tessdata, _Language("por+eng"))
        self.assertFalse(extractor.has_ocr_data())
        with self.assertRaises(OcrNotConfiguredError) as ctx:
            asyncio.run(extractor.extract("a.png", "png", _png_bytes()))
        self.assertEqual(ctx.exception.details["language"], "por+eng")

    def test_blank_language_defaults_to_eng(self):
        extractor = DocumentTextExtractor(self.tessdata, _Language("  "))
        self.assertEqual(extractor.language_code(), "eng")
        self.assertTrue(extractor.has_ocr_data())

    def test_extension_checks(self):
        with self.assertRaises(ValidationFailedError):
            asyncio.run(self.extractor.extract("a", "  ", b""))
        with self.assertRaises(UnsupportedFileError):
            asyncio.run(self.extractor.extract("a.docx", "docx", b""))
        self.assertTrue(is_supported_extension(".TIFF"))
        self.assertFalse(is_supported_extension("gif"))

    def test_engine_error_becomes_ocr_failed(self):
        with patch(OCR_TARGET, side_effect=RuntimeError("tesseract crashed")):
            with self.assertRaises(OcrFailedError):
                asyncio.run(self.extractor.extract("a.png", "png", _png_bytes()))

    def test_corrupt_image_becomes_ocr_failed(self):
        with self.assertRaises(OcrFailedError):
            asyncio.run(self.extractor.extract("a.png", "png", b"not an image"))
