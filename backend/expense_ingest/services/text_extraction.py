"""OCR adapter: turns a stored PDF or image into raw text.

PDF pages are rasterised with PyMuPDF and each page image goes through
Tesseract. Language data presence is checked on disk up front so a missing
``<lang>.traineddata`` surfaces as ``OcrNotConfigured`` instead of an engine
crash.
"""

from __future__ import annotations

import asyncio
import io
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, Optional

import fitz  # PyMuPDF
import pytesseract
from PIL import Image, ImageOps

from expense_ingest.core.config import OcrLanguageProvider, SettingsOcrLanguageProvider, get_settings
from expense_ingest.core.errors import (
    IngestError,
    OcrFailedError,
    OcrNotConfiguredError,
    UnsupportedFileError,
    ValidationFailedError,
)

logger = logging.getLogger(__name__)

PDF_EXTENSION = "pdf"
IMAGE_EXTENSIONS = frozenset({"png", "jpg", "jpeg", "tif", "tiff", "bmp", "webp"})
DEFAULT_LANGUAGE = "eng"
PDF_BASE_DPI = 72


@dataclass(frozen=True)
class TextExtractionResult:
    raw_text: str
    page_texts: list[str] = field(default_factory=list)
    is_ocr_used: bool = True


def normalize_extension(extension: Optional[str]) -> str:
    return (extension or "").strip().lstrip(".").lower()


def is_supported_extension(extension: Optional[str]) -> bool:
    ext = normalize_extension(extension)
    return ext == PDF_EXTENSION or ext in IMAGE_EXTENSIONS


class DocumentTextExtractor:
    def __init__(
        self,
        tessdata_dir: str | Path,
        language_provider: Optional[OcrLanguageProvider] = None,
        *,
        dpi: int = 300,
        tesseract_cmd: str = "",
    ) -> None:
        self.tessdata_dir = Path(tessdata_dir)
        self.language_provider = language_provider or SettingsOcrLanguageProvider()
        self.dpi = max(PDF_BASE_DPI, dpi)
        if tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = tesseract_cmd

    @classmethod
    def from_settings(cls, language_provider: Optional[OcrLanguageProvider] = None) -> DocumentTextExtractor:
        settings = get_settings()
        return cls(
            settings.tessdata_dir,
            language_provider,
            dpi=settings.ocr_pdf_dpi,
            tesseract_cmd=settings.tesseract_cmd,
        )

    def language_code(self) -> str:
        code = (self.language_provider.get_language_code() or "").strip()
        return code or DEFAULT_LANGUAGE

    def language_data_paths(self, language: Optional[str] = None) -> list[Path]:
        # Tesseract accepts "por+eng"; every part needs its own traineddata file.
        code = language or self.language_code()
        return [self.tessdata_dir / f"{part}.traineddata" for part in code.split("+") if part]

    def has_ocr_data(self, language: Optional[str] = None) -> bool:
        paths = self.language_data_paths(language)
        return bool(paths) and all(path.is_file() for path in paths)

    async def extract(
        self,
        stored_name: str,
        extension: str,
        content: BinaryIO | bytes,
    ) -> TextExtractionResult:
        ext = normalize_extension(extension)
        if not ext:
            raise ValidationFailedError("File extension is required")
        if not is_supported_extension(ext):
            raise UnsupportedFileError(f"Unsupported file type: .{ext}")

        language = self.language_code()
        if not self.has_ocr_data(language):
            raise OcrNotConfiguredError(
                f"OCR language data for '{language}' is not installed",
                details={"language": language},
            )

        return await asyncio.to_thread(self._extract_sync, stored_name, ext, content, language)

    def _extract_sync(
        self,
        stored_name: str,
        ext: str,
        content: BinaryIO | bytes,
        language: str,
    ) -> TextExtractionResult:
        # The stream may not be seekable; read it once into memory.
        data = content if isinstance(content, bytes) else content.read()
        try:
            if ext == PDF_EXTENSION:
                pages = self._ocr_pdf(data, language)
            else:
                pages = [self._ocr_image(data, language)]
        except IngestError:
            raise
        except Exception as exc:
            logger.exception("OCR failed for %s", stored_name)
            raise OcrFailedError(f"OCR failed for {stored_name}") from exc

        raw_text = "\n".join(pages).strip()
        logger.info("OCR extracted %d page(s), %d chars from %s", len(pages), len(raw_text), stored_name)
        return TextExtractionResult(raw_text=raw_text, page_texts=pages, is_ocr_used=True)

    def _tesseract_config(self) -> str:
        return f'--tessdata-dir "{self.tessdata_dir}"'

    def _ocr_image(self, data: bytes, language: str) -> str:
        with Image.open(io.BytesIO(data)) as img:
            img = ImageOps.exif_transpose(img)
            if img.mode not in ("RGB", "L"):
                img = img.convert("RGB")
            return self._ocr(img, language)

    def _ocr_pdf(self, data: bytes, language: str) -> list[str]:
        zoom = self.dpi / PDF_BASE_DPI
        pages: list[str] = []
        with fitz.open(stream=data, filetype="pdf") as doc:
            for page in doc:
                pix = page.get_pixmap(matrix=fitz.Matrix(zoom, zoom), alpha=False)
                img = Image.frombytes("RGB", (pix.width, pix.height), pix.samples)
                pages.append(self._ocr(img, language))
        return pages

    def _ocr(self, img: Image.Image, language: str) -> str:
        text = pytesseract.image_to_string(img, lang=language, config=self._tesseract_config())
        return text.strip()
