"""
CertChain — Text Recognition

Turns an uploaded document into raw text for legacy matching.

  - ``TesseractRecognizer``: images through Tesseract; PDFs page by page
    through PyMuPDF, using the embedded text layer when a page has one and
    rasterising + OCR when it does not.
  - ``PlainTextRecognizer``: the document already is text (UTF-8).

OCR is CPU-bound and runs in worker threads one page at a time, so a caller
cancelling the surrounding task is honoured between pages.
"""

from __future__ import annotations

import asyncio
import io
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import TYPE_CHECKING

import fitz
import pytesseract
import structlog
from PIL import Image, UnidentifiedImageError

from certchain.primitives.errors import RecognitionFailed

if TYPE_CHECKING:
    from certchain.config import LegacyConfig

logger = structlog.get_logger("certchain.clients.recognition")

# Fraction of the document processed so far, 0.0 to 1.0.
ProgressCallback = Callable[[float], None]

PDF_CONTENT_TYPE = "application/pdf"


def _is_pdf(document: bytes, content_type: str) -> bool:
    return content_type == PDF_CONTENT_TYPE or document[:5] == b"%PDF-"


class TextRecognizer(ABC):
    @abstractmethod
    async def recognize(
        self,
        document: bytes,
        content_type: str,
        on_progress: ProgressCallback | None = None,
    ) -> str:
        """Return the document's text. Raises RecognitionFailed."""
        ...


class PlainTextRecognizer(TextRecognizer):
    async def recognize(
        self,
        document: bytes,
        content_type: str,
        on_progress: ProgressCallback | None = None,
    ) -> str:
        try:
            text = document.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise RecognitionFailed(f"Document is not UTF-8 text ({content_type})") from exc
        if on_progress is not None:
            on_progress(1.0)
        return text


class TesseractRecognizer(TextRecognizer):
    def __init__(
        self,
        tesseract_config: str = "--oem 3 --psm 6",
        pdf_render_zoom: float = 2.0,
        pdf_text_min_chars: int = 50,
    ) -> None:
        self._tesseract_config = tesseract_config
        self._zoom = pdf_render_zoom
        self._min_chars = pdf_text_min_chars
        self._logger = logger.bind(component="tesseract")

    async def recognize(
        self,
        document: bytes,
        content_type: str,
        on_progress: ProgressCallback | None = None,
    ) -> str:
        if not document:
            raise RecognitionFailed("Empty document")
        if _is_pdf(document, content_type):
            return await self._recognize_pdf(document, on_progress)

        text = await asyncio.to_thread(self._ocr_image_bytes, document)
        if on_progress is not None:
            on_progress(1.0)
        return text

    async def _recognize_pdf(
        self, document: bytes, on_progress: ProgressCallback | None,
    ) -> str:
        try:
            pdf = fitz.open(stream=document, filetype="pdf")
        except (RuntimeError, ValueError) as exc:
            raise RecognitionFailed(f"Unreadable PDF: {exc}") from exc

        pages: list[str] = []
        try:
            total = pdf.page_count
            if total == 0:
                raise RecognitionFailed("PDF has no pages")
            for number in range(total):
                pages.append(await asyncio.to_thread(self._read_pdf_page, pdf, number))
                if on_progress is not None:
                    on_progress((number + 1) / total)
        finally:
            pdf.close()

        self._logger.debug("pdf_recognized", pages=len(pages))
        return "\n".join(pages)

    def _read_pdf_page(self, pdf: fitz.Document, number: int) -> str:
        try:
            page = pdf.load_page(number)
            text = page.get_text()
            if len(text.strip()) >= self._min_chars:
                return text
            # Scanned page: no usable text layer
            pixmap = page.get_pixmap(matrix=fitz.Matrix(self._zoom, self._zoom))
            rendered = pixmap.tobytes("png")
        except (RuntimeError, ValueError) as exc:
            raise RecognitionFailed(f"Unreadable PDF page {number + 1}: {exc}") from exc
        return self._ocr_image_bytes(rendered)

    def _ocr_image_bytes(self, data: bytes) -> str:
        try:
            with Image.open(io.BytesIO(data)) as image:
                return pytesseract.image_to_string(image, config=self._tesseract_config)
        except UnidentifiedImageError as exc:
            raise RecognitionFailed("Unsupported or corrupt image") from exc
        except (pytesseract.TesseractError, pytesseract.TesseractNotFoundError, OSError) as exc:
            raise RecognitionFailed(f"OCR failed: {exc}") from exc


def create_recognizer(config: LegacyConfig) -> TextRecognizer:
    if config.recognizer == "text":
        return PlainTextRecognizer()
    return TesseractRecognizer(
        tesseract_config=config.tesseract_config,
        pdf_render_zoom=config.pdf_render_zoom,
        pdf_text_min_chars=config.pdf_text_min_chars,
    )
