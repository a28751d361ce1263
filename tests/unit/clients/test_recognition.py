"""Unit tests for the text recognisers. Tesseract itself is mocked."""

from __future__ import annotations

import io
from unittest.mock import MagicMock, patch

import fitz
import pytest
from PIL import Image

from certchain.clients.recognition import (
    PlainTextRecognizer,
    TesseractRecognizer,
    create_recognizer,
)
from certchain.config import LegacyConfig
from certchain.primitives.errors import RecognitionFailed

OCR = "certchain.clients.recognition.pytesseract.image_to_string"

TEXT_LAYER = (
    "Name: Ada Lovelace\n"
    "Roll No: AB-12\n"
    "Issued by the Analytical Engine Society for distinguished work."
)


def make_png() -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (40, 20), color="white").save(buf, format="PNG")
    return buf.getvalue()


def make_pdf(*page_texts: str) -> bytes:
    doc = fitz.open()
    for text in page_texts:
        page = doc.new_page()
        if text:
            page.insert_text((72, 72), text)
    data = doc.tobytes()
    doc.close()
    return data


# ─── Plain text ───────────────────────────────────────────────────────────────


class TestPlainTextRecognizer:
    @pytest.mark.asyncio
    async def test_decodes_utf8_and_reports_completion(self) -> None:
        progress: list[float] = []
        text = await PlainTextRecognizer().recognize(
            "Roll No: 7".encode(), "text/plain", progress.append,
        )
        assert text == "Roll No: 7"
        assert progress == [1.0]

    @pytest.mark.asyncio
    async def test_binary_input_fails(self) -> None:
        with pytest.raises(RecognitionFailed):
            await PlainTextRecognizer().recognize(b"\xff\xfe\xfa", "application/octet-stream")


# ─── Tesseract ────────────────────────────────────────────────────────────────


class TestTesseractRecognizer:
    @pytest.mark.asyncio
    async def test_image_goes_through_ocr(self) -> None:
        with patch(OCR, return_value="Roll No: AB-12") as ocr:
            text = await TesseractRecognizer().recognize(make_png(), "image/png")
        assert text == "Roll No: AB-12"
        assert ocr.call_args.kwargs["config"] == "--oem 3 --psm 6"

    @pytest.mark.asyncio
    async def test_corrupt_image_fails(self) -> None:
        with pytest.raises(RecognitionFailed):
            await TesseractRecognizer().recognize(b"definitely not an image", "image/png")

    @pytest.mark.asyncio
    async def test_empty_document_fails(self) -> None:
        with pytest.raises(RecognitionFailed):
            await TesseractRecognizer().recognize(b"", "image/png")

    @pytest.mark.asyncio
    async def test_pdf_text_layer_skips_ocr(self) -> None:
        with patch(OCR) as ocr:
            text = await TesseractRecognizer().recognize(make_pdf(TEXT_LAYER), "application/pdf")
        assert "Roll No: AB-12" in text
        ocr.assert_not_called()

    @pytest.mark.asyncio
    async def test_scanned_pdf_page_is_rasterised(self) -> None:
        progress: list[float] = []
        with patch(OCR, return_value="Roll No: ZZ-9") as ocr:
            text = await TesseractRecognizer().recognize(
                make_pdf(TEXT_LAYER, ""), "application/pdf", progress.append,
            )
        assert ocr.call_count == 1
        assert "Roll No: AB-12" in text
        assert "Roll No: ZZ-9" in text
        assert progress == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_pdf_detected_by_magic_bytes(self) -> None:
        with patch(OCR) as ocr:
            text = await TesseractRecognizer().recognize(
                make_pdf(TEXT_LAYER), "application/octet-stream",
            )
        assert "AB-12" in text
        ocr.assert_not_called()

    @pytest.mark.asyncio
    async def test_corrupt_pdf_page_fails_cleanly(self) -> None:
        pdf = MagicMock()
        pdf.page_count = 2
        pdf.load_page.side_effect = RuntimeError("cannot find page tree")
        with patch("certchain.clients.recognition.fitz.open", return_value=pdf):
            with pytest.raises(RecognitionFailed, match="page 1"):
                await TesseractRecognizer().recognize(b"%PDF-1.7 broken", "application/pdf")
        pdf.close.assert_called_once()


class TestFactory:
    def test_selects_recognizer(self) -> None:
        assert isinstance(create_recognizer(LegacyConfig(recognizer="text")), PlainTextRecognizer)
        assert isinstance(create_recognizer(LegacyConfig()), TesseractRecognizer)
