"""OCR adapter that turns receipt images into a flat text block."""

import asyncio
import logging
from enum import Enum
from io import BytesIO
from pathlib import Path
from typing import Protocol

import pdfplumber
import pytesseract
from PIL import Image, UnidentifiedImageError

from txbot.errors import ExtractionFailure, ExtractionReason

logger = logging.getLogger(__name__)

MAX_IMAGE_BYTES = 10 * 1024 * 1024
SUPPORTED_IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".pdf")
PDF_RENDER_RESOLUTION = 300


class RecognitionErrorCategory(str, Enum):
    """Error categories a document recognizer can report."""

    UNAUTHORIZED = "unauthorized"
    MALFORMED_INPUT = "malformed_input"
    THROUGHPUT_EXCEEDED = "throughput_exceeded"
    THROTTLED = "throttled"
    TIMEOUT = "timeout"
    GENERIC = "generic"


class RecognitionServiceError(Exception):
    """Raised by a document recognizer when it cannot process a payload."""

    def __init__(self, category: RecognitionErrorCategory, message: str):
        super().__init__(message)
        self.category = category


class DocumentRecognizer(Protocol):
    """Anything that can turn document bytes into ordered text lines."""

    def detect_lines(self, image_bytes: bytes) -> list[str]: ...


_CATEGORY_REASONS = {
    RecognitionErrorCategory.UNAUTHORIZED: (
        ExtractionReason.UNAUTHORIZED,
        "OCR service access denied. Check the recognizer credentials.",
    ),
    RecognitionErrorCategory.MALFORMED_INPUT: (
        ExtractionReason.MALFORMED_INPUT,
        "Invalid image format. Supported formats: PNG, JPEG, PDF. Please ensure the file is a valid image.",
    ),
    RecognitionErrorCategory.THROUGHPUT_EXCEEDED: (
        ExtractionReason.THROUGHPUT_EXCEEDED,
        "OCR throughput limit exceeded. Please try again in a few moments.",
    ),
    RecognitionErrorCategory.THROTTLED: (
        ExtractionReason.THROTTLED,
        "OCR request was throttled. Please try again later.",
    ),
    RecognitionErrorCategory.TIMEOUT: (
        ExtractionReason.TIMEOUT,
        "OCR timed out. Please try again with a smaller or clearer image.",
    ),
}


class TesseractRecognizer:
    """Local recognizer: Tesseract for images, pdfplumber for PDF text."""

    def __init__(self, tesseract_cmd: str | None = None, lang: str = "eng", timeout: float = 30.0):
        if tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = tesseract_cmd
        self.lang = lang
        self.timeout = timeout

    def detect_lines(self, image_bytes: bytes) -> list[str]:
        if image_bytes.startswith(b"%PDF"):
            return self._pdf_lines(image_bytes)
        return self._image_lines(self._open_image(image_bytes))

    def _open_image(self, image_bytes: bytes) -> Image.Image:
        try:
            image = Image.open(BytesIO(image_bytes))
            image.load()
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError) as e:
            raise RecognitionServiceError(RecognitionErrorCategory.MALFORMED_INPUT, f"Unreadable image: {e}")
        return image.convert("RGB")

    def _image_lines(self, image: Image.Image) -> list[str]:
        try:
            data = pytesseract.image_to_data(
                image, lang=self.lang, timeout=self.timeout, output_type=pytesseract.Output.DICT
            )
        except pytesseract.TesseractNotFoundError as e:
            raise RecognitionServiceError(RecognitionErrorCategory.GENERIC, f"Tesseract is not installed: {e}")
        except pytesseract.TesseractError as e:
            raise RecognitionServiceError(RecognitionErrorCategory.MALFORMED_INPUT, f"Tesseract failed: {e}")
        except RuntimeError as e:
            # pytesseract reports its own timeout as a bare RuntimeError
            raise RecognitionServiceError(RecognitionErrorCategory.TIMEOUT, f"Tesseract timed out: {e}")

        # Words arrive in reading order; group them by (block, paragraph, line)
        lines: dict[tuple[int, int, int], list[str]] = {}
        for i, word in enumerate(data.get("text", [])):
            if not word or not word.strip():
                continue
            key = (data["block_num"][i], data["par_num"][i], data["line_num"][i])
            lines.setdefault(key, []).append(word.strip())
        return [" ".join(words) for words in lines.values()]

    def _pdf_lines(self, pdf_bytes: bytes) -> list[str]:
        lines: list[str] = []
        try:
            with pdfplumber.open(BytesIO(pdf_bytes)) as pdf:
                for page in pdf.pages:
                    text = page.extract_text() or ""
                    if text.strip():
                        lines.extend(text.splitlines())
                    else:
                        # Scanned page with no text layer
                        rendered = page.to_image(resolution=PDF_RENDER_RESOLUTION).original
                        lines.extend(self._image_lines(rendered.convert("RGB")))
        except RecognitionServiceError:
            raise
        except Exception as e:
            raise RecognitionServiceError(RecognitionErrorCategory.MALFORMED_INPUT, f"Unreadable PDF: {e}")
        return lines


class TextExtractor:
    """Turns receipt bytes into text through a document recognizer."""

    def __init__(self, recognizer: DocumentRecognizer, max_bytes: int = MAX_IMAGE_BYTES):
        self.recognizer = recognizer
        self.max_bytes = max_bytes

    def _check_size(self, size: int) -> None:
        if size > self.max_bytes:
            raise ExtractionFailure(
                ExtractionReason.PAYLOAD_TOO_LARGE,
                f"Image file is too large. Maximum size is {self.max_bytes / 1024 / 1024:.0f} MB. "
                f"Current size: {size / 1024 / 1024:.2f} MB",
                stage="ocr",
            )

    async def extract(self, image_bytes: bytes) -> str:
        """
        Extract text from an image payload.

        Args:
            image_bytes: JPEG, PNG or PDF contents

        Returns:
            Recognized line fragments joined by newlines

        Raises:
            ExtractionFailure: Empty or oversized payload, recognizer error,
                or no readable text
        """
        if not isinstance(image_bytes, (bytes, bytearray)) or not image_bytes:
            raise ExtractionFailure(
                ExtractionReason.EMPTY_INPUT, "Image payload is required and cannot be empty", stage="ocr"
            )
        self._check_size(len(image_bytes))

        logger.info(f"Running OCR on {len(image_bytes)} bytes")
        try:
            fragments = await asyncio.to_thread(self.recognizer.detect_lines, bytes(image_bytes))
        except RecognitionServiceError as e:
            reason, message = _CATEGORY_REASONS.get(
                e.category, (ExtractionReason.UNKNOWN, f"OCR extraction failed: {e}")
            )
            logger.error(f"OCR failed ({e.category.value}): {e}")
            raise ExtractionFailure(reason, message, stage="ocr", cause=e) from e
        except Exception as e:
            logger.exception(f"Unexpected OCR error: {e}")
            raise ExtractionFailure(
                ExtractionReason.UNKNOWN, f"OCR extraction failed: {e}", stage="ocr", cause=e
            ) from e

        text = "\n".join(line for line in fragments if line and line.strip()).strip()
        if not text:
            raise ExtractionFailure(
                ExtractionReason.NO_TEXT,
                "No text could be extracted from the image. Please ensure the image contains readable text.",
                stage="ocr",
            )

        logger.info(f"Text extracted successfully. Length: {len(text)} characters")
        return text

    async def extract_from_file(self, image_path: str | Path) -> str:
        """Extract text from an image on disk; the size limit is checked before reading."""
        path = Path(image_path)
        if not path.is_file():
            raise ExtractionFailure(ExtractionReason.FILE_NOT_FOUND, f"Image file not found: {path}", stage="ocr")

        self._check_size(path.stat().st_size)
        return await self.extract(path.read_bytes())


def cleanup_image_file(image_path: str | Path | None) -> None:
    """Delete a temporary image file. Failures are logged, never raised."""
    if not image_path:
        return

    path = Path(image_path)
    try:
        if path.exists():
            path.unlink()
            logger.info(f"Temporary image file deleted: {path}")
        else:
            logger.debug(f"File already deleted or does not exist: {path}")
    except OSError as e:
        logger.error(f"Error deleting temporary file {path}: {e}")


def is_valid_image_format(filename: str | None) -> bool:
    """Check the file extension against the formats OCR accepts."""
    if not filename or not isinstance(filename, str):
        return False
    return filename.lower().endswith(SUPPORTED_IMAGE_EXTENSIONS)
