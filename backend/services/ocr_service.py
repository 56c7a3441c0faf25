"""
OCR Service: wraps Tesseract as the pipeline's OCR capability.

Two recognition levels are exposed.  FAST is used once per candidate page
while ranking pages: the image is downscaled and Tesseract's dictionaries
are switched off, trading accuracy for latency.  ACCURATE is used once, on
the selected page, with the receipt preprocessing pass and dictionary-based
language correction enabled, because its output feeds categorization.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum

import numpy as np
from PIL import Image, ImageEnhance, ImageFilter

from services.capture import CapturedPage
from services.errors import OCRFailure

logger = logging.getLogger("basketscan.ocr")

try:
    import pytesseract
    OCR_AVAILABLE = True
except ImportError:
    OCR_AVAILABLE = False
    logger.warning("pytesseract not available, OCR disabled")


class RecognitionLevel(str, Enum):
    FAST = "fast"
    ACCURATE = "accurate"


@dataclass(frozen=True)
class RecognizedLine:
    text: str
    confidence: float   # 0.0–1.0


@dataclass(frozen=True)
class RecognizedText:
    """Recognized lines in reading order, each with its own confidence."""

    lines: tuple[RecognizedLine, ...] = field(default_factory=tuple)

    @property
    def text(self) -> str:
        return "\n".join(line.text for line in self.lines)

    @property
    def block_count(self) -> int:
        return len(self.lines)

    @property
    def average_confidence(self) -> float:
        if not self.lines:
            return 0.0
        return sum(line.confidence for line in self.lines) / len(self.lines)

    @property
    def has_digits(self) -> bool:
        return any(ch.isdigit() for line in self.lines for ch in line.text)

    @classmethod
    def from_pairs(cls, pairs) -> "RecognizedText":
        return cls(tuple(RecognizedLine(text, float(conf)) for text, conf in pairs))


class OCREngine(ABC):
    """An OCR capability: image in, ordered (text, confidence) lines out."""

    @abstractmethod
    async def recognize(self, image: "Image.Image", level: RecognitionLevel) -> RecognizedText:
        ...


# ── Tesseract ─────────────────────────────────────────────────────────────────

FAST_MAX_SIDE = 1200
FAST_CONFIG = "--psm 6 -c load_system_dawg=0 -c load_freq_dawg=0"
ACCURATE_CONFIG = "--psm 6"


def preprocess_image(image: "Image.Image") -> "Image.Image":
    """
    Improve OCR accuracy on a receipt photo:
    - Convert to grayscale
    - Upscale if small
    - Invert dark-background / white-text bands (e.g. highlighted totals)
    - Enhance contrast and sharpen
    """
    img = image.convert("L")

    w, h = img.size
    if w < 800:
        scale = 800 / w
        img = img.resize((int(w * scale), int(h * scale)), Image.LANCZOS)

    # ~40 horizontal bands; a band averaging below 80 is mostly dark, so
    # flip it to black-on-white which Tesseract reads much better.
    arr = np.array(img)
    band_height = max(1, arr.shape[0] // 40)
    for y in range(0, arr.shape[0], band_height):
        band = arr[y:y + band_height, :]
        if band.mean() < 80:
            arr[y:y + band_height, :] = 255 - band
    img = Image.fromarray(arr)

    img = ImageEnhance.Contrast(img).enhance(2.0)
    img = img.filter(ImageFilter.SHARPEN)
    return img


def downscale_for_fast_pass(image: "Image.Image", max_side: int = FAST_MAX_SIDE) -> "Image.Image":
    img = image.convert("L")
    w, h = img.size
    long_side = max(w, h)
    if long_side > max_side:
        scale = max_side / long_side
        img = img.resize((max(1, int(w * scale)), max(1, int(h * scale))), Image.BILINEAR)
    return img


def lines_from_tesseract_data(data: dict) -> RecognizedText:
    """
    Group Tesseract word boxes (``image_to_data`` DICT output) into lines.

    A line is keyed by (block, paragraph, line).  Its confidence is the mean
    of its words' confidences scaled to 0–1.  Non-word rows (conf -1) and
    blank words are ignored.
    """
    grouped: dict[tuple, list[tuple[str, float]]] = {}
    for i, word in enumerate(data.get("text", [])):
        word = (word or "").strip()
        try:
            conf = float(data["conf"][i])
        except (TypeError, ValueError):
            continue
        if not word or conf < 0:
            continue
        key = (data["block_num"][i], data["par_num"][i], data["line_num"][i])
        grouped.setdefault(key, []).append((word, conf))

    lines = []
    for words in grouped.values():   # dict keeps Tesseract's reading order
        text = " ".join(w for w, _ in words)
        conf = sum(c for _, c in words) / len(words) / 100.0
        lines.append(RecognizedLine(text, min(max(conf, 0.0), 1.0)))
    return RecognizedText(tuple(lines))


class TesseractOCR(OCREngine):
    """OCR capability backed by the local Tesseract binary."""

    def __init__(self, lang: str = "eng"):
        self._lang = lang

    async def recognize(self, image: "Image.Image", level: RecognitionLevel) -> RecognizedText:
        if not OCR_AVAILABLE:
            raise OCRFailure("OCR dependencies not installed (pytesseract)")
        return await asyncio.to_thread(self._recognize_sync, image, level)

    def _recognize_sync(self, image: "Image.Image", level: RecognitionLevel) -> RecognizedText:
        if level is RecognitionLevel.FAST:
            prepared, config = downscale_for_fast_pass(image), FAST_CONFIG
        else:
            prepared, config = preprocess_image(image), ACCURATE_CONFIG
        try:
            data = pytesseract.image_to_data(
                prepared,
                lang=self._lang,
                config=config,
                output_type=pytesseract.Output.DICT,
            )
        except (RuntimeError, OSError, ValueError) as e:
            raise OCRFailure(f"Tesseract failed ({type(e).__name__}): {e}") from e
        result = lines_from_tesseract_data(data)
        logger.debug("%s pass: %d lines, avg conf %.2f",
                     level.value, result.block_count, result.average_confidence)
        return result


# ── Extraction ────────────────────────────────────────────────────────────────

class ReceiptTextExtractor:
    """Runs the high-accuracy OCR pass on the selected page."""

    def __init__(self, engine: OCREngine):
        self._engine = engine

    async def extract_text(self, page: CapturedPage) -> RecognizedText:
        image = page.to_image()   # OCRFailure when the page has no pixels
        try:
            recognized = await self._engine.recognize(image, RecognitionLevel.ACCURATE)
        except OCRFailure:
            raise
        except Exception as e:
            raise OCRFailure(f"OCR failed ({type(e).__name__}): {e}") from e

        if not recognized.text.strip():
            raise OCRFailure("No text recognized on the selected page")
        logger.info("Extracted %d lines (avg conf %.2f)",
                    recognized.block_count, recognized.average_confidence)
        return recognized
