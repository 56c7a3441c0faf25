"""
Page Quality Service

Ranks candidate pages from one capture session by how well they are likely
to OCR.  Three signals are combined:

  text      a fast OCR pass: confidence, amount of text, presence of digits
  sharpness mean absolute Laplacian on a bounded sample grid
  contrast  population standard deviation of ~1000 sampled intensities

Pixel metrics sample a fixed number of points regardless of image size so a
multi-megapixel receipt photo is scored in milliseconds.  Scoring is
advisory: nothing here raises, a page without pixels just scores zero.
"""
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

import numpy as np

from services.capture import CapturedPage
from services.ocr_service import OCREngine, RecognitionLevel, RecognizedText

logger = logging.getLogger("basketscan.quality")

NEUTRAL_SCORE = 0.5
SHARPNESS_CEILING = 150.0   # mean |Laplacian| at which a page counts as fully sharp
CONTRAST_CEILING = 80.0     # intensity stddev at which contrast counts as full
GRID_SAMPLES = 100          # sample points per axis for sharpness
CONTRAST_SAMPLES = 1000


def _clamp(value: float) -> float:
    return min(max(float(value), 0.0), 1.0)


def _check_weights(*weights: float) -> None:
    if any(w < 0 for w in weights):
        raise ValueError(f"Weights must be non-negative, got {weights}")
    if abs(sum(weights) - 1.0) > 1e-6:
        raise ValueError(f"Weights must sum to 1.0, got {sum(weights):.4f}")


@dataclass(frozen=True)
class TextScoreWeights:
    confidence: float = 0.5
    density: float = 0.3
    digits: float = 0.2
    block_ceiling: int = 50   # text blocks at which density saturates

    def __post_init__(self):
        _check_weights(self.confidence, self.density, self.digits)
        if self.block_ceiling <= 0:
            raise ValueError("block_ceiling must be positive")


@dataclass(frozen=True)
class ScoringWeights:
    text: float = 0.5
    sharpness: float = 0.3
    contrast: float = 0.2

    def __post_init__(self):
        _check_weights(self.text, self.sharpness, self.contrast)


@dataclass(frozen=True)
class QualityScore:
    total: float
    text: float
    sharpness: float
    contrast: float


# ── Pixel metrics ─────────────────────────────────────────────────────────────

class QualitySampler:
    """Sharpness / contrast / brightness from a page's raw intensity channel."""

    def __init__(
        self,
        sharpness_ceiling: float = SHARPNESS_CEILING,
        contrast_ceiling: float = CONTRAST_CEILING,
        grid_samples: int = GRID_SAMPLES,
        contrast_samples: int = CONTRAST_SAMPLES,
    ):
        self.sharpness_ceiling = sharpness_ceiling
        self.contrast_ceiling = contrast_ceiling
        self.grid_samples = grid_samples
        self.contrast_samples = contrast_samples

    def sharpness(self, page: CapturedPage) -> float:
        """
        Mean of |4·c − top − bottom − left − right| over a grid of at most
        grid_samples × grid_samples points, divided by the ceiling.

        The grid stride per axis is max(dimension // grid_samples, 1); rows
        and columns within one stride of the border are never sampled, so
        the four neighbours always exist.
        """
        plane = page.intensity_plane()
        if plane is None:
            return NEUTRAL_SCORE

        h, w = plane.shape
        step_y = max(h // self.grid_samples, 1)
        step_x = max(w // self.grid_samples, 1)
        ys = np.arange(step_y, h - step_y, step_y)
        xs = np.arange(step_x, w - step_x, step_x)
        if ys.size == 0 or xs.size == 0:
            return 0.0

        yy, xx = np.meshgrid(ys, xs, indexing="ij")
        center = plane[yy, xx].astype(np.float64)
        laplacian = np.abs(
            4.0 * center
            - plane[yy - 1, xx]
            - plane[yy + 1, xx]
            - plane[yy, xx - 1]
            - plane[yy, xx + 1]
        )
        return _clamp(laplacian.mean() / self.sharpness_ceiling)

    def _even_samples(self, plane: np.ndarray) -> np.ndarray:
        # Every step-th pixel in row-major order, without copying the plane
        h, w = plane.shape
        step = max((h * w) // self.contrast_samples, 1)
        idx = np.arange(0, h * w, step)
        return plane[idx // w, idx % w].astype(np.float64)

    def contrast(self, page: CapturedPage) -> float:
        plane = page.intensity_plane()
        if plane is None:
            return NEUTRAL_SCORE
        samples = self._even_samples(plane)
        if samples.size == 0:
            return 0.0
        return _clamp(samples.std() / self.contrast_ceiling)

    def brightness(self, page: CapturedPage) -> float:
        plane = page.intensity_plane()
        if plane is None:
            return NEUTRAL_SCORE
        samples = self._even_samples(plane)
        if samples.size == 0:
            return NEUTRAL_SCORE
        return _clamp(samples.mean() / 255.0)


# ── Text signal ───────────────────────────────────────────────────────────────

class TextSignalScorer:
    """Reduces a fast OCR pass to one 0–1 number for ranking pages."""

    def __init__(self, engine: OCREngine, weights: Optional[TextScoreWeights] = None):
        self._engine = engine
        self.weights = weights or TextScoreWeights()

    def score_recognized(self, recognized: RecognizedText) -> float:
        if recognized.block_count == 0:
            return 0.0
        w = self.weights
        density = min(recognized.block_count / w.block_ceiling, 1.0)
        digits = 1.0 if recognized.has_digits else 0.0
        return _clamp(
            w.confidence * _clamp(recognized.average_confidence)
            + w.density * density
            + w.digits * digits
        )

    async def recognize(self, page: CapturedPage) -> RecognizedText:
        """Fast OCR pass; any failure yields empty text rather than an error."""
        try:
            image = page.to_image()
            return await self._engine.recognize(image, RecognitionLevel.FAST)
        except Exception as e:
            logger.warning("Fast OCR pass failed for %r: %s", page, e)
            return RecognizedText()

    async def text_score(self, page: CapturedPage) -> float:
        return self.score_recognized(await self.recognize(page))


# ── Combined page score ───────────────────────────────────────────────────────

class QualityIssue(str, Enum):
    LOW_RESOLUTION = "low_resolution"
    INSUFFICIENT_TEXT = "insufficient_text"
    POOR_TEXT_QUALITY = "poor_text_quality"
    NO_CURRENCY_OR_TOTAL = "no_currency_or_total"
    TEXT_NOT_READABLE = "text_not_readable"
    NO_NUMBERS = "no_numbers"
    NO_RECEIPT_PATTERN = "no_receipt_pattern"
    TOO_BLURRY = "too_blurry"
    LOW_CONTRAST = "low_contrast"
    POOR_LIGHTING = "poor_lighting"

    @property
    def message(self) -> str:
        return _ISSUE_MESSAGES[self]

    @property
    def is_critical(self) -> bool:
        return self in _CRITICAL_ISSUES


_ISSUE_MESSAGES = {
    QualityIssue.LOW_RESOLUTION: "Image resolution too low. Move closer to the receipt.",
    QualityIssue.INSUFFICIENT_TEXT: "Not enough text detected. Ensure the entire receipt is visible.",
    QualityIssue.POOR_TEXT_QUALITY: "Text is not clear enough. Ensure text is sharp and readable.",
    QualityIssue.NO_CURRENCY_OR_TOTAL: "No prices found. Make sure the receipt total is visible.",
    QualityIssue.TEXT_NOT_READABLE: "Cannot read text on receipt. Ensure good lighting and hold steady.",
    QualityIssue.NO_NUMBERS: "No prices or numbers detected. Make sure amounts are visible.",
    QualityIssue.NO_RECEIPT_PATTERN: (
        "This doesn't look like a receipt. Make sure the receipt text is clearly visible."
    ),
    QualityIssue.TOO_BLURRY: "Image is too blurry. Hold your device steady.",
    QualityIssue.LOW_CONTRAST: "Low contrast. Avoid shadows and ensure even lighting.",
    QualityIssue.POOR_LIGHTING: "Poor lighting detected. Ensure good lighting conditions.",
}

_CRITICAL_ISSUES = frozenset({
    QualityIssue.LOW_RESOLUTION,
    QualityIssue.INSUFFICIENT_TEXT,
    QualityIssue.POOR_TEXT_QUALITY,
    QualityIssue.NO_CURRENCY_OR_TOTAL,
    QualityIssue.TEXT_NOT_READABLE,
})

MIN_RESOLUTION = 600
MIN_TEXT_LINES = 8
MIN_TEXT_CONFIDENCE = 0.6
MIN_PRICE_PATTERNS = 2
MIN_HIGH_CONFIDENCE_LINES = 5
MIN_SHARPNESS = 0.35
MIN_CONTRAST = 0.25
MIN_ACCEPTABLE_SCORE = 0.6

VALID_LINE_CONFIDENCE = 0.3    # lines at or below this are ignored by the report
HIGH_LINE_CONFIDENCE = 0.7

PRICE_PATTERN = re.compile(
    r"(?:€|\$|£|EUR|USD|GBP)?\s*\d+[.,]\d{2}|\d+[.,]\d{2}\s*(?:€|\$|£|EUR)?",
    re.IGNORECASE,
)
CURRENCY_MARKERS = ("€", "$", "£", "eur")
RECEIPT_KEYWORDS = (
    "total", "totaal", "subtotal", "tax", "btw", "vat", "tva",
    "amount", "bedrag", "sum", "som", "change", "wisselgeld",
    "cash", "card", "visa", "mastercard", "maestro", "bancontact",
    "receipt", "bon", "ticket", "invoice", "factuur", "qty", "quantity",
)


@dataclass(frozen=True)
class TextAnalysis:
    """Receipt-shaped signals over the lines OCR is reasonably sure of."""

    line_count: int = 0
    average_confidence: float = 0.0
    high_confidence_lines: int = 0
    price_patterns: int = 0
    has_numbers: bool = False
    has_currency: bool = False
    has_keywords: bool = False

    @classmethod
    def of(cls, recognized: RecognizedText) -> "TextAnalysis":
        valid = [line for line in recognized.lines if line.confidence > VALID_LINE_CONFIDENCE]
        if not valid:
            return cls()
        lowered = [line.text.lower() for line in valid]
        return cls(
            line_count=len(valid),
            average_confidence=sum(line.confidence for line in valid) / len(valid),
            high_confidence_lines=sum(1 for line in valid if line.confidence > HIGH_LINE_CONFIDENCE),
            price_patterns=sum(len(PRICE_PATTERN.findall(text)) for text in lowered),
            has_numbers=any(ch.isdigit() for text in lowered for ch in text),
            has_currency=any(m in text for text in lowered for m in CURRENCY_MARKERS),
            has_keywords=any(k in text for text in lowered for k in RECEIPT_KEYWORDS),
        )


@dataclass(frozen=True)
class QualityReport:
    score: QualityScore
    brightness: float
    text_lines: int
    issues: list[QualityIssue] = field(default_factory=list)

    @property
    def is_acceptable(self) -> bool:
        return self.score.total >= MIN_ACCEPTABLE_SCORE and not any(i.is_critical for i in self.issues)


class PageQualityScorer:
    """0.5·text + 0.3·sharpness + 0.2·contrast (weights configurable)."""

    def __init__(
        self,
        text_scorer: TextSignalScorer,
        sampler: Optional[QualitySampler] = None,
        weights: Optional[ScoringWeights] = None,
    ):
        self.text_scorer = text_scorer
        self.sampler = sampler or QualitySampler()
        self.weights = weights or ScoringWeights()

    def combine(self, text: float, sharpness: float, contrast: float) -> QualityScore:
        text, sharpness, contrast = _clamp(text), _clamp(sharpness), _clamp(contrast)
        w = self.weights
        total = w.text * text + w.sharpness * sharpness + w.contrast * contrast
        return QualityScore(total=_clamp(total), text=text, sharpness=sharpness, contrast=contrast)

    def _unreadable_score(self, page: CapturedPage) -> QualityScore:
        # components stay neutral for display; the total loses every comparison
        return QualityScore(
            total=0.0,
            text=0.0,
            sharpness=self.sampler.sharpness(page),
            contrast=self.sampler.contrast(page),
        )

    async def score(self, page: CapturedPage) -> QualityScore:
        if not page.has_pixels:
            logger.debug("Scored %r: no pixel buffer, total=0", page)
            return self._unreadable_score(page)
        text = await self.text_scorer.text_score(page)
        result = self.combine(text, self.sampler.sharpness(page), self.sampler.contrast(page))
        logger.debug("Scored %r: total=%.3f text=%.3f sharp=%.3f contrast=%.3f",
                     page, result.total, result.text, result.sharpness, result.contrast)
        return result

    async def assess(self, page: CapturedPage) -> QualityReport:
        """
        Score a page and list what a user could fix before rescanning.

        Critical issues come first and make the page unacceptable on their
        own; the rest are warnings that only matter through the score.
        """
        recognized = await self.text_scorer.recognize(page)
        if page.has_pixels:
            score = self.combine(
                self.text_scorer.score_recognized(recognized),
                self.sampler.sharpness(page),
                self.sampler.contrast(page),
            )
        else:
            score = self._unreadable_score(page)
        brightness = self.sampler.brightness(page)
        text = TextAnalysis.of(recognized)

        critical = []
        if min(page.width, page.height) < MIN_RESOLUTION:
            critical.append(QualityIssue.LOW_RESOLUTION)
        if text.line_count < MIN_TEXT_LINES:
            critical.append(QualityIssue.INSUFFICIENT_TEXT)
        if text.average_confidence < MIN_TEXT_CONFIDENCE:
            critical.append(QualityIssue.POOR_TEXT_QUALITY)
        if text.price_patterns < MIN_PRICE_PATTERNS:
            critical.append(QualityIssue.NO_CURRENCY_OR_TOTAL)
        if text.high_confidence_lines < MIN_HIGH_CONFIDENCE_LINES:
            critical.append(QualityIssue.TEXT_NOT_READABLE)

        warnings = []
        if not text.has_numbers:
            warnings.append(QualityIssue.NO_NUMBERS)
        if not text.has_keywords and not text.has_currency:
            warnings.append(QualityIssue.NO_RECEIPT_PATTERN)
        if score.sharpness < MIN_SHARPNESS:
            warnings.append(QualityIssue.TOO_BLURRY)
        if score.contrast < MIN_CONTRAST:
            warnings.append(QualityIssue.LOW_CONTRAST)
        if brightness < 0.15 or brightness > 0.95:
            warnings.append(QualityIssue.POOR_LIGHTING)

        return QualityReport(
            score=score,
            brightness=brightness,
            text_lines=text.line_count,
            issues=critical + warnings,
        )
