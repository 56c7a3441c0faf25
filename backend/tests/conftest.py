"""
Shared fixtures for backend tests.

Every test gets a fresh in-memory SQLite database with the production
schema from db/database.py.  Pages are synthesised with numpy so no image
files or Tesseract binary are needed; OCR is replaced by scripted engines.
"""
import asyncio
import json

import numpy as np
import pytest
import aiosqlite

from db.database import SCHEMA
from services.capture import CapturedPage
from services.categorize_service import CategorizationRequest, CategorizationTransport
from services.ocr_service import OCREngine, RecognitionLevel, RecognizedText
from services.quality_service import QualityScore


# ── Pages ────────────────────────────────────────────────────────────────────

def make_page(arr) -> CapturedPage:
    """Build a single-channel page from a 2-D array of 0–255 intensities."""
    arr = np.ascontiguousarray(np.asarray(arr, dtype=np.uint8))
    h, w = arr.shape
    return CapturedPage(pixels=arr.tobytes(), width=w, height=h, bytes_per_row=w)


def flat_page(value=128, size=64) -> CapturedPage:
    return make_page(np.full((size, size), value))


def checkerboard_page(size=64) -> CapturedPage:
    yy, xx = np.indices((size, size))
    return make_page(np.where((yy + xx) % 2 == 0, 255, 0))


def tagged_page(tag: int, size=16) -> CapturedPage:
    """A flat page whose intensity identifies it to a scripted engine."""
    return flat_page(value=tag, size=size)


# ── OCR engines ──────────────────────────────────────────────────────────────

class ScriptedOCR(OCREngine):
    """
    Returns a fixed RecognizedText per recognition level and counts calls.
    `raises` makes every call fail with that exception.
    """

    def __init__(self, fast=None, accurate=None, raises=None):
        self.fast = fast or RecognizedText()
        self.accurate = accurate or RecognizedText()
        self.raises = raises
        self.calls: list[RecognitionLevel] = []
        self.images = []

    async def recognize(self, image, level):
        self.calls.append(level)
        self.images.append(image)
        if self.raises is not None:
            raise self.raises
        return self.fast if level is RecognitionLevel.FAST else self.accurate


class BlockingOCR(OCREngine):
    """Never finishes; records starts and cancellations."""

    def __init__(self):
        self.started = 0
        self.cancelled = 0

    async def recognize(self, image, level):
        self.started += 1
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.cancelled += 1
            raise


class TaggedScorer:
    """Scores a tagged page by looking its tag up in a table of totals."""

    def __init__(self, totals: dict[int, float]):
        self.totals = totals
        self.scored: list[int] = []

    async def score(self, page):
        tag = int(page.intensity_plane()[0, 0])
        self.scored.append(tag)
        total = self.totals[tag]
        return QualityScore(total=total, text=total, sharpness=0.0, contrast=0.0)


# ── Categorization ───────────────────────────────────────────────────────────

class FakeTransport(CategorizationTransport):
    """Returns a canned body (or raises) and records every request."""

    def __init__(self, response="", raises=None, delay=0.0):
        self.response = response
        self.raises = raises
        self.delay = delay
        self.requests: list[CategorizationRequest] = []

    async def send(self, request):
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.raises is not None:
            raise self.raises
        return self.response


MILK_FENCED = (
    '```json\n'
    '{"items":[{"itemName":"Milk","category":"Dairy & Eggs","quantity":1,"amount":1.29}]}\n'
    '```'
)

TWO_ITEMS = json.dumps({"items": [
    {"itemName": "Milk", "category": "Dairy & Eggs", "quantity": 2, "amount": 2.58},
    {"itemName": "Bread", "category": "Bakery", "quantity": 1, "amount": 2.10},
]})


RECEIPT_TEXT = (
    "ALDI Nord\n"
    "Filiale 4\n"
    "18/01/2026 14:32\n"
    "Milk 1.29\n"
    "Bread 2.10\n"
    "TOTAL 3.39"
)


@pytest.fixture
def receipt_text():
    return RecognizedText.from_pairs(
        (line, 0.9) for line in RECEIPT_TEXT.splitlines()
    )


# ── Database ─────────────────────────────────────────────────────────────────

@pytest.fixture
async def db():
    """Yield a fresh in-memory SQLite connection with the full schema."""
    async with aiosqlite.connect(":memory:") as conn:
        conn.row_factory = aiosqlite.Row
        await conn.executescript(SCHEMA)
        yield conn
