"""
Receipt import: one call from captured pages to reviewable transactions.

    select best page → extract text → detect store + date → categorize
    → one ImportedTransaction per categorized line item

Failures propagate unchanged from the stage that raised them.  An OCR
failure stops the import before any categorization request is made.
Cancelling the awaiting task cancels in-flight OCR / network work and no
partial transaction list is ever returned.
"""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional, Sequence

from services.capture import CapturedPage
from services.categorize_service import CategorizationClient, CategorizedLineItem
from services.errors import CaptureEmpty, OCRFailure
from services.extraction_service import (
    DetectedStore,
    ReceiptDateExtractor,
    ReceiptFacts,
    detect_store,
)
from services.ocr_service import ReceiptTextExtractor
from services.page_selector import BestPageSelector, PageSelection
from services.quality_service import QualityScore

logger = logging.getLogger("basketscan.import")

DEFAULT_PAYMENT_METHOD = "Unknown"


@dataclass(frozen=True)
class ImportedTransaction:
    id: uuid.UUID
    store_name: str
    category: str
    item_name: str
    amount: float
    date: datetime
    quantity: int
    payment_method: str = DEFAULT_PAYMENT_METHOD

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "store_name": self.store_name,
            "category": self.category,
            "item_name": self.item_name,
            "amount": self.amount,
            "date": self.date.isoformat(),
            "quantity": self.quantity,
            "payment_method": self.payment_method,
        }


@dataclass(frozen=True)
class ReceiptImportResult:
    facts: ReceiptFacts
    transactions: list[ImportedTransaction]
    selected_page: Optional[int] = None            # None for text-only imports
    page_scores: tuple[QualityScore, ...] = field(default_factory=tuple)


class ReceiptImportOrchestrator:

    def __init__(
        self,
        selector: BestPageSelector,
        extractor: ReceiptTextExtractor,
        client: CategorizationClient,
        store_detector: Callable[[str], DetectedStore] = detect_store,
        date_extractor: Optional[ReceiptDateExtractor] = None,
        clock: Callable[[], datetime] = datetime.now,
        payment_method: str = DEFAULT_PAYMENT_METHOD,
    ):
        self.selector = selector
        self.extractor = extractor
        self.client = client
        self.store_detector = store_detector
        self.date_extractor = date_extractor or ReceiptDateExtractor()
        self.clock = clock
        self.payment_method = payment_method

    def extract_facts(self, text: str) -> ReceiptFacts:
        # Independent pure functions over the same text
        store = self.store_detector(text)
        date = self.date_extractor.extract_date(text)
        if date is None:
            logger.info("No date found on receipt, using capture time")
            date = self.clock()
        return ReceiptFacts(store=store, date=date, raw_text=text)

    def materialize(
        self, facts: ReceiptFacts, items: Sequence[CategorizedLineItem]
    ) -> list[ImportedTransaction]:
        return [
            ImportedTransaction(
                id=uuid.uuid4(),
                store_name=facts.store.display_name,
                category=item.category,
                item_name=item.item_name,
                amount=item.amount,
                date=facts.date,
                quantity=item.quantity,
                payment_method=self.payment_method,
            )
            for item in items
        ]

    async def _categorize_facts(self, facts: ReceiptFacts) -> list[ImportedTransaction]:
        items = await self.client.categorize(facts.raw_text)
        transactions = self.materialize(facts, items)
        logger.info("Imported %d transactions from %s (%s)",
                    len(transactions), facts.store.display_name, facts.date.date().isoformat())
        return transactions

    async def run(self, pages: Sequence[CapturedPage]) -> ReceiptImportResult:
        if not pages:
            raise CaptureEmpty("No pages to import")

        selection: PageSelection = await self.selector.select(pages)
        recognized = await self.extractor.extract_text(selection.page)
        facts = self.extract_facts(recognized.text)
        transactions = await self._categorize_facts(facts)
        return ReceiptImportResult(
            facts=facts,
            transactions=transactions,
            selected_page=selection.index,
            page_scores=selection.scores,
        )

    async def import_from(self, pages: Sequence[CapturedPage]) -> list[ImportedTransaction]:
        return (await self.run(pages)).transactions

    async def import_text(self, text: str) -> ReceiptImportResult:
        """Import receipt text that arrived without an image (share sheet, paste)."""
        if not text or not text.strip():
            raise OCRFailure("Receipt text is empty")
        facts = self.extract_facts(text)
        transactions = await self._categorize_facts(facts)
        return ReceiptImportResult(facts=facts, transactions=transactions)
