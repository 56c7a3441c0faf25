from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime

from services.import_service import ImportedTransaction, ReceiptImportResult
from services.quality_service import QualityReport, QualityScore


# ── Quality ────────────────────────────────────────────
class QualityScoreOut(BaseModel):
    total: float
    text: float
    sharpness: float
    contrast: float

    @classmethod
    def from_score(cls, score: QualityScore) -> "QualityScoreOut":
        return cls(
            total=score.total,
            text=score.text,
            sharpness=score.sharpness,
            contrast=score.contrast,
        )


class QualityIssueOut(BaseModel):
    code: str
    message: str
    critical: bool


class QualityReportOut(BaseModel):
    score: QualityScoreOut
    brightness: float
    text_lines: int
    acceptable: bool
    issues: List[QualityIssueOut] = []

    @classmethod
    def from_report(cls, report: QualityReport) -> "QualityReportOut":
        return cls(
            score=QualityScoreOut.from_score(report.score),
            brightness=report.brightness,
            text_lines=report.text_lines,
            acceptable=report.is_acceptable,
            issues=[
                QualityIssueOut(code=i.value, message=i.message, critical=i.is_critical)
                for i in report.issues
            ],
        )


# ── Transaction ────────────────────────────────────────
class TransactionBase(BaseModel):
    store_name: str
    category: str
    item_name: str
    amount: float = Field(ge=0)
    date: datetime
    quantity: int = Field(default=1, ge=1)
    payment_method: str = "Unknown"


class TransactionIn(TransactionBase):
    """A reviewed transaction sent back by the review screen."""
    id: str


class Transaction(TransactionBase):
    id: str
    created_at: Optional[str] = None

    class Config:
        from_attributes = True

    @classmethod
    def from_imported(cls, tx: ImportedTransaction) -> "Transaction":
        return cls(
            id=str(tx.id),
            store_name=tx.store_name,
            category=tx.category,
            item_name=tx.item_name,
            amount=tx.amount,
            date=tx.date,
            quantity=tx.quantity,
            payment_method=tx.payment_method,
        )


class SaveTransactionsBody(BaseModel):
    transactions: List[TransactionIn]


class SaveTransactionsResult(BaseModel):
    saved: int
    skipped: int


# ── Import ─────────────────────────────────────────────
class ImportTextBody(BaseModel):
    text: str


class ImportResponse(BaseModel):
    """Returned to the review screen; nothing is persisted yet."""
    store: str
    date: datetime
    raw_text: str
    selected_page: Optional[int] = None
    page_scores: List[QualityScoreOut] = []
    transactions: List[Transaction] = []

    @classmethod
    def from_result(cls, result: ReceiptImportResult) -> "ImportResponse":
        return cls(
            store=result.facts.store.display_name,
            date=result.facts.date,
            raw_text=result.facts.raw_text,
            selected_page=result.selected_page,
            page_scores=[QualityScoreOut.from_score(s) for s in result.page_scores],
            transactions=[Transaction.from_imported(t) for t in result.transactions],
        )
