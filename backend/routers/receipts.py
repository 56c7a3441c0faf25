"""
Receipts Router

POST /api/receipts/import       capture session pages → transactions for review
POST /api/receipts/import-text  shared/pasted receipt text → transactions for review
POST /api/receipts/quality      advisory quality report for a single page

Nothing here is persisted; the review screen saves accepted transactions
through /api/transactions.
"""
import logging
from typing import List

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile

from config import build_orchestrator, build_quality_scorer, load_settings
from models.schemas import ImportResponse, ImportTextBody, QualityReportOut
from services.capture import load_page
from services.errors import (
    CaptureEmpty,
    EmptyResultFailure,
    OCRFailure,
    ReceiptImportError,
    TransportFailure,
)
from services.import_service import ReceiptImportOrchestrator
from services.quality_service import PageQualityScorer

logger = logging.getLogger("basketscan.receipts")
router = APIRouter()


def get_orchestrator() -> ReceiptImportOrchestrator:
    return build_orchestrator(load_settings())


def get_quality_scorer() -> PageQualityScorer:
    return build_quality_scorer(load_settings())


def import_error_status(error: ReceiptImportError) -> int:
    if isinstance(error, CaptureEmpty):
        return 400
    if isinstance(error, (OCRFailure, EmptyResultFailure)):
        return 422
    if isinstance(error, TransportFailure):
        return 504
    return 502


def _http_error(error: ReceiptImportError) -> HTTPException:
    status = import_error_status(error)
    logger.warning("Import failed → %s (%s): %s", status, error.kind, error)
    return HTTPException(status_code=status, detail=error.to_dict())


@router.post("/import", response_model=ImportResponse)
async def import_receipt(
    files: List[UploadFile] = File(...),
    orchestrator: ReceiptImportOrchestrator = Depends(get_orchestrator),
):
    """
    Accept every page of one capture session, pick the best one, read it and
    categorize its line items.  Returns the proposed transactions.
    """
    pages = []
    for upload in files:
        contents = await upload.read()
        pages.append(load_page(contents))
    logger.info("Import: %d page(s) received", len(pages))

    try:
        result = await orchestrator.run(pages)
    except ReceiptImportError as e:
        raise _http_error(e) from e
    return ImportResponse.from_result(result)


@router.post("/import-text", response_model=ImportResponse)
async def import_receipt_text(
    body: ImportTextBody,
    orchestrator: ReceiptImportOrchestrator = Depends(get_orchestrator),
):
    try:
        result = await orchestrator.import_text(body.text)
    except ReceiptImportError as e:
        raise _http_error(e) from e
    return ImportResponse.from_result(result)


@router.post("/quality", response_model=QualityReportOut)
async def check_quality(
    file: UploadFile = File(...),
    scorer: PageQualityScorer = Depends(get_quality_scorer),
):
    """Score one page and list fixable problems before the user commits to it."""
    page = load_page(await file.read())
    if not page.has_pixels:
        raise HTTPException(status_code=400, detail="Could not decode image")
    report = await scorer.assess(page)
    return QualityReportOut.from_report(report)
