"""
Transactions Router

GET  /api/transactions  list saved transactions (newest first)
POST /api/transactions  persist transactions accepted on the review screen
"""
import logging
from typing import Optional

import aiosqlite
from fastapi import APIRouter, Depends, Query

from db.database import get_db, list_transactions, save_transactions
from models.schemas import SaveTransactionsBody, SaveTransactionsResult, Transaction

logger = logging.getLogger("basketscan.transactions")
router = APIRouter()


@router.get("", response_model=list[Transaction])
async def get_transactions(
    store_name: Optional[str] = None,
    category: Optional[str] = None,
    limit: int = Query(200, ge=1, le=1000),
    db: aiosqlite.Connection = Depends(get_db),
):
    rows = await list_transactions(db, store_name=store_name, category=category, limit=limit)
    return [Transaction(**row) for row in rows]


@router.post("", response_model=SaveTransactionsResult)
async def post_transactions(
    body: SaveTransactionsBody,
    db: aiosqlite.Connection = Depends(get_db),
):
    rows = [
        {**tx.model_dump(), "date": tx.date.isoformat()}
        for tx in body.transactions
    ]
    saved = await save_transactions(db, rows)
    skipped = len(rows) - saved
    if skipped:
        logger.info("Skipped %d already-saved transaction(s)", skipped)
    return SaveTransactionsResult(saved=saved, skipped=skipped)
