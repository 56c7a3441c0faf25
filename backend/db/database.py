import logging
import aiosqlite
import os
from typing import Iterable, Optional

from config import load_settings

logger = logging.getLogger("basketscan.db")
DB_PATH = load_settings().db_path

async def get_db() -> aiosqlite.Connection:
    """Dependency: yields an open DB connection."""
    async with aiosqlite.connect(DB_PATH) as db:
        db.row_factory = aiosqlite.Row
        yield db

async def init_db():
    """Create the transactions table if it doesn't exist."""
    db_dir = os.path.dirname(DB_PATH)
    if db_dir:
        os.makedirs(db_dir, exist_ok=True)
    async with aiosqlite.connect(DB_PATH) as db:
        await db.executescript(SCHEMA)
        await db.commit()
    logger.info("Initialized at %s", DB_PATH)


SCHEMA = """
-- Reviewed transactions, one row per receipt line item
CREATE TABLE IF NOT EXISTS transactions (
    id              TEXT PRIMARY KEY,      -- uuid4 assigned at import time
    store_name      TEXT NOT NULL,
    category        TEXT NOT NULL,
    item_name       TEXT NOT NULL,
    amount          REAL NOT NULL,
    date            TEXT NOT NULL,         -- ISO timestamp from the receipt (or capture time)
    quantity        INTEGER NOT NULL DEFAULT 1,
    payment_method  TEXT NOT NULL DEFAULT 'Unknown',
    created_at      TEXT DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_transactions_date ON transactions(date);
"""


async def save_transactions(db: aiosqlite.Connection, rows: Iterable[dict]) -> int:
    """
    Insert reviewed transactions.  Rows whose id already exists are ignored
    so re-submitting a review screen never duplicates spending.
    Returns the number of rows actually inserted.
    """
    saved = 0
    for row in rows:
        cur = await db.execute(
            """INSERT OR IGNORE INTO transactions
               (id, store_name, category, item_name, amount, date, quantity, payment_method)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (row["id"], row["store_name"], row["category"], row["item_name"],
             row["amount"], row["date"], row["quantity"], row["payment_method"]),
        )
        saved += cur.rowcount
    await db.commit()
    return saved


async def list_transactions(
    db: aiosqlite.Connection,
    store_name: Optional[str] = None,
    category: Optional[str] = None,
    limit: int = 200,
) -> list[dict]:
    query = "SELECT * FROM transactions WHERE 1=1"
    params: list = []
    if store_name:
        query += " AND store_name = ?"
        params.append(store_name)
    if category:
        query += " AND category = ?"
        params.append(category)
    query += " ORDER BY date DESC, created_at DESC LIMIT ?"
    params.append(limit)

    async with db.execute(query, params) as cur:
        rows = await cur.fetchall()
    return [dict(row) for row in rows]
