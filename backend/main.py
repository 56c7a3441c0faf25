from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
import logging
import shutil
import subprocess
import time

from config import load_settings
from db.database import init_db
from routers import receipts, transactions

settings = load_settings()

# ── Logging setup ─────────────────────────────────────────────────────────────
LOG_LEVEL = settings.log_level
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
# Quiet noisy libraries unless we're in DEBUG
if LOG_LEVEL != "DEBUG":
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

logger = logging.getLogger("basketscan")

VERSION = "0.1.0"

app = FastAPI(
    title="BasketScan: Receipt Import",
    description="Multi-page receipt capture, best-page selection and AI categorization",
    version=VERSION,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins.split(",") if settings.cors_origins else ["*"],
    allow_credentials=bool(settings.cors_origins),  # only send credentials when origins are explicit
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(receipts.router,     prefix="/api/receipts",     tags=["receipts"])
app.include_router(transactions.router, prefix="/api/transactions", tags=["transactions"])


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.time()
    response = await call_next(request)
    elapsed = (time.time() - start) * 1000
    if LOG_LEVEL == "DEBUG" or response.status_code >= 400:
        logger.log(
            logging.WARNING if response.status_code >= 400 else logging.DEBUG,
            "%s %s → %s (%.0fms)",
            request.method, request.url.path, response.status_code, elapsed,
        )
    return response

@app.on_event("startup")
async def on_startup():
    logger.info("Starting BasketScan v%s  LOG_LEVEL=%s  DB=%s  categorize=%s",
                VERSION, LOG_LEVEL, settings.db_path, settings.categorize_backend)
    await init_db()

@app.get("/api/health")
async def health():
    return {"status": "ok", "version": VERSION}


@app.get("/api/diagnose")
async def diagnose():
    """Check that OCR, imaging and categorization are usable inside the container."""
    results = {}

    tesseract = shutil.which("tesseract")
    if tesseract is None:
        results["tesseract"] = {"ok": False, "error": "tesseract binary not found in PATH"}
    else:
        try:
            r = subprocess.run([tesseract, "--version"], capture_output=True, text=True, timeout=5)
            results["tesseract"] = {"ok": r.returncode == 0, "version": r.stdout.split("\n")[0].strip()}
        except (OSError, subprocess.SubprocessError) as e:
            results["tesseract"] = {"ok": False, "error": str(e)}

    from services.ocr_service import OCR_AVAILABLE
    results["pytesseract"] = {"ok": OCR_AVAILABLE}

    from services.capture import HEIF_AVAILABLE
    results["heic_support"] = {"ok": HEIF_AVAILABLE}
    if not HEIF_AVAILABLE:
        results["heic_support"]["error"] = "pillow-heif not installed, HEIC files unsupported"

    current = load_settings()
    if current.categorize_backend == "anthropic":
        # never expose key material, only report presence
        key = current.anthropic_api_key
        results["categorization"] = {
            "ok": bool(key and key.startswith("sk-")),
            "backend": "anthropic",
            "model": current.anthropic_model,
        }
    else:
        results["categorization"] = {
            "ok": bool(current.process_receipt_url),
            "backend": current.categorize_backend,
            "token_set": bool(current.process_receipt_token),
        }

    return {"all_ok": all(v.get("ok") for v in results.values()), "checks": results}
