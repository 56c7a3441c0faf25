"""
Environment configuration and pipeline wiring.

Every setting comes from an environment variable with a sensible default so
the container runs with nothing but PROCESS_RECEIPT_URL (or an Anthropic
key) set.
"""
import os
from dataclasses import dataclass

from services.categorize_service import (
    DEFAULT_ANTHROPIC_MODEL,
    AnthropicTransport,
    CategorizationClient,
    CategorizationTransport,
    EndpointTransport,
)
from services.extraction_service import ReceiptDateExtractor
from services.import_service import ReceiptImportOrchestrator
from services.ocr_service import OCREngine, ReceiptTextExtractor, TesseractOCR
from services.page_selector import BestPageSelector
from services.quality_service import PageQualityScorer, ScoringWeights, TextSignalScorer



def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


@dataclass(frozen=True)
class Settings:
    log_level: str = "INFO"
    db_path: str = "/data/basketscan.db"
    categorize_backend: str = "endpoint"      # endpoint | anthropic
    process_receipt_url: str = ""
    process_receipt_token: str = ""
    categorize_timeout: float = 30.0
    anthropic_api_key: str = ""
    anthropic_model: str = DEFAULT_ANTHROPIC_MODEL
    ocr_lang: str = "eng"
    date_day_first: bool = True
    weight_text: float = 0.5
    weight_sharpness: float = 0.3
    weight_contrast: float = 0.2
    cors_origins: str = ""

    @property
    def scoring_weights(self) -> ScoringWeights:
        return ScoringWeights(
            text=self.weight_text,
            sharpness=self.weight_sharpness,
            contrast=self.weight_contrast,
        )


def load_settings() -> Settings:
    return Settings(
        log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        db_path=os.environ.get("DB_PATH", "/data/basketscan.db"),
        categorize_backend=os.environ.get("CATEGORIZE_BACKEND", "endpoint").strip().lower(),
        process_receipt_url=os.environ.get("PROCESS_RECEIPT_URL", ""),
        process_receipt_token=os.environ.get("PROCESS_RECEIPT_TOKEN", ""),
        categorize_timeout=_env_float("CATEGORIZE_TIMEOUT", 30.0),
        anthropic_api_key=os.environ.get("ANTHROPIC_API_KEY", ""),
        anthropic_model=os.environ.get("ANTHROPIC_MODEL", DEFAULT_ANTHROPIC_MODEL),
        ocr_lang=os.environ.get("OCR_LANG", "eng"),
        date_day_first=_env_bool("DATE_DAY_FIRST", True),
        weight_text=_env_float("SCORE_WEIGHT_TEXT", 0.5),
        weight_sharpness=_env_float("SCORE_WEIGHT_SHARPNESS", 0.3),
        weight_contrast=_env_float("SCORE_WEIGHT_CONTRAST", 0.2),
        cors_origins=os.environ.get("CORS_ORIGINS", "").strip(),
    )


def build_transport(settings: Settings) -> CategorizationTransport:
    match settings.categorize_backend:
        case "endpoint":
            return EndpointTransport(
                url=settings.process_receipt_url,
                token=settings.process_receipt_token,
                timeout=settings.categorize_timeout,
            )
        case "anthropic":
            return AnthropicTransport(
                api_key=settings.anthropic_api_key,
                model=settings.anthropic_model,
                timeout=settings.categorize_timeout,
            )
        case _:
            raise ValueError(
                f"Unknown CATEGORIZE_BACKEND: {settings.categorize_backend!r} "
                f"(choose endpoint or anthropic)"
            )


def build_quality_scorer(settings: Settings, engine: OCREngine | None = None) -> PageQualityScorer:
    engine = engine or TesseractOCR(lang=settings.ocr_lang)
    return PageQualityScorer(TextSignalScorer(engine), weights=settings.scoring_weights)


def build_orchestrator(settings: Settings, engine: OCREngine | None = None) -> ReceiptImportOrchestrator:
    engine = engine or TesseractOCR(lang=settings.ocr_lang)
    return ReceiptImportOrchestrator(
        selector=BestPageSelector(build_quality_scorer(settings, engine)),
        extractor=ReceiptTextExtractor(engine),
        client=CategorizationClient(build_transport(settings), timeout=settings.categorize_timeout),
        date_extractor=ReceiptDateExtractor(day_first=settings.date_day_first),
    )
