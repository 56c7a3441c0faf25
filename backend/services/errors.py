"""
Receipt import failures.

Every failure the import pipeline can surface to the review screen is a
subclass of ReceiptImportError.  Each class carries a stable ``kind`` string
and a ``user_message`` so the caller can show a targeted message without
parsing exception text.  Quality scoring never raises any of these; only
the load-bearing stages (capture guard, text extraction, categorization) do.
"""
from typing import Optional


class ReceiptImportError(Exception):
    """Base class for all import pipeline failures."""

    kind = "import_failure"
    user_message = "Something went wrong while importing this receipt."

    def __init__(self, detail: str = ""):
        super().__init__(detail or self.user_message)
        self.detail = detail

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.user_message, "detail": self.detail}


class CaptureEmpty(ReceiptImportError):
    kind = "capture_empty"
    user_message = "No receipt pages were captured. Try scanning again."


class OCRFailure(ReceiptImportError):
    kind = "ocr_failure"
    user_message = "Couldn't read this receipt. Retake the photo in good light."


# ── Categorization ────────────────────────────────────────────────────────────

class CategorizationError(ReceiptImportError):
    """Raised when the remote categorization round trip fails."""

    kind = "categorization_failure"


class TransportFailure(CategorizationError):
    kind = "transport_failure"
    user_message = "Couldn't reach the categorization service. Check your connection."


class AuthFailure(CategorizationError):
    kind = "auth_failure"
    user_message = "The categorization service rejected our credentials. Sign in again."


class ServerFailure(CategorizationError):
    kind = "server_failure"
    user_message = "The categorization service had a problem. Try again in a moment."

    def __init__(self, status_code: int, body: str = ""):
        super().__init__(f"HTTP {status_code}: {body[:500]}")
        self.status_code = status_code
        self.body = body


class MalformedResponseFailure(CategorizationError):
    kind = "malformed_response"
    user_message = "The categorization service sent an answer we couldn't understand."

    def __init__(self, detail: str, raw_text: Optional[str] = None):
        super().__init__(detail)
        self.raw_text = raw_text


class EmptyResultFailure(CategorizationError):
    kind = "empty_result"
    user_message = "No items were found on this receipt."
