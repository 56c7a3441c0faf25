"""
Categorization Service

Sends recognized receipt text to a remote categorization service and turns
its answer into typed line items.  Two transports are available:

  endpoint  POST {"text", "categories"} to the app's process-receipt API
  anthropic ask Claude directly with the category list in the prompt

Either way the raw body may arrive wrapped in markdown fences or chatter,
so it is unwrapped deterministically before parsing.  Labels outside the
closed category set become "Others".  No call is ever retried here: every
failure surfaces immediately as one CategorizationError subclass and the
review screen decides whether to offer a retry.
"""
import asyncio
import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence

import anthropic
import httpx
from pydantic import BaseModel, ValidationError

from services.errors import (
    AuthFailure,
    CategorizationError,
    EmptyResultFailure,
    MalformedResponseFailure,
    ServerFailure,
    TransportFailure,
)

logger = logging.getLogger("basketscan.categorize")

DEFAULT_TIMEOUT = 30.0
DEFAULT_ANTHROPIC_MODEL = "claude-haiku-4-5"


class TransactionCategory(str, Enum):
    MEAT_FISH = "Meat & Fish"
    ALCOHOL = "Alcohol"
    DRINKS = "Drinks (Soft/Soda)"
    DRINKS_WATER = "Drinks (Water)"
    HOUSEHOLD = "Household"
    SNACKS_SWEETS = "Snacks & Sweets"
    FRESH_PRODUCE = "Fresh Produce"
    DAIRY_EGGS = "Dairy & Eggs"
    READY_MEALS = "Ready Meals"
    BAKERY = "Bakery"
    PANTRY = "Pantry"
    PERSONAL_CARE = "Personal Care"
    OTHERS = "Others"


CATEGORIES: tuple[str, ...] = tuple(c.value for c in TransactionCategory)
FALLBACK_CATEGORY = TransactionCategory.OTHERS.value


def normalize_category(label: str, categories: Sequence[str] = CATEGORIES) -> str:
    """Exact match, then case-insensitive match, else the fallback category."""
    label = (label or "").strip()
    if label in categories:
        return label
    lower = label.lower()
    for category in categories:
        if category.lower() == lower:
            return category
    return FALLBACK_CATEGORY


@dataclass(frozen=True)
class CategorizedLineItem:
    item_name: str
    category: str
    quantity: int
    amount: float


@dataclass(frozen=True)
class CategorizationRequest:
    text: str
    categories: tuple[str, ...] = CATEGORIES

    def to_payload(self) -> dict:
        return {"text": self.text, "categories": list(self.categories)}

    def to_prompt(self) -> str:
        return f"""Analyze this receipt and categorize each item into one of the following categories:
{', '.join(self.categories)}

If an item doesn't fit into any of these categories, use "{FALLBACK_CATEGORY}".

Receipt text:
{self.text}

Return your response as a JSON object with the following structure:
{{
    "items": [
        {{
            "itemName": "Item name",
            "category": "Category name",
            "quantity": 1,
            "amount": 0.00
        }}
    ]
}}

Important:
- Extract the exact item name from the receipt
- Assign the most appropriate category from the list above, spelled exactly as shown
- Include the quantity (default to 1 if not specified)
- Include the price as a decimal number
- Respond ONLY with the JSON object, no additional text
"""


# ── Response parsing ──────────────────────────────────────────────────────────

class _ItemPayload(BaseModel):
    itemName: str
    category: str = FALLBACK_CATEGORY
    quantity: int = 1
    amount: float


class _ResponsePayload(BaseModel):
    items: list[_ItemPayload]


def unwrap_response(raw: str) -> str:
    """
    Strip markdown fences and surrounding commentary from a response body.

    Leading ```json / ``` and a trailing ``` are removed, then whitespace.
    If the remainder still doesn't start with "{", everything outside the
    outermost braces is dropped.
    """
    text = (raw or "").strip()
    text = re.sub(r'^```[a-zA-Z]*\s*', '', text)
    text = re.sub(r'\s*```$', '', text)
    text = text.strip()
    if not text.startswith("{"):
        start, end = text.find("{"), text.rfind("}")
        if start != -1 and end > start:
            text = text[start:end + 1]
    return text


def parse_categorization_response(
    raw: str, categories: Sequence[str] = CATEGORIES
) -> list[CategorizedLineItem]:
    cleaned = unwrap_response(raw)
    try:
        payload = _ResponsePayload.model_validate(json.loads(cleaned))
    except (json.JSONDecodeError, ValidationError) as e:
        logger.warning("Unparseable categorization response: %s", e)
        raise MalformedResponseFailure(f"Response is not an item list: {e}", raw_text=raw) from e

    items = []
    for entry in payload.items:
        name = entry.itemName.strip()
        if not name or entry.amount < 0:
            logger.warning("Dropping invalid line item %r (amount %s)", entry.itemName, entry.amount)
            continue
        category = normalize_category(entry.category, categories)
        if category != entry.category:
            logger.debug("Category %r for %r replaced by %r", entry.category, name, category)
        items.append(CategorizedLineItem(
            item_name=name,
            category=category,
            quantity=max(entry.quantity, 1),
            amount=entry.amount,
        ))

    if not items:
        raise EmptyResultFailure("Categorization returned no items")
    return items


# ── Transports ────────────────────────────────────────────────────────────────

class CategorizationTransport(ABC):
    """Delivers one request and returns the raw response body text."""

    @abstractmethod
    async def send(self, request: CategorizationRequest) -> str:
        ...


class EndpointTransport(CategorizationTransport):
    """POST the request as JSON to the process-receipt endpoint."""

    def __init__(
        self,
        url: str,
        token: str = "",
        timeout: float = DEFAULT_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._url = url
        self._token = token
        self._timeout = timeout
        self._client = client

    async def _post(self, client: httpx.AsyncClient, request: CategorizationRequest) -> httpx.Response:
        headers = {"Content-Type": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return await client.post(self._url, json=request.to_payload(), headers=headers)

    async def send(self, request: CategorizationRequest) -> str:
        if not self._url:
            raise TransportFailure("PROCESS_RECEIPT_URL not set")
        try:
            if self._client is not None:
                response = await self._post(self._client, request)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await self._post(client, request)
        except httpx.TimeoutException as e:
            raise TransportFailure(f"Timed out after {self._timeout:.0f}s") from e
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            # includes decoding errors and malformed URLs
            raise TransportFailure(f"{type(e).__name__}: {e}") from e

        if response.status_code in (401, 403):
            raise AuthFailure(f"HTTP {response.status_code}")
        if not response.is_success:
            logger.error("Categorization endpoint returned %s", response.status_code)
            raise ServerFailure(response.status_code, response.text)
        return response.text


class AnthropicTransport(CategorizationTransport):
    """Ask Claude for the item list directly (no intermediate backend)."""

    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_ANTHROPIC_MODEL,
        timeout: float = DEFAULT_TIMEOUT,
        max_tokens: int = 4096,
        client: Optional[anthropic.AsyncAnthropic] = None,
    ):
        self._api_key = api_key
        self._model = model
        self._timeout = timeout
        self._max_tokens = max_tokens
        self._client = client

    async def send(self, request: CategorizationRequest) -> str:
        client = self._client
        if client is None:
            if not self._api_key:
                logger.warning("ANTHROPIC_API_KEY not set, cannot categorize")
                raise AuthFailure("ANTHROPIC_API_KEY not set")
            client = anthropic.AsyncAnthropic(
                api_key=self._api_key, timeout=self._timeout, max_retries=0
            )
        try:
            message = await client.messages.create(
                model=self._model,
                max_tokens=self._max_tokens,
                messages=[{"role": "user", "content": request.to_prompt()}],
            )
        except (anthropic.AuthenticationError, anthropic.PermissionDeniedError) as e:
            raise AuthFailure(str(e)) from e
        except anthropic.APIConnectionError as e:
            raise TransportFailure(f"{type(e).__name__}: {e}") from e
        except anthropic.APIStatusError as e:
            logger.error("Claude API error: %s", e)
            raise ServerFailure(e.status_code, str(e.message)) from e
        except anthropic.APIResponseValidationError as e:
            raise MalformedResponseFailure(f"Claude response failed validation: {e.message}") from e
        except anthropic.APIError as e:
            logger.error("Claude API error: %s", e)
            raise ServerFailure(getattr(e, "status_code", 0), str(e.message)) from e

        text = "".join(getattr(block, "text", "") for block in message.content)
        return text


# ── Client ────────────────────────────────────────────────────────────────────

class CategorizationState(str, Enum):
    IDLE = "idle"
    SENT = "sent"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class CategorizationCall:
    """One round trip: IDLE → SENT → SUCCEEDED | FAILED.  Runs at most once."""

    def __init__(self, transport: CategorizationTransport, request: CategorizationRequest,
                 timeout: float = DEFAULT_TIMEOUT):
        self.transport = transport
        self.request = request
        self.timeout = timeout
        self.state = CategorizationState.IDLE
        self.raw_response: Optional[str] = None
        self.error: Optional[CategorizationError] = None

    async def run(self) -> list[CategorizedLineItem]:
        if self.state is not CategorizationState.IDLE:
            raise RuntimeError(f"Categorization call already {self.state.value}")
        self.state = CategorizationState.SENT
        try:
            try:
                raw = await asyncio.wait_for(self.transport.send(self.request), self.timeout)
            except asyncio.TimeoutError as e:
                raise TransportFailure(f"No response within {self.timeout:.0f}s") from e
            self.raw_response = raw
            items = parse_categorization_response(raw, self.request.categories)
        except CategorizationError as e:
            self.state = CategorizationState.FAILED
            self.error = e
            logger.warning("Categorization failed (%s): %s", e.kind, e)
            raise
        self.state = CategorizationState.SUCCEEDED
        logger.info("Categorized %d items", len(items))
        return items


class CategorizationClient:

    def __init__(
        self,
        transport: CategorizationTransport,
        categories: Sequence[str] = CATEGORIES,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        if FALLBACK_CATEGORY not in categories:
            raise ValueError(f"Category set must include {FALLBACK_CATEGORY!r}")
        self.transport = transport
        self.categories = tuple(categories)
        self.timeout = timeout

    def new_call(self, text: str) -> CategorizationCall:
        request = CategorizationRequest(text=text, categories=self.categories)
        return CategorizationCall(self.transport, request, timeout=self.timeout)

    async def categorize(self, text: str) -> list[CategorizedLineItem]:
        return await self.new_call(text).run()
