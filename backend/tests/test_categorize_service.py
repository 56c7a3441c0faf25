"""
Tests for the categorization client: response unwrapping and parsing, the
per-call state machine, the overall timeout, and both transports.

Network access is never used; the endpoint transport runs against
httpx.MockTransport and the Anthropic transport against a mocked client.
"""
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import anthropic
import httpx
import pytest

from conftest import MILK_FENCED, TWO_ITEMS, FakeTransport
from services.categorize_service import (
    CATEGORIES,
    AnthropicTransport,
    CategorizationClient,
    CategorizationRequest,
    CategorizationState,
    EndpointTransport,
    normalize_category,
    parse_categorization_response,
    unwrap_response,
)
from services.errors import (
    AuthFailure,
    EmptyResultFailure,
    MalformedResponseFailure,
    ServerFailure,
    TransportFailure,
)


# ── Unwrap / parse ───────────────────────────────────────────────────────────

class TestUnwrap:

    def test_strips_json_fence(self):
        assert unwrap_response(MILK_FENCED).startswith('{"items"')
        assert unwrap_response(MILK_FENCED).endswith("}")

    def test_strips_bare_fence(self):
        assert unwrap_response('```\n{"items": []}\n```') == '{"items": []}'

    def test_cuts_surrounding_chatter(self):
        raw = 'Sure! Here is the result:\n{"items": []}\nLet me know if you need more.'
        assert unwrap_response(raw) == '{"items": []}'

    def test_plain_json_untouched(self):
        assert unwrap_response('  {"items": []}  ') == '{"items": []}'


class TestParse:

    def test_fenced_single_item(self):
        items = parse_categorization_response(MILK_FENCED)
        assert len(items) == 1
        milk = items[0]
        assert (milk.item_name, milk.category, milk.quantity, milk.amount) == (
            "Milk", "Dairy & Eggs", 1, 1.29,
        )

    def test_empty_item_list(self):
        with pytest.raises(EmptyResultFailure):
            parse_categorization_response('{"items": []}')

    def test_not_json_keeps_raw_text(self):
        with pytest.raises(MalformedResponseFailure) as exc_info:
            parse_categorization_response("I could not read this receipt")
        assert exc_info.value.raw_text == "I could not read this receipt"

    def test_wrong_shape(self):
        with pytest.raises(MalformedResponseFailure):
            parse_categorization_response('{"products": [{"name": "Milk"}]}')

    def test_item_missing_amount(self):
        with pytest.raises(MalformedResponseFailure):
            parse_categorization_response('{"items": [{"itemName": "Milk"}]}')

    def test_unknown_category_becomes_others(self):
        raw = '{"items": [{"itemName": "Gadget", "category": "Electronics", "amount": 9.99}]}'
        assert parse_categorization_response(raw)[0].category == "Others"

    def test_missing_category_and_quantity_default(self):
        item = parse_categorization_response('{"items": [{"itemName": "Gum", "amount": 0.5}]}')[0]
        assert (item.category, item.quantity) == ("Others", 1)

    def test_quantity_below_one_clamped(self):
        raw = '{"items": [{"itemName": "Eggs", "category": "Dairy & Eggs", "quantity": 0, "amount": 3}]}'
        assert parse_categorization_response(raw)[0].quantity == 1

    def test_invalid_items_dropped(self):
        raw = json.dumps({"items": [
            {"itemName": "Refund", "category": "Others", "amount": -2.0},
            {"itemName": "  ", "category": "Others", "amount": 1.0},
            {"itemName": "Apples", "category": "Fresh Produce", "amount": 1.5},
        ]})
        items = parse_categorization_response(raw)
        assert [i.item_name for i in items] == ["Apples"]

    def test_all_items_invalid_is_empty_result(self):
        with pytest.raises(EmptyResultFailure):
            parse_categorization_response('{"items": [{"itemName": "Refund", "amount": -1}]}')

    def test_restricted_category_set(self):
        raw = '{"items": [{"itemName": "Beer", "category": "Alcohol", "amount": 1.2}]}'
        items = parse_categorization_response(raw, categories=("Bakery", "Others"))
        assert items[0].category == "Others"


class TestNormalizeCategory:

    def test_exact(self):
        assert normalize_category("Pantry") == "Pantry"

    def test_case_insensitive(self):
        assert normalize_category("dairy & eggs") == "Dairy & Eggs"

    def test_blank(self):
        assert normalize_category("") == "Others"

    def test_closed_set(self):
        assert len(CATEGORIES) == 13
        assert CATEGORIES[-1] == "Others"


class TestRequest:

    def test_payload(self):
        payload = CategorizationRequest(text="Milk 1.29").to_payload()
        assert payload["text"] == "Milk 1.29"
        assert payload["categories"] == list(CATEGORIES)

    def test_prompt_lists_categories_and_text(self):
        prompt = CategorizationRequest(text="Milk 1.29").to_prompt()
        assert "Milk 1.29" in prompt
        assert "Drinks (Soft/Soda)" in prompt
        assert '"itemName"' in prompt


# ── Client / call state ──────────────────────────────────────────────────────

class TestClient:

    def test_category_set_must_include_fallback(self):
        with pytest.raises(ValueError):
            CategorizationClient(FakeTransport(), categories=("Bakery",))

    async def test_categorize_sends_text_and_categories(self):
        transport = FakeTransport(response=TWO_ITEMS)
        items = await CategorizationClient(transport).categorize("Milk 2.58\nBread 2.10")
        assert [i.item_name for i in items] == ["Milk", "Bread"]
        assert transport.requests[0].text == "Milk 2.58\nBread 2.10"
        assert transport.requests[0].categories == CATEGORIES

    async def test_fenced_reply_parses_to_one_item(self):
        body = (
            "```json\n"
            '{"items":[{"itemName":"Milk","category":"Dairy & Eggs","quantity":1,"amount":1.2}]}\n'
            "```"
        )
        items = await CategorizationClient(FakeTransport(response=body)).categorize("Milk 1.20")
        assert len(items) == 1
        assert (items[0].item_name, items[0].category, items[0].quantity, items[0].amount) == (
            "Milk", "Dairy & Eggs", 1, 1.2,
        )

    async def test_call_succeeds(self):
        call = CategorizationClient(FakeTransport(response=MILK_FENCED)).new_call("Milk")
        assert call.state is CategorizationState.IDLE
        await call.run()
        assert call.state is CategorizationState.SUCCEEDED
        assert call.raw_response == MILK_FENCED
        assert call.error is None

    async def test_call_fails(self):
        failure = AuthFailure("HTTP 401")
        call = CategorizationClient(FakeTransport(raises=failure)).new_call("Milk")
        with pytest.raises(AuthFailure):
            await call.run()
        assert call.state is CategorizationState.FAILED
        assert call.error is failure

    async def test_parse_failure_records_raw_response(self):
        call = CategorizationClient(FakeTransport(response="nope")).new_call("Milk")
        with pytest.raises(MalformedResponseFailure):
            await call.run()
        assert call.state is CategorizationState.FAILED
        assert call.raw_response == "nope"

    async def test_call_runs_once(self):
        call = CategorizationClient(FakeTransport(response=MILK_FENCED)).new_call("Milk")
        await call.run()
        with pytest.raises(RuntimeError):
            await call.run()

    async def test_timeout_is_transport_failure(self):
        transport = FakeTransport(response=MILK_FENCED, delay=5)
        call = CategorizationClient(transport, timeout=0.05).new_call("Milk")
        with pytest.raises(TransportFailure):
            await call.run()
        assert call.state is CategorizationState.FAILED


# ── EndpointTransport ────────────────────────────────────────────────────────

def endpoint(handler, token="secret"):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return EndpointTransport("https://api.example.test/process-receipt", token=token, client=client)


REQUEST = CategorizationRequest(text="Milk 1.29")


class TestEndpointTransport:

    async def test_posts_payload_with_bearer_token(self):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers.get("authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, text=MILK_FENCED)

        body = await endpoint(handler).send(REQUEST)
        assert body == MILK_FENCED
        assert seen["auth"] == "Bearer secret"
        assert seen["body"] == {"text": "Milk 1.29", "categories": list(CATEGORIES)}

    async def test_no_token_no_header(self):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers.get("authorization")
            return httpx.Response(200, text="{}")

        await endpoint(handler, token="").send(REQUEST)
        assert seen["auth"] is None

    @pytest.mark.parametrize("status", [401, 403])
    async def test_auth_failure(self, status):
        with pytest.raises(AuthFailure):
            await endpoint(lambda r: httpx.Response(status)).send(REQUEST)

    async def test_server_failure(self):
        with pytest.raises(ServerFailure) as exc_info:
            await endpoint(lambda r: httpx.Response(500, text="boom")).send(REQUEST)
        assert exc_info.value.status_code == 500
        assert exc_info.value.body == "boom"

    async def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(TransportFailure):
            await endpoint(handler).send(REQUEST)

    async def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("no route to host", request=request)

        with pytest.raises(TransportFailure):
            await endpoint(handler).send(REQUEST)

    async def test_missing_url(self):
        with pytest.raises(TransportFailure):
            await EndpointTransport("").send(REQUEST)

    async def test_decoding_error(self):
        def handler(request):
            raise httpx.DecodingError("invalid gzip stream", request=request)

        with pytest.raises(TransportFailure):
            await endpoint(handler).send(REQUEST)

    async def test_invalid_url_fails_the_call(self):
        call = CategorizationClient(EndpointTransport(url="http://[::1")).new_call("Milk 1.20")
        with pytest.raises(TransportFailure):
            await call.run()
        assert call.state is CategorizationState.FAILED
        assert isinstance(call.error, TransportFailure)


# ── AnthropicTransport ───────────────────────────────────────────────────────

def claude_client(text=None, raises=None):
    client = MagicMock()
    if raises is not None:
        client.messages.create = AsyncMock(side_effect=raises)
    else:
        message = SimpleNamespace(content=[SimpleNamespace(type="text", text=text)])
        client.messages.create = AsyncMock(return_value=message)
    return client


ANTHROPIC_REQUEST = httpx.Request("POST", "https://api.anthropic.com/v1/messages")


class TestAnthropicTransport:

    async def test_returns_text_blocks(self):
        client = claude_client(text=MILK_FENCED)
        transport = AnthropicTransport(api_key="sk-test", model="claude-test", client=client)
        assert await transport.send(REQUEST) == MILK_FENCED
        kwargs = client.messages.create.call_args.kwargs
        assert kwargs["model"] == "claude-test"
        assert "Milk 1.29" in kwargs["messages"][0]["content"]

    async def test_missing_key(self):
        with pytest.raises(AuthFailure):
            await AnthropicTransport(api_key="").send(REQUEST)

    async def test_authentication_error(self):
        error = anthropic.AuthenticationError(
            "invalid x-api-key",
            response=httpx.Response(401, request=ANTHROPIC_REQUEST),
            body=None,
        )
        transport = AnthropicTransport(api_key="sk-test", client=claude_client(raises=error))
        with pytest.raises(AuthFailure):
            await transport.send(REQUEST)

    async def test_connection_error(self):
        error = anthropic.APIConnectionError(request=ANTHROPIC_REQUEST)
        transport = AnthropicTransport(api_key="sk-test", client=claude_client(raises=error))
        with pytest.raises(TransportFailure):
            await transport.send(REQUEST)

    async def test_server_error(self):
        error = anthropic.InternalServerError(
            "overloaded",
            response=httpx.Response(529, request=ANTHROPIC_REQUEST),
            body=None,
        )
        transport = AnthropicTransport(api_key="sk-test", client=claude_client(raises=error))
        with pytest.raises(ServerFailure) as exc_info:
            await transport.send(REQUEST)
        assert exc_info.value.status_code == 529

    async def test_response_validation_error(self):
        error = anthropic.APIResponseValidationError(
            response=httpx.Response(200, request=ANTHROPIC_REQUEST),
            body=None,
        )
        transport = AnthropicTransport(api_key="sk-test", client=claude_client(raises=error))
        with pytest.raises(MalformedResponseFailure):
            await transport.send(REQUEST)

    async def test_other_api_error_fails_the_call(self):
        error = anthropic.APIError("stream ended unexpectedly", ANTHROPIC_REQUEST, body=None)
        transport = AnthropicTransport(api_key="sk-test", client=claude_client(raises=error))
        call = CategorizationClient(transport).new_call("Milk 1.20")
        with pytest.raises(ServerFailure) as exc_info:
            await call.run()
        assert exc_info.value.status_code == 0
        assert call.state is CategorizationState.FAILED
