import json

import httpx
import pytest

from bookmark_ai.backend import BackendFailure, BackendSuccess, ChatBackend, FailureKind
from bookmark_ai.contracts import ResponseFormat


def _backend(handler) -> ChatBackend:
    return ChatBackend(
        "gsk_test",
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        base_url="https://example.test/openai/v1",
    )


def _ok_body(content="hello", prompt_tokens=7, completion_tokens=3):
    return {
        "model": "llama-3.1-8b-instant",
        "choices": [{"message": {"role": "assistant", "content": content}}],
        "usage": {"prompt_tokens": prompt_tokens, "completion_tokens": completion_tokens, "total_tokens": 999},
    }


async def _call(backend: ChatBackend, **overrides):
    kwargs = dict(
        model="llama-3.1-8b-instant",
        system_prompt="sys",
        user_message="hi",
        max_tokens=50,
        temperature=0.2,
    )
    kwargs.update(overrides)
    return await backend.call(**kwargs)


@pytest.mark.asyncio
async def test_call_success_parses_content_and_usage():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "POST"
        assert request.url.path == "/openai/v1/chat/completions"
        assert request.headers["authorization"] == "Bearer gsk_test"
        body = json.loads(request.content.decode("utf-8"))
        assert body["model"] == "llama-3.1-8b-instant"
        assert body["messages"] == [
            {"role": "system", "content": "sys"},
            {"role": "user", "content": "hi"},
        ]
        assert body["max_tokens"] == 50
        assert body["temperature"] == 0.2
        assert "response_format" not in body
        return httpx.Response(200, json=_ok_body())

    backend = _backend(handler)
    try:
        outcome = await _call(backend)
    finally:
        await backend.close()

    assert isinstance(outcome, BackendSuccess)
    assert outcome.result.content == "hello"
    assert outcome.result.model == "llama-3.1-8b-instant"
    assert outcome.result.usage.prompt_tokens == 7
    assert outcome.result.usage.completion_tokens == 3
    # Total is derived, never copied from upstream.
    assert outcome.result.usage.total_tokens == 10


@pytest.mark.asyncio
async def test_call_json_mode_sets_response_format():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen.update(json.loads(request.content.decode("utf-8")))
        return httpx.Response(200, json=_ok_body(content='{"tags": []}'))

    backend = _backend(handler)
    try:
        outcome = await _call(backend, response_format=ResponseFormat.JSON)
    finally:
        await backend.close()

    assert isinstance(outcome, BackendSuccess)
    assert seen["response_format"] == {"type": "json_object"}


@pytest.mark.asyncio
async def test_call_missing_usage_defaults_to_zero():
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"choices": [{"message": {"content": None}}]})

    backend = _backend(handler)
    try:
        outcome = await _call(backend)
    finally:
        await backend.close()

    assert isinstance(outcome, BackendSuccess)
    assert outcome.result.content == ""
    assert outcome.result.usage.total_tokens == 0
    assert outcome.result.model == "llama-3.1-8b-instant"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status,kind,retryable",
    [
        (429, FailureKind.RATE_LIMIT, True),
        (500, FailureKind.SERVER, True),
        (503, FailureKind.SERVER, True),
        (401, FailureKind.AUTH, False),
        (403, FailureKind.AUTH, False),
        (400, FailureKind.BAD_REQUEST, False),
        (404, FailureKind.BAD_REQUEST, False),
    ],
)
async def test_call_classifies_status_codes(status, kind, retryable):
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(status, json={"error": {"message": "nope"}})

    backend = _backend(handler)
    try:
        outcome = await _call(backend)
    finally:
        await backend.close()

    assert isinstance(outcome, BackendFailure)
    assert outcome.kind is kind
    assert outcome.retryable is retryable
    assert outcome.status_code == status


@pytest.mark.asyncio
async def test_call_429_carries_retry_after():
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(429, headers={"retry-after": "12"}, json={"error": {"message": "rl"}})

    backend = _backend(handler)
    try:
        outcome = await _call(backend)
    finally:
        await backend.close()

    assert isinstance(outcome, BackendFailure)
    assert outcome.retry_after_seconds == 12


@pytest.mark.asyncio
async def test_call_timeout_and_network_errors_are_tagged():
    def timeout_handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    def network_handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    for handler, kind in ((timeout_handler, FailureKind.TIMEOUT), (network_handler, FailureKind.NETWORK)):
        backend = _backend(handler)
        try:
            outcome = await _call(backend)
        finally:
            await backend.close()
        assert isinstance(outcome, BackendFailure)
        assert outcome.kind is kind
        assert outcome.retryable is True


@pytest.mark.asyncio
async def test_call_bad_shape_is_protocol_failure():
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"choices": []})

    backend = _backend(handler)
    try:
        outcome = await _call(backend)
    finally:
        await backend.close()

    assert isinstance(outcome, BackendFailure)
    assert outcome.kind is FailureKind.PROTOCOL
    assert outcome.retryable is False


@pytest.mark.asyncio
async def test_call_invalid_json_is_protocol_failure():
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>oops</html>")

    backend = _backend(handler)
    try:
        outcome = await _call(backend)
    finally:
        await backend.close()

    assert isinstance(outcome, BackendFailure)
    assert outcome.kind is FailureKind.PROTOCOL
