import asyncio
import random

import pytest

from bookmark_ai.backend import BackendFailure, BackendSuccess, FailureKind
from bookmark_ai.completion import CompletionClient, CompletionClientFactory
from bookmark_ai.config import AIConfig
from bookmark_ai.contracts import CompletionRequest, CompletionResult, ModelKind, ResponseFormat, TokenUsage
from bookmark_ai.errors import AIError, ErrorCode


def _ok(content="ok"):
    return BackendSuccess(
        CompletionResult(content=content, usage=TokenUsage(prompt_tokens=4, completion_tokens=2), model="m")
    )


class ScriptedBackend:
    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.calls = []
        self.closed = False

    async def call(self, **kwargs):
        self.calls.append(kwargs)
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        return outcome

    async def close(self):
        self.closed = True


class RecordingSleeper:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def _client(backend, sleeper=None, **kwargs):
    return CompletionClient(
        backend,
        primary_model="big-model",
        fast_model="small-model",
        sleeper=sleeper or RecordingSleeper(),
        rng=random.Random(7),
        **kwargs,
    )


REQUEST = CompletionRequest(system_prompt="sys", user_message="hi")


@pytest.mark.asyncio
async def test_complete_returns_first_success_and_maps_model_kind():
    backend = ScriptedBackend([_ok("done")])
    client = _client(backend)

    result = await client.complete(
        CompletionRequest(
            system_prompt="sys",
            user_message="hi",
            model=ModelKind.FAST,
            max_tokens=150,
            temperature=0.4,
            response_format=ResponseFormat.JSON,
        )
    )

    assert result.content == "done"
    assert result.usage.total_tokens == 6
    assert len(backend.calls) == 1
    call = backend.calls[0]
    assert call["model"] == "small-model"
    assert call["max_tokens"] == 150
    assert call["temperature"] == 0.4
    assert call["response_format"] is ResponseFormat.JSON


@pytest.mark.asyncio
@pytest.mark.parametrize("kind", [FailureKind.RATE_LIMIT, FailureKind.SERVER, FailureKind.TIMEOUT, FailureKind.NETWORK])
async def test_retryable_failures_exhaust_with_increasing_delays(kind):
    backend = ScriptedBackend([BackendFailure(kind, "boom")])
    sleeper = RecordingSleeper()
    client = _client(backend, sleeper, max_retries=3, base_delay_seconds=1.0, max_delay_seconds=30.0)

    with pytest.raises(AIError) as exc:
        await client.complete(REQUEST)

    assert exc.value.code is ErrorCode.MAX_RETRIES_EXCEEDED
    assert exc.value.retryable is False
    assert len(backend.calls) == 4
    assert len(sleeper.delays) == 3
    assert sleeper.delays == sorted(sleeper.delays)
    assert len(set(sleeper.delays)) == 3
    for attempt, delay in enumerate(sleeper.delays):
        base = 2**attempt
        assert base <= delay <= base * 1.25


@pytest.mark.asyncio
@pytest.mark.parametrize("kind", [FailureKind.AUTH, FailureKind.BAD_REQUEST, FailureKind.PROTOCOL])
async def test_non_retryable_failure_raises_request_failed_without_retry(kind):
    backend = ScriptedBackend([BackendFailure(kind, "bad request")])
    sleeper = RecordingSleeper()
    client = _client(backend, sleeper)

    with pytest.raises(AIError) as exc:
        await client.complete(REQUEST)

    assert exc.value.code is ErrorCode.REQUEST_FAILED
    assert exc.value.retryable is False
    assert len(backend.calls) == 1
    assert sleeper.delays == []


@pytest.mark.asyncio
async def test_recovers_after_transient_failures():
    backend = ScriptedBackend(
        [BackendFailure(FailureKind.SERVER, "503"), BackendFailure(FailureKind.NETWORK, "reset"), _ok("fine")]
    )
    sleeper = RecordingSleeper()
    client = _client(backend, sleeper)

    result = await client.complete(REQUEST)

    assert result.content == "fine"
    assert len(backend.calls) == 3
    assert len(sleeper.delays) == 2


@pytest.mark.asyncio
async def test_zero_retries_fails_after_single_attempt():
    backend = ScriptedBackend([BackendFailure(FailureKind.SERVER, "503")])
    client = _client(backend, max_retries=0)

    with pytest.raises(AIError) as exc:
        await client.complete(REQUEST)

    assert exc.value.code is ErrorCode.MAX_RETRIES_EXCEEDED
    assert len(backend.calls) == 1


def test_backoff_is_capped():
    client = _client(ScriptedBackend([_ok()]), base_delay_seconds=1.0, max_delay_seconds=30.0)
    assert client.compute_backoff(10) == 30.0


@pytest.mark.asyncio
async def test_retry_after_is_used_as_floor():
    backend = ScriptedBackend([BackendFailure(FailureKind.RATE_LIMIT, "rl", retry_after_seconds=5), _ok()])
    sleeper = RecordingSleeper()
    client = _client(backend, sleeper)

    await client.complete(REQUEST)

    assert sleeper.delays == [5.0]


@pytest.mark.asyncio
async def test_slow_attempt_is_treated_as_retryable_timeout():
    calls = {"n": 0}

    class SlowThenFast:
        async def call(self, **kwargs):
            calls["n"] += 1
            if calls["n"] == 1:
                await asyncio.sleep(1)
            return _ok("late")

        async def close(self):
            return None

    client = _client(SlowThenFast(), timeout_seconds=0.01)

    result = await client.complete(REQUEST)

    assert result.content == "late"
    assert calls["n"] == 2


def test_completion_request_validates_ranges():
    with pytest.raises(ValueError):
        CompletionRequest(system_prompt="s", user_message="u", max_tokens=0)
    with pytest.raises(ValueError):
        CompletionRequest(system_prompt="s", user_message="u", temperature=1.5)


def test_factory_without_api_key_raises_missing_credentials():
    factory = CompletionClientFactory(AIConfig(api_key=None))

    with pytest.raises(AIError) as exc:
        factory.get()

    assert exc.value.code is ErrorCode.MISSING_CREDENTIALS
    assert exc.value.retryable is False
    assert factory.initialized is False


@pytest.mark.asyncio
async def test_factory_creates_client_once_and_closes_it():
    created = []

    def backend_factory(api_key: str):
        backend = ScriptedBackend([_ok()])
        created.append((api_key, backend))
        return backend

    factory = CompletionClientFactory(AIConfig(api_key="gsk_abc"), backend_factory=backend_factory)

    first = factory.get()
    second = factory.get()

    assert first is second
    assert len(created) == 1
    assert created[0][0] == "gsk_abc"

    await factory.aclose()
    assert created[0][1].closed is True
    assert factory.initialized is False
