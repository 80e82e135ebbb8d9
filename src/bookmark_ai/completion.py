from __future__ import annotations

import asyncio
import random
import threading
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Protocol

import structlog

from .backend import BackendFailure, BackendOutcome, BackendSuccess, ChatBackend, FailureKind
from .config import AIConfig
from .contracts import CompletionRequest, CompletionResult, ModelKind, ResponseFormat
from .errors import AIError, ErrorCode
from .metrics import (
    completion_latency_seconds,
    completion_requests_total,
    completion_retries_total,
    completion_tokens_total,
)

log = structlog.get_logger()


class Backend(Protocol):
    async def call(
        self,
        *,
        model: str,
        system_prompt: str,
        user_message: str,
        max_tokens: int,
        temperature: float,
        response_format: ResponseFormat = ResponseFormat.TEXT,
    ) -> BackendOutcome: ...

    async def close(self) -> None: ...


class Completer(Protocol):
    async def complete(self, request: CompletionRequest) -> CompletionResult: ...


@dataclass
class RetryState:
    attempt: int = 0
    last_error: BackendFailure | None = None


class CompletionClient:
    """Issues one completion with per-attempt timeout and exponential backoff.

    Retryable failures (429, 5xx, timeout, network) are retried up to
    `max_retries` times; anything else is terminal on the first attempt.
    """

    def __init__(
        self,
        backend: Backend,
        *,
        primary_model: str,
        fast_model: str,
        max_retries: int = 3,
        base_delay_seconds: float = 1.0,
        max_delay_seconds: float = 30.0,
        timeout_seconds: float = 30.0,
        sleeper: Callable[[float], Awaitable[None]] | None = None,
        rng: random.Random | None = None,
    ):
        self._backend = backend
        self._models = {ModelKind.PRIMARY: primary_model, ModelKind.FAST: fast_model}
        self._max_retries = max(0, max_retries)
        self._base_delay = max(0.0, base_delay_seconds)
        self._max_delay = max(0.0, max_delay_seconds)
        self._timeout_seconds = timeout_seconds
        self._sleep: Callable[[float], Awaitable[None]] = sleeper or asyncio.sleep
        self._rng = rng or random.Random()

    @classmethod
    def from_config(
        cls,
        cfg: AIConfig,
        backend: Backend,
        *,
        sleeper: Callable[[float], Awaitable[None]] | None = None,
        rng: random.Random | None = None,
    ) -> "CompletionClient":
        return cls(
            backend,
            primary_model=cfg.primary_model,
            fast_model=cfg.fast_model,
            max_retries=cfg.max_retries,
            base_delay_seconds=cfg.retry_base_delay_seconds,
            max_delay_seconds=cfg.retry_max_delay_seconds,
            timeout_seconds=cfg.request_timeout_seconds,
            sleeper=sleeper,
            rng=rng,
        )

    @property
    def max_retries(self) -> int:
        return self._max_retries

    async def close(self) -> None:
        await self._backend.close()

    def compute_backoff(self, attempt: int) -> float:
        # attempt: 0-based retry index; jitter adds up to 25% of the exponential delay
        delay = self._base_delay * (2**attempt)
        jitter = self._rng.uniform(0.0, delay * 0.25) if delay > 0 else 0.0
        return min(delay + jitter, self._max_delay)

    async def _attempt(self, model: str, request: CompletionRequest) -> BackendOutcome:
        try:
            return await asyncio.wait_for(
                self._backend.call(
                    model=model,
                    system_prompt=request.system_prompt,
                    user_message=request.user_message,
                    max_tokens=request.max_tokens,
                    temperature=request.temperature,
                    response_format=request.response_format,
                ),
                timeout=self._timeout_seconds if self._timeout_seconds > 0 else None,
            )
        except asyncio.TimeoutError:
            return BackendFailure(FailureKind.TIMEOUT, f"No response within {self._timeout_seconds}s.")

    async def complete(self, request: CompletionRequest) -> CompletionResult:
        model = self._models[request.model]
        state = RetryState()
        started = time.monotonic()

        while True:
            outcome = await self._attempt(model, request)

            if isinstance(outcome, BackendSuccess):
                result = outcome.result
                completion_requests_total.labels(model=model, status="success").inc()
                completion_latency_seconds.labels(model=model).observe(time.monotonic() - started)
                completion_tokens_total.labels(model=model, kind="prompt").inc(result.usage.prompt_tokens)
                completion_tokens_total.labels(model=model, kind="completion").inc(result.usage.completion_tokens)
                log.debug(
                    "completion_ok",
                    model=model,
                    attempts=state.attempt + 1,
                    total_tokens=result.usage.total_tokens,
                )
                return result

            state.last_error = outcome

            if not outcome.retryable:
                completion_requests_total.labels(model=model, status="failed").inc()
                log.warning("completion_failed", model=model, kind=outcome.kind.value, error=outcome.message)
                raise AIError(f"AI request failed: {outcome.message}", ErrorCode.REQUEST_FAILED, retryable=False)

            if state.attempt >= self._max_retries:
                completion_requests_total.labels(model=model, status="retries_exhausted").inc()
                log.warning(
                    "completion_retries_exhausted",
                    model=model,
                    kind=outcome.kind.value,
                    retries=self._max_retries,
                    error=outcome.message,
                )
                raise AIError(
                    f"AI request failed after {self._max_retries} retries: {outcome.message}",
                    ErrorCode.MAX_RETRIES_EXCEEDED,
                    retryable=False,
                )

            delay = self.compute_backoff(state.attempt)
            if outcome.retry_after_seconds is not None:
                delay = min(max(delay, float(outcome.retry_after_seconds)), self._max_delay)

            completion_retries_total.labels(kind=outcome.kind.value).inc()
            log.warning(
                "completion_retry",
                model=model,
                kind=outcome.kind.value,
                attempt=state.attempt + 1,
                max_retries=self._max_retries,
                delay_seconds=round(delay, 3),
                error=outcome.message,
            )
            await self._sleep(delay)
            state.attempt += 1


class CompletionClientFactory:
    """Creates the process's `CompletionClient` on first use and reuses it.

    Credentials are checked at creation time, so a missing key surfaces as
    `MISSING_CREDENTIALS` on the first call that actually needs the network.
    """

    def __init__(
        self,
        cfg: AIConfig,
        *,
        backend_factory: Callable[[str], Backend] | None = None,
        sleeper: Callable[[float], Awaitable[None]] | None = None,
        rng: random.Random | None = None,
    ):
        self._cfg = cfg
        self._backend_factory = backend_factory or self._default_backend
        self._sleeper = sleeper
        self._rng = rng
        self._client: CompletionClient | None = None
        self._lock = threading.Lock()

    def _default_backend(self, api_key: str) -> Backend:
        return ChatBackend(
            api_key,
            base_url=self._cfg.base_url,
            timeout_seconds=self._cfg.request_timeout_seconds,
        )

    @property
    def initialized(self) -> bool:
        return self._client is not None

    def get(self) -> CompletionClient:
        client = self._client
        if client is not None:
            return client
        with self._lock:
            if self._client is None:
                api_key = self._cfg.require_api_key()
                self._client = CompletionClient.from_config(
                    self._cfg,
                    self._backend_factory(api_key),
                    sleeper=self._sleeper,
                    rng=self._rng,
                )
                log.info("completion_client_initialized", base_url=self._cfg.base_url)
            return self._client

    async def aclose(self) -> None:
        with self._lock:
            client, self._client = self._client, None
        if client is not None:
            await client.close()
