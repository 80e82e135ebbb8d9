"""OpenAI-compatible chat completion backend.

`ChatBackend.call` never raises for upstream problems. It returns either a
`BackendSuccess` or a `BackendFailure` tagged with a `FailureKind`, and the
retry loop in `bookmark_ai.completion` decides what to do with it.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, TypeAlias

import httpx
import structlog

from .contracts import CompletionResult, ResponseFormat, TokenUsage

log = structlog.get_logger()

GROQ_API_BASE = "https://api.groq.com/openai/v1"


class FailureKind(str, Enum):
    RATE_LIMIT = "rate_limit"
    SERVER = "server"
    TIMEOUT = "timeout"
    NETWORK = "network"
    AUTH = "auth"
    BAD_REQUEST = "bad_request"
    PROTOCOL = "protocol"

    @property
    def retryable(self) -> bool:
        return self in _RETRYABLE_KINDS


_RETRYABLE_KINDS = frozenset({FailureKind.RATE_LIMIT, FailureKind.SERVER, FailureKind.TIMEOUT, FailureKind.NETWORK})


@dataclass(frozen=True)
class BackendSuccess:
    result: CompletionResult


@dataclass(frozen=True)
class BackendFailure:
    kind: FailureKind
    message: str
    status_code: int | None = None
    retry_after_seconds: int | None = None

    @property
    def retryable(self) -> bool:
        return self.kind.retryable


BackendOutcome: TypeAlias = BackendSuccess | BackendFailure


def _parse_retry_after(value: str | None) -> int | None:
    if value and value.isdigit():
        return int(value)
    return None


def _as_int(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    return max(0, int(value))


class ChatBackend:
    """Thin async wrapper over `POST {base_url}/chat/completions`."""

    def __init__(
        self,
        api_key: str,
        *,
        client: httpx.AsyncClient | None = None,
        base_url: str = GROQ_API_BASE,
        timeout_seconds: float = 30,
    ):
        self._api_key = api_key
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)
        self._base_url = base_url.rstrip("/")

    async def close(self) -> None:
        await self._client.aclose()

    def _build_payload(
        self,
        *,
        model: str,
        system_prompt: str,
        user_message: str,
        max_tokens: int,
        temperature: float,
        response_format: ResponseFormat,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_message},
            ],
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        if response_format is ResponseFormat.JSON:
            payload["response_format"] = {"type": "json_object"}
        return payload

    async def call(
        self,
        *,
        model: str,
        system_prompt: str,
        user_message: str,
        max_tokens: int,
        temperature: float,
        response_format: ResponseFormat = ResponseFormat.TEXT,
    ) -> BackendOutcome:
        payload = self._build_payload(
            model=model,
            system_prompt=system_prompt,
            user_message=user_message,
            max_tokens=max_tokens,
            temperature=temperature,
            response_format=response_format,
        )
        headers = {"Authorization": f"Bearer {self._api_key}"}

        try:
            resp = await self._client.post(f"{self._base_url}/chat/completions", json=payload, headers=headers)
        except httpx.TimeoutException:
            return BackendFailure(FailureKind.TIMEOUT, "Upstream request timed out.")
        except httpx.HTTPError as e:
            return BackendFailure(FailureKind.NETWORK, f"Network error: {type(e).__name__}.")

        status = resp.status_code
        if status in (401, 403):
            return BackendFailure(FailureKind.AUTH, "Upstream rejected credentials.", status_code=status)
        if status == 429:
            return BackendFailure(
                FailureKind.RATE_LIMIT,
                "Upstream rate limit exceeded.",
                status_code=status,
                retry_after_seconds=_parse_retry_after(resp.headers.get("retry-after")),
            )
        if 500 <= status <= 599:
            log.warning("completion_upstream_5xx", status_code=status, body=resp.text[:500])
            return BackendFailure(FailureKind.SERVER, f"Upstream error {status}.", status_code=status)
        if status >= 400:
            log.warning("completion_upstream_4xx", status_code=status, body=resp.text[:500])
            return BackendFailure(FailureKind.BAD_REQUEST, f"Upstream error {status}.", status_code=status)

        try:
            data = resp.json()
        except json.JSONDecodeError:
            return BackendFailure(FailureKind.PROTOCOL, "Upstream returned invalid JSON.", status_code=status)
        return self._parse_response(data, requested_model=model)

    def _parse_response(self, data: Any, *, requested_model: str) -> BackendOutcome:
        if not isinstance(data, dict):
            return BackendFailure(FailureKind.PROTOCOL, "Unexpected upstream response shape.")

        choices = data.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            return BackendFailure(FailureKind.PROTOCOL, "Missing choices in upstream response.")

        message = choices[0].get("message")
        if not isinstance(message, dict):
            return BackendFailure(FailureKind.PROTOCOL, "Missing message in upstream response.")

        content = message.get("content")
        if content is None:
            content = ""
        if not isinstance(content, str):
            return BackendFailure(FailureKind.PROTOCOL, "Message content is not text.")

        usage = data.get("usage") if isinstance(data.get("usage"), dict) else {}
        model = data.get("model") if isinstance(data.get("model"), str) else requested_model
        return BackendSuccess(
            CompletionResult(
                content=content,
                usage=TokenUsage(
                    prompt_tokens=_as_int(usage.get("prompt_tokens")),
                    completion_tokens=_as_int(usage.get("completion_tokens")),
                ),
                model=model,
            )
        )
