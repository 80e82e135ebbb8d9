from __future__ import annotations

import os
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from .errors import AIError, ErrorCode


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() == "true"


def _env_optional_int(name: str) -> int | None:
    value = os.getenv(name)
    if not value:
        return None
    return int(value)


class RateLimitPolicy(BaseModel):
    """Quota for one operation class: `limit` requests per `window_seconds`."""

    limit: int = Field(gt=0)
    window_seconds: float = Field(gt=0)


def _default_policies() -> dict[str, RateLimitPolicy]:
    policies = {
        "ai": RateLimitPolicy(
            limit=int(os.getenv("AI_RATE_LIMIT", "20")),
            window_seconds=float(os.getenv("AI_RATE_LIMIT_WINDOW_SECONDS", "60")),
        )
    }
    search_limit = _env_optional_int("SEARCH_RATE_LIMIT")
    if search_limit is not None:
        policies["search"] = RateLimitPolicy(
            limit=search_limit,
            window_seconds=float(os.getenv("SEARCH_RATE_LIMIT_WINDOW_SECONDS", "60")),
        )
    return policies


def _default_operation_classes() -> dict[str, str]:
    # Search only gets its own quota when SEARCH_RATE_LIMIT is set.
    search_class = "search" if _env_optional_int("SEARCH_RATE_LIMIT") is not None else "ai"
    return {"summary": "ai", "tags": "ai", "category": "ai", "search": search_class}


class AIConfig(BaseModel):
    # Completion backend (OpenAI-compatible chat completions)
    api_key: str | None = Field(default_factory=lambda: os.getenv("GROQ_API_KEY"))
    base_url: str = Field(default_factory=lambda: os.getenv("AI_BASE_URL", "https://api.groq.com/openai/v1"))
    primary_model: str = Field(default_factory=lambda: os.getenv("AI_PRIMARY_MODEL", "llama-3.1-70b-versatile"))
    fast_model: str = Field(default_factory=lambda: os.getenv("AI_FAST_MODEL", "llama-3.1-8b-instant"))
    default_max_tokens: int = Field(default_factory=lambda: int(os.getenv("AI_MAX_TOKENS", "500")))
    default_temperature: float = Field(default_factory=lambda: float(os.getenv("AI_TEMPERATURE", "0.3")))

    # Retry behavior
    request_timeout_seconds: float = Field(
        default_factory=lambda: float(os.getenv("AI_REQUEST_TIMEOUT_SECONDS", "30"))
    )
    max_retries: int = Field(default_factory=lambda: int(os.getenv("AI_MAX_RETRIES", "3")))
    retry_base_delay_seconds: float = Field(
        default_factory=lambda: float(os.getenv("AI_RETRY_BASE_DELAY_SECONDS", "1.0"))
    )
    retry_max_delay_seconds: float = Field(
        default_factory=lambda: float(os.getenv("AI_RETRY_MAX_DELAY_SECONDS", "30"))
    )

    # Per-operation token caps
    summary_max_tokens: int = Field(default_factory=lambda: int(os.getenv("AI_SUMMARY_MAX_TOKENS", "200")))
    tags_max_tokens: int = Field(default_factory=lambda: int(os.getenv("AI_TAGS_MAX_TOKENS", "150")))
    category_max_tokens: int = Field(default_factory=lambda: int(os.getenv("AI_CATEGORY_MAX_TOKENS", "150")))
    search_max_tokens: int = Field(default_factory=lambda: int(os.getenv("AI_SEARCH_MAX_TOKENS", "500")))
    search_max_candidates: int = Field(
        default_factory=lambda: int(os.getenv("AI_SEARCH_MAX_CANDIDATES", "20"))
    )

    # Rate limiting
    rate_limit_backend: Literal["memory", "upstash", "disabled"] = Field(
        default_factory=lambda: os.getenv("RATE_LIMIT_BACKEND", "memory").lower(),  # type: ignore[arg-type]
        validate_default=True,
    )
    rate_limit_policies: dict[str, RateLimitPolicy] = Field(default_factory=_default_policies)
    operation_classes: dict[str, str] = Field(default_factory=_default_operation_classes)
    upstash_redis_rest_url: str | None = Field(default_factory=lambda: os.getenv("UPSTASH_REDIS_REST_URL"))
    upstash_redis_rest_token: str | None = Field(default_factory=lambda: os.getenv("UPSTASH_REDIS_REST_TOKEN"))
    rate_limit_prefix: str = Field(default_factory=lambda: os.getenv("RATE_LIMIT_PREFIX", "ai:ratelimit"))

    # Task queue
    queue_max_concurrent: int = Field(default_factory=lambda: int(os.getenv("AI_QUEUE_MAX_CONCURRENT", "5")))
    queue_task_timeout_seconds: float = Field(
        default_factory=lambda: float(os.getenv("AI_QUEUE_TASK_TIMEOUT_SECONDS", "60"))
    )

    # Observability
    enable_metrics: bool = Field(default_factory=lambda: _env_bool("ENABLE_METRICS"))
    metrics_bind: str = Field(default_factory=lambda: os.getenv("METRICS_BIND", "127.0.0.1"))
    metrics_port: int = Field(default_factory=lambda: int(os.getenv("METRICS_PORT", "9109")))
    log_level: str = Field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))
    log_format: str = Field(default_factory=lambda: os.getenv("LOG_FORMAT", "json"))

    @field_validator("default_temperature")
    @classmethod
    def _validate_temperature(cls, v: float) -> float:
        if not (0.0 <= v <= 1.0):
            raise ValueError("temperature must be between 0 and 1.")
        return v

    @field_validator(
        "default_max_tokens",
        "summary_max_tokens",
        "tags_max_tokens",
        "category_max_tokens",
        "search_max_tokens",
        "search_max_candidates",
        "queue_max_concurrent",
    )
    @classmethod
    def _validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("value must be > 0.")
        return v

    @field_validator("max_retries")
    @classmethod
    def _validate_max_retries(cls, v: int) -> int:
        if v < 0:
            raise ValueError("max_retries must be >= 0.")
        return v

    @model_validator(mode="after")
    def _validate_operation_classes(self) -> "AIConfig":
        if "ai" not in self.rate_limit_policies:
            raise ValueError("rate_limit_policies must define the 'ai' class.")
        for operation, op_class in self.operation_classes.items():
            if op_class not in self.rate_limit_policies:
                raise ValueError(f"Operation {operation!r} uses undefined rate limit class {op_class!r}.")
        return self

    def policy_for(self, operation: str) -> tuple[str, RateLimitPolicy]:
        op_class = self.operation_classes.get(operation, "ai")
        return op_class, self.rate_limit_policies[op_class]

    def require_api_key(self) -> str:
        if not self.api_key:
            raise AIError(
                "GROQ_API_KEY environment variable is not set.",
                ErrorCode.MISSING_CREDENTIALS,
                retryable=False,
            )
        return self.api_key
