from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class ModelKind(str, Enum):
    PRIMARY = "primary"
    FAST = "fast"


class ResponseFormat(str, Enum):
    TEXT = "text"
    JSON = "json"


@dataclass(frozen=True)
class CompletionRequest:
    system_prompt: str
    user_message: str
    model: ModelKind = ModelKind.PRIMARY
    max_tokens: int = 500
    temperature: float = 0.3
    response_format: ResponseFormat = ResponseFormat.TEXT

    def __post_init__(self) -> None:
        if self.max_tokens <= 0:
            raise ValueError("max_tokens must be > 0.")
        if not (0.0 <= self.temperature <= 1.0):
            raise ValueError("temperature must be between 0 and 1.")


@dataclass(frozen=True)
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = field(init=False)

    def __post_init__(self) -> None:
        if self.prompt_tokens < 0 or self.completion_tokens < 0:
            raise ValueError("token counts must be >= 0.")
        object.__setattr__(self, "total_tokens", self.prompt_tokens + self.completion_tokens)


@dataclass(frozen=True)
class CompletionResult:
    content: str
    usage: TokenUsage
    model: str
