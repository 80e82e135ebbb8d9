from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

import structlog
from pydantic import BaseModel, Field, field_validator

from .completion import Completer, CompletionClientFactory
from .config import AIConfig
from .contracts import CompletionRequest, CompletionResult, ModelKind, ResponseFormat
from .errors import OPERATION_FAILURE_CODES, AIError, ErrorCode
from .metrics import enrichment_steps_total
from .parsing import clamp_unit, coerce_score, extract_tags_from_text, normalize_tags, parse_json_response
from .prompts import build_category_prompt, build_search_prompt, build_summary_prompt, build_tags_prompt
from .rate_limit import InMemoryRateLimiter, RateLimiter

log = structlog.get_logger()

DEFAULT_CATEGORY = "Other"
# Confidence reported when the model's category could not be used as-is.
FALLBACK_CATEGORY_CONFIDENCE = 0.3
MIN_SEARCH_SCORE = 0.3
# enrich_new_bookmark only reports a category above this confidence.
ENRICHMENT_CATEGORY_THRESHOLD = 0.5

SUMMARY_TEMPERATURE = 0.3
TAGS_TEMPERATURE = 0.4
CATEGORY_TEMPERATURE = 0.2
SEARCH_TEMPERATURE = 0.2

# Client failures that are rewrapped into the operation-specific code.
_WRAPPED_CODES = frozenset({ErrorCode.REQUEST_FAILED, ErrorCode.MAX_RETRIES_EXCEEDED})

T = TypeVar("T")
M = TypeVar("M", bound=BaseModel)


class BookmarkContent(BaseModel):
    title: str = ""
    url: str = ""
    description: str | None = None
    content: str | None = None

    def has_text(self) -> bool:
        return any(v and v.strip() for v in (self.title, self.description, self.content))


class TagRequest(BookmarkContent):
    existing_tags: list[str] = Field(default_factory=list)


class CategoryRequest(BookmarkContent):
    categories: list[str] = Field(default_factory=list)


class EnrichmentRequest(BookmarkContent):
    existing_tags: list[str] = Field(default_factory=list)
    categories: list[str] = Field(default_factory=list)


class SearchCandidate(BaseModel):
    id: str
    title: str
    url: str
    description: str | None = None
    tags: list[str] = Field(default_factory=list)
    category: str | None = None


class SearchRequest(BaseModel):
    query: str
    candidates: list[SearchCandidate] = Field(default_factory=list)

    @field_validator("query")
    @classmethod
    def _validate_query(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("query must be non-empty.")
        return v


@dataclass(frozen=True)
class SummaryResult:
    summary: str
    tokens_used: int


@dataclass(frozen=True)
class TagSuggestions:
    tags: tuple[str, ...]
    tokens_used: int
    reasoning: str | None = None


@dataclass(frozen=True)
class CategorySuggestion:
    category: str
    confidence: float
    tokens_used: int
    reasoning: str | None = None


@dataclass(frozen=True)
class SearchHit:
    id: str
    score: float
    reason: str | None = None


@dataclass(frozen=True)
class SearchResults:
    results: tuple[SearchHit, ...]
    tokens_used: int
    interpretation: str | None = None


@dataclass(frozen=True)
class SuggestedCategory:
    name: str
    confidence: float


@dataclass(frozen=True)
class EnrichmentResult:
    tokens_used: int
    summary: str | None = None
    suggested_tags: tuple[str, ...] | None = None
    suggested_category: SuggestedCategory | None = None
    failed_operations: tuple[str, ...] = ()


def _coerce(model: type[M], value: M | dict[str, Any]) -> M:
    if isinstance(value, model):
        return value
    return model.model_validate(value)


def _optional_str(value: Any) -> str | None:
    return value if isinstance(value, str) and value.strip() else None


def match_category(name: str, categories: list[str]) -> str | None:
    """Case-insensitive match; the first candidate in list order wins ties."""
    wanted = name.strip().casefold()
    for category in categories:
        if category.strip().casefold() == wanted:
            return category
    return None


class EnrichmentOrchestrator:
    """Rate-limited AI operations over bookmark metadata.

    Every public operation checks the caller's quota before doing anything
    else, accepts an optional `deadline_seconds`, and raises `AIError`.
    """

    def __init__(
        self,
        cfg: AIConfig | None = None,
        *,
        client: Completer | None = None,
        client_factory: CompletionClientFactory | None = None,
        rate_limiter: RateLimiter | None = None,
        clock: Callable[[], float] | None = None,
    ):
        self.cfg = cfg or AIConfig()
        self._client = client
        # Unused when `client` is given; it only reads the API key on first get().
        self._client_factory = client_factory or CompletionClientFactory(self.cfg)
        self.rate_limiter = rate_limiter or InMemoryRateLimiter(self.cfg.rate_limit_policies["ai"])
        self._clock: Callable[[], float] = clock or time.time

    async def close(self) -> None:
        await self._client_factory.aclose()
        await self.rate_limiter.close()

    async def _enforce_rate_limit(self, user_id: str, operation: str) -> None:
        op_class, policy = self.cfg.policy_for(operation)
        decision = await self.rate_limiter.check(f"{op_class}:{user_id}", policy)
        if decision.allowed:
            return
        wait = decision.retry_after_seconds(self._clock())
        raise AIError(
            f"Rate limit exceeded. Try again in {wait} seconds.",
            ErrorCode.RATE_LIMITED,
            retryable=True,
            retry_after_seconds=wait,
            operation=operation,
        )

    async def _complete(self, request: CompletionRequest) -> CompletionResult:
        if self._client is not None:
            return await self._client.complete(request)
        return await self._client_factory.get().complete(request)

    async def _run(
        self,
        operation: str,
        user_id: str,
        body: Callable[[], Awaitable[T]],
        deadline_seconds: float | None,
    ) -> T:
        with structlog.contextvars.bound_contextvars(operation=operation, user_id=user_id):
            try:
                if deadline_seconds is None:
                    return await body()
                return await asyncio.wait_for(body(), timeout=max(0.0, deadline_seconds))
            except asyncio.TimeoutError as e:
                log.warning("ai_operation_timeout", deadline_seconds=deadline_seconds)
                raise AIError(
                    f"{operation} did not finish within {deadline_seconds}s.",
                    ErrorCode.TIMEOUT,
                    retryable=True,
                    operation=operation,
                ) from e
            except AIError as e:
                if e.code not in _WRAPPED_CODES:
                    raise
                raise AIError(
                    f"Failed to run {operation}: {e.message}",
                    OPERATION_FAILURE_CODES[operation],
                    retryable=e.retryable,
                    operation=operation,
                ) from e
            except Exception as e:
                log.exception("ai_operation_error", error=str(e))
                raise AIError(
                    f"Failed to run {operation}: {e}",
                    OPERATION_FAILURE_CODES[operation],
                    retryable=False,
                    operation=operation,
                ) from e

    async def summarize(
        self,
        user_id: str,
        data: BookmarkContent | dict[str, Any],
        *,
        deadline_seconds: float | None = None,
    ) -> SummaryResult:
        data = _coerce(BookmarkContent, data)

        async def body() -> SummaryResult:
            await self._enforce_rate_limit(user_id, "summary")
            if not data.has_text():
                return SummaryResult(summary="", tokens_used=0)

            prompt = build_summary_prompt(
                title=data.title, url=data.url, description=data.description, content=data.content
            )
            result = await self._complete(
                CompletionRequest(
                    system_prompt=prompt.system,
                    user_message=prompt.user,
                    model=ModelKind.PRIMARY,
                    max_tokens=self.cfg.summary_max_tokens,
                    temperature=SUMMARY_TEMPERATURE,
                )
            )
            return SummaryResult(summary=result.content.strip(), tokens_used=result.usage.total_tokens)

        return await self._run("summary", user_id, body, deadline_seconds)

    async def suggest_tags(
        self,
        user_id: str,
        data: TagRequest | dict[str, Any],
        *,
        deadline_seconds: float | None = None,
    ) -> TagSuggestions:
        data = _coerce(TagRequest, data)

        async def body() -> TagSuggestions:
            await self._enforce_rate_limit(user_id, "tags")
            prompt = build_tags_prompt(
                title=data.title, url=data.url, description=data.description, existing_tags=data.existing_tags
            )
            result = await self._complete(
                CompletionRequest(
                    system_prompt=prompt.system,
                    user_message=prompt.user,
                    model=ModelKind.FAST,
                    max_tokens=self.cfg.tags_max_tokens,
                    temperature=TAGS_TEMPERATURE,
                    response_format=ResponseFormat.JSON,
                )
            )

            parsed = parse_json_response(result.content)
            if isinstance(parsed, dict) and isinstance(parsed.get("tags"), list):
                return TagSuggestions(
                    tags=tuple(normalize_tags(parsed["tags"])),
                    reasoning=_optional_str(parsed.get("reasoning")),
                    tokens_used=result.usage.total_tokens,
                )

            log.info("tags_json_fallback", content_chars=len(result.content))
            return TagSuggestions(
                tags=tuple(extract_tags_from_text(result.content)),
                tokens_used=result.usage.total_tokens,
            )

        return await self._run("tags", user_id, body, deadline_seconds)

    async def suggest_category(
        self,
        user_id: str,
        data: CategoryRequest | dict[str, Any],
        *,
        deadline_seconds: float | None = None,
    ) -> CategorySuggestion:
        data = _coerce(CategoryRequest, data)

        async def body() -> CategorySuggestion:
            await self._enforce_rate_limit(user_id, "category")
            categories = data.categories
            if not categories:
                return CategorySuggestion(category=DEFAULT_CATEGORY, confidence=0.0, tokens_used=0)

            prompt = build_category_prompt(
                title=data.title, url=data.url, description=data.description, categories=categories
            )
            result = await self._complete(
                CompletionRequest(
                    system_prompt=prompt.system,
                    user_message=prompt.user,
                    model=ModelKind.FAST,
                    max_tokens=self.cfg.category_max_tokens,
                    temperature=CATEGORY_TEMPERATURE,
                    response_format=ResponseFormat.JSON,
                )
            )
            tokens = result.usage.total_tokens

            parsed = parse_json_response(result.content)
            name = _optional_str(parsed.get("category")) if isinstance(parsed, dict) else None
            if name is None:
                log.info("category_unparsed_fallback", content_chars=len(result.content))
                return CategorySuggestion(
                    category=categories[0], confidence=FALLBACK_CATEGORY_CONFIDENCE, tokens_used=tokens
                )

            score = coerce_score(parsed.get("confidence"))
            confidence = clamp_unit(score) if score is not None else 0.0
            reasoning = _optional_str(parsed.get("reasoning"))

            matched = match_category(name, categories)
            if matched is None:
                log.info("category_not_in_candidates", suggested=name)
                return CategorySuggestion(
                    category=categories[0],
                    confidence=min(confidence, FALLBACK_CATEGORY_CONFIDENCE),
                    reasoning=reasoning,
                    tokens_used=tokens,
                )
            return CategorySuggestion(category=matched, confidence=confidence, reasoning=reasoning, tokens_used=tokens)

        return await self._run("category", user_id, body, deadline_seconds)

    async def semantic_search(
        self,
        user_id: str,
        data: SearchRequest | dict[str, Any],
        *,
        deadline_seconds: float | None = None,
    ) -> SearchResults:
        data = _coerce(SearchRequest, data)

        async def body() -> SearchResults:
            await self._enforce_rate_limit(user_id, "search")
            if not data.candidates:
                return SearchResults(results=(), tokens_used=0)

            candidates = data.candidates[: self.cfg.search_max_candidates]
            prompt = build_search_prompt(query=data.query, candidates=candidates)
            result = await self._complete(
                CompletionRequest(
                    system_prompt=prompt.system,
                    user_message=prompt.user,
                    model=ModelKind.PRIMARY,
                    max_tokens=self.cfg.search_max_tokens,
                    temperature=SEARCH_TEMPERATURE,
                    response_format=ResponseFormat.JSON,
                )
            )
            tokens = result.usage.total_tokens

            parsed = parse_json_response(result.content)
            if not (isinstance(parsed, dict) and isinstance(parsed.get("results"), list)):
                log.info("search_unparsed_response", content_chars=len(result.content))
                return SearchResults(results=(), tokens_used=tokens)

            known_ids = {c.id for c in candidates}
            best: dict[str, SearchHit] = {}
            for item in parsed["results"]:
                if not isinstance(item, dict):
                    continue
                raw_id = item.get("id")
                hit_id = str(raw_id) if isinstance(raw_id, (str, int)) and not isinstance(raw_id, bool) else None
                if hit_id is None or hit_id not in known_ids:
                    continue
                score = coerce_score(item.get("score"))
                if score is None or score <= MIN_SEARCH_SCORE:
                    continue
                hit = SearchHit(id=hit_id, score=clamp_unit(score), reason=_optional_str(item.get("reason")))
                if hit_id not in best or hit.score > best[hit_id].score:
                    best[hit_id] = hit

            dropped = len(parsed["results"]) - len(best)
            if dropped:
                log.debug("search_results_filtered", dropped=dropped)
            return SearchResults(
                results=tuple(sorted(best.values(), key=lambda h: h.score, reverse=True)),
                interpretation=_optional_str(parsed.get("interpretation")),
                tokens_used=tokens,
            )

        return await self._run("search", user_id, body, deadline_seconds)

    async def enrich_new_bookmark(
        self,
        user_id: str,
        data: EnrichmentRequest | dict[str, Any],
        *,
        deadline_seconds: float | None = None,
    ) -> EnrichmentResult:
        """Summary, tags and category for a freshly saved bookmark.

        Steps run one after another in that order against the same quota. A
        failing step is logged and recorded in `failed_operations`; it never
        stops the remaining steps and this method does not raise for it.
        """
        data = _coerce(EnrichmentRequest, data)
        loop = asyncio.get_running_loop()
        started = loop.time()

        def remaining() -> float | None:
            if deadline_seconds is None:
                return None
            return deadline_seconds - (loop.time() - started)

        content = BookmarkContent(title=data.title, url=data.url, description=data.description, content=data.content)
        tokens_used = 0
        summary: str | None = None
        suggested_tags: tuple[str, ...] | None = None
        suggested_category: SuggestedCategory | None = None
        failed: list[str] = []

        steps: list[tuple[str, Callable[[float | None], Awaitable[Any]]]] = [
            ("summary", lambda d: self.summarize(user_id, content, deadline_seconds=d)),
            (
                "tags",
                lambda d: self.suggest_tags(
                    user_id,
                    TagRequest(**content.model_dump(), existing_tags=data.existing_tags),
                    deadline_seconds=d,
                ),
            ),
        ]
        if data.categories:
            steps.append(
                (
                    "category",
                    lambda d: self.suggest_category(
                        user_id,
                        CategoryRequest(**content.model_dump(), categories=data.categories),
                        deadline_seconds=d,
                    ),
                )
            )

        for name, step in steps:
            budget = remaining()
            if budget is not None and budget <= 0:
                failed.append(name)
                enrichment_steps_total.labels(operation=name, outcome="skipped").inc()
                log.warning("enrichment_step_skipped", operation=name, user_id=user_id, reason="deadline")
                continue
            try:
                outcome = await step(budget)
            except Exception as e:
                failed.append(name)
                enrichment_steps_total.labels(operation=name, outcome="failed").inc()
                log.warning(
                    "enrichment_step_failed",
                    operation=name,
                    user_id=user_id,
                    code=e.code.value if isinstance(e, AIError) else None,
                    error=str(e),
                )
                continue

            enrichment_steps_total.labels(operation=name, outcome="ok").inc()
            tokens_used += outcome.tokens_used
            if isinstance(outcome, SummaryResult):
                summary = outcome.summary or None
            elif isinstance(outcome, TagSuggestions):
                suggested_tags = outcome.tags or None
            elif isinstance(outcome, CategorySuggestion) and outcome.confidence > ENRICHMENT_CATEGORY_THRESHOLD:
                suggested_category = SuggestedCategory(name=outcome.category, confidence=outcome.confidence)

        return EnrichmentResult(
            summary=summary,
            suggested_tags=suggested_tags,
            suggested_category=suggested_category,
            tokens_used=tokens_used,
            failed_operations=tuple(failed),
        )
