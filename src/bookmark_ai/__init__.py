from .app import create_orchestrator, create_worker
from .completion import CompletionClient, CompletionClientFactory
from .config import AIConfig, RateLimitPolicy
from .contracts import CompletionRequest, CompletionResult, ModelKind, ResponseFormat, TokenUsage
from .errors import AIError, ErrorCode, InvariantViolationError
from .orchestrator import (
    BookmarkContent,
    CategoryRequest,
    CategorySuggestion,
    EnrichmentOrchestrator,
    EnrichmentRequest,
    EnrichmentResult,
    SearchCandidate,
    SearchHit,
    SearchRequest,
    SearchResults,
    SuggestedCategory,
    SummaryResult,
    TagRequest,
    TagSuggestions,
)
from .queue import AITask, TaskPriority, TaskQueue, TaskState, TaskType
from .rate_limit import (
    FailOpenRateLimiter,
    InMemoryRateLimiter,
    RateLimitDecision,
    RateLimiter,
    UpstashRateLimiter,
    build_rate_limiter,
)
from .worker import TaskWorker

__all__ = [
    "AIConfig",
    "AIError",
    "AITask",
    "BookmarkContent",
    "CategoryRequest",
    "CategorySuggestion",
    "CompletionClient",
    "CompletionClientFactory",
    "CompletionRequest",
    "CompletionResult",
    "EnrichmentOrchestrator",
    "EnrichmentRequest",
    "EnrichmentResult",
    "ErrorCode",
    "FailOpenRateLimiter",
    "InMemoryRateLimiter",
    "InvariantViolationError",
    "ModelKind",
    "RateLimitDecision",
    "RateLimitPolicy",
    "RateLimiter",
    "ResponseFormat",
    "SearchCandidate",
    "SearchHit",
    "SearchRequest",
    "SearchResults",
    "SuggestedCategory",
    "SummaryResult",
    "TagRequest",
    "TagSuggestions",
    "TaskPriority",
    "TaskQueue",
    "TaskState",
    "TaskType",
    "TaskWorker",
    "TokenUsage",
    "UpstashRateLimiter",
    "build_rate_limiter",
    "create_orchestrator",
    "create_worker",
]
