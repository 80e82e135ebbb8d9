import pytest
from pydantic import ValidationError

from bookmark_ai.config import AIConfig, RateLimitPolicy
from bookmark_ai.errors import AIError, ErrorCode


def test_defaults(monkeypatch):
    for name in ("AI_RATE_LIMIT", "AI_RATE_LIMIT_WINDOW_SECONDS", "SEARCH_RATE_LIMIT", "RATE_LIMIT_BACKEND", "AI_MAX_RETRIES"):
        monkeypatch.delenv(name, raising=False)

    cfg = AIConfig(api_key="gsk_x")

    assert cfg.rate_limit_policies == {"ai": RateLimitPolicy(limit=20, window_seconds=60)}
    assert cfg.policy_for("search") == ("ai", cfg.rate_limit_policies["ai"])
    assert cfg.rate_limit_backend == "memory"
    assert cfg.max_retries == 3
    assert cfg.primary_model == "llama-3.1-70b-versatile"
    assert cfg.fast_model == "llama-3.1-8b-instant"


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("AI_RATE_LIMIT", "5")
    monkeypatch.setenv("AI_RATE_LIMIT_WINDOW_SECONDS", "10")
    monkeypatch.setenv("SEARCH_RATE_LIMIT", "2")
    monkeypatch.setenv("RATE_LIMIT_BACKEND", "Disabled")
    monkeypatch.setenv("AI_MAX_RETRIES", "0")

    cfg = AIConfig(api_key="gsk_x")

    assert cfg.rate_limit_policies["ai"] == RateLimitPolicy(limit=5, window_seconds=10)
    op_class, policy = cfg.policy_for("search")
    assert op_class == "search"
    assert policy.limit == 2
    assert cfg.policy_for("summary")[0] == "ai"
    assert cfg.rate_limit_backend == "disabled"
    assert cfg.max_retries == 0


def test_unknown_rate_limit_backend_is_rejected(monkeypatch):
    monkeypatch.setenv("RATE_LIMIT_BACKEND", "memcached")
    with pytest.raises(ValidationError):
        AIConfig(api_key="gsk_x")


@pytest.mark.parametrize(
    "overrides",
    [
        {"default_temperature": 1.5},
        {"summary_max_tokens": 0},
        {"max_retries": -1},
        {"rate_limit_policies": {"search": RateLimitPolicy(limit=1, window_seconds=1)}},
        {"operation_classes": {"summary": "premium"}},
    ],
)
def test_invalid_values_are_rejected(overrides):
    with pytest.raises(ValidationError):
        AIConfig(api_key="gsk_x", **overrides)


def test_policy_requires_positive_values():
    with pytest.raises(ValidationError):
        RateLimitPolicy(limit=0, window_seconds=60)
    with pytest.raises(ValidationError):
        RateLimitPolicy(limit=1, window_seconds=0)


def test_require_api_key():
    assert AIConfig(api_key="gsk_x").require_api_key() == "gsk_x"
    with pytest.raises(AIError) as exc:
        AIConfig(api_key="").require_api_key()
    assert exc.value.code is ErrorCode.MISSING_CREDENTIALS
