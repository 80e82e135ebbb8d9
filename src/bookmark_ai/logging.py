from __future__ import annotations

import logging
import re
from collections.abc import Callable, Mapping, MutableMapping
from typing import Any, TypeAlias, cast

import structlog


_SENSITIVE_KEYS = {
    "authorization",
    "api_key",
    "apikey",
    "groq_api_key",
    "upstash_redis_rest_token",
    "token",
    "secret",
    "password",
}

# Groq keys ("gsk_...") and bearer credentials that end up inside free-text messages.
_GROQ_KEY_RE = re.compile(r"\bgsk_[A-Za-z0-9]{8,}")
_BEARER_RE = re.compile(r"(?i)\bBearer\s+([A-Za-z0-9._=-]{6,})")

ProcessorReturn: TypeAlias = Mapping[str, Any] | str | bytes | bytearray | tuple[Any, ...]
Processor: TypeAlias = Callable[[Any, str, MutableMapping[str, Any]], ProcessorReturn]


def _is_sensitive_key(key: str) -> bool:
    key = key.lower()
    if key in _SENSITIVE_KEYS:
        return True
    # "tokens_used" / "max_tokens" are counters, not credentials.
    if "tokens" in key:
        return False
    return any(s in key for s in ("key", "token", "secret", "password"))


def redact_text(value: str, *, secrets: list[str]) -> str:
    out = value
    for secret in secrets:
        if secret and secret in out:
            out = out.replace(secret, "[REDACTED]")
    out = _GROQ_KEY_RE.sub("[REDACTED]", out)
    out = _BEARER_RE.sub("Bearer [REDACTED]", out)
    return out


def _redact_obj(obj: Any, *, secrets: list[str]) -> Any:
    if obj is None:
        return None
    if isinstance(obj, str):
        return redact_text(obj, secrets=secrets)
    if isinstance(obj, (int, float, bool)):
        return obj
    if isinstance(obj, (list, tuple)):
        redacted_seq = [_redact_obj(v, secrets=secrets) for v in obj]
        return redacted_seq if isinstance(obj, list) else tuple(redacted_seq)
    if isinstance(obj, dict):
        return {
            k: "[REDACTED]" if _is_sensitive_key(str(k)) else _redact_obj(v, secrets=secrets)
            for k, v in obj.items()
        }
    return obj


def make_redaction_processor(*, secrets: list[str]) -> Processor:
    secrets_norm = [s for s in secrets if isinstance(s, str) and s]

    def _processor(_logger: Any, _method_name: str, event_dict: MutableMapping[str, Any]) -> ProcessorReturn:
        return cast(dict[str, Any], _redact_obj(event_dict, secrets=secrets_norm))

    return _processor


def configure_logging(level: str = "INFO", fmt: str = "json", *, secrets: list[str] | None = None) -> None:
    """Configure structlog for the enrichment service.

    The redaction processor always runs so that Groq keys in upstream error bodies
    are masked even when no explicit secrets are passed.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(level=log_level)

    processors: list[Processor] = [
        cast(Processor, structlog.contextvars.merge_contextvars),
        cast(Processor, structlog.processors.add_log_level),
        cast(Processor, structlog.processors.TimeStamper(fmt="iso")),
        cast(Processor, structlog.processors.format_exc_info),
        make_redaction_processor(secrets=secrets or []),
    ]

    if fmt == "json":
        processors.append(cast(Processor, structlog.processors.JSONRenderer()))
    else:
        processors.append(cast(Processor, structlog.dev.ConsoleRenderer()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        cache_logger_on_first_use=True,
    )
