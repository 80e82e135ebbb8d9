from __future__ import annotations

from .completion import Completer, CompletionClientFactory
from .config import AIConfig
from .logging import configure_logging
from .metrics import maybe_start_metrics
from .orchestrator import EnrichmentOrchestrator
from .queue import TaskQueue
from .rate_limit import RateLimiter, build_rate_limiter
from .worker import TaskWorker


def create_orchestrator(
    cfg: AIConfig | None = None,
    *,
    client: Completer | None = None,
    rate_limiter: RateLimiter | None = None,
) -> EnrichmentOrchestrator:
    cfg = cfg or AIConfig()
    configure_logging(
        level=cfg.log_level,
        fmt=cfg.log_format,
        secrets=[s for s in (cfg.api_key, cfg.upstash_redis_rest_token) if s],
    )
    maybe_start_metrics(enable=cfg.enable_metrics, bind=cfg.metrics_bind, port=cfg.metrics_port)

    return EnrichmentOrchestrator(
        cfg,
        client=client,
        client_factory=None if client is not None else CompletionClientFactory(cfg),
        rate_limiter=rate_limiter or build_rate_limiter(cfg),
    )


def create_worker(orchestrator: EnrichmentOrchestrator, queue: TaskQueue | None = None) -> TaskWorker:
    cfg = orchestrator.cfg
    return TaskWorker(
        queue or TaskQueue(max_concurrent=cfg.queue_max_concurrent),
        orchestrator,
        task_timeout_seconds=cfg.queue_task_timeout_seconds,
    )
