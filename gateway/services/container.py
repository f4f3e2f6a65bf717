"""Wiring of the resilience services for one process."""

import time
from typing import Callable, Optional

from gateway.logging_config import get_logger
from gateway.services.alert_service import alert_circuit_open, flush_alerts
from gateway.services.background import PeriodicTask
from gateway.services.batcher import MessageBatcher
from gateway.services.channel_client import ChannelClient
from gateway.services.circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitBreakerRegistry
from gateway.services.conversation_tracker import ConversationTracker
from gateway.services.llm import LLMProvider, OpenAIProvider
from gateway.services.model_stats import ModelStats
from gateway.services.pipeline import InboundPipeline, LLMReplyHandler, MessageHandler
from gateway.services.rate_limiter import RateLimiter
from gateway.services.response_cache import ResponseCache
from gateway.services.retry_queue import RetryQueue
from gateway.services.storage import SnapshotHook

logger = get_logger("container")

LLM_BREAKER = "llm"
CHANNEL_BREAKER = "channel_service"


def _alert_on_open(breaker: CircuitBreaker) -> None:
    alert_circuit_open(breaker.get_state())


class ResilienceContainer:
    def __init__(
        self,
        *,
        rate_limiter: RateLimiter,
        breakers: CircuitBreakerRegistry,
        cache: ResponseCache,
        batcher: MessageBatcher,
        tracker: ConversationTracker,
        retry_queue: RetryQueue,
        model_stats: ModelStats,
        pipeline: InboundPipeline,
        llm: Optional[LLMProvider] = None,
        channel: Optional[ChannelClient] = None,
        snapshot_hook: Optional[SnapshotHook] = None,
    ):
        self.rate_limiter = rate_limiter
        self.breakers = breakers
        self.cache = cache
        self.batcher = batcher
        self.tracker = tracker
        self.retry_queue = retry_queue
        self.model_stats = model_stats
        self.pipeline = pipeline
        self.llm = llm
        self.channel = channel
        self.snapshot_hook = snapshot_hook
        self.tasks: list[PeriodicTask] = []
        self.started_at: Optional[float] = None

        self.retry_queue.bind_processor(self.pipeline.reprocess)

    @classmethod
    def from_settings(
        cls,
        settings,
        *,
        clock: Callable[[], float] = time.time,
        handler: Optional[MessageHandler] = None,
        snapshot_hook: Optional[SnapshotHook] = None,
    ) -> "ResilienceContainer":
        breakers = CircuitBreakerRegistry(
            CircuitBreakerConfig.from_settings(settings),
            clock=clock,
            on_open=_alert_on_open,
        )
        model_stats = ModelStats(clock=clock)

        llm = None
        if handler is None:
            llm = OpenAIProvider(
                settings.llm_api_key,
                breakers.get(LLM_BREAKER),
                models=settings.llm_model_list,
                base_url=settings.llm_base_url,
                model_stats=model_stats,
                timeout_seconds=settings.llm_timeout_seconds,
            )
            handler = LLMReplyHandler(llm)

        channel = None
        if settings.channel_service_url:
            channel = ChannelClient(
                settings.channel_service_url,
                breakers.get(CHANNEL_BREAKER),
                api_key=settings.internal_api_key,
            )

        rate_limiter = RateLimiter.from_settings(settings, clock=clock)
        cache = ResponseCache.from_settings(settings, clock=clock)
        batcher = MessageBatcher.from_settings(settings, clock=clock)
        tracker = ConversationTracker.from_settings(settings, clock=clock)
        retry_queue = RetryQueue(
            max_attempts=settings.retry_max_attempts,
            retry_backoff_seconds=settings.retry_backoff_seconds,
            clock=clock,
        )
        pipeline = InboundPipeline(
            rate_limiter=rate_limiter,
            batcher=batcher,
            cache=cache,
            tracker=tracker,
            retry_queue=retry_queue,
            handler=handler,
            reply_sink=channel.send_message if channel else None,
            clock=clock,
        )
        container = cls(
            rate_limiter=rate_limiter,
            breakers=breakers,
            cache=cache,
            batcher=batcher,
            tracker=tracker,
            retry_queue=retry_queue,
            model_stats=model_stats,
            pipeline=pipeline,
            llm=llm,
            channel=channel,
            snapshot_hook=snapshot_hook,
        )
        container.tasks = container._build_tasks(settings)
        return container

    def _build_tasks(self, settings) -> list[PeriodicTask]:
        tasks = [
            PeriodicTask("rate_limit_sweep", settings.rate_limit_sweep_interval_seconds, self.rate_limiter.sweep),
            PeriodicTask("context_sweep", settings.context_sweep_interval_seconds, self.tracker.sweep),
            PeriodicTask("cache_purge", settings.context_sweep_interval_seconds, self.cache.purge_expired),
        ]
        if settings.retry_worker_enabled:
            tasks.append(
                PeriodicTask("retry_worker", settings.retry_worker_interval_seconds, self.retry_queue.process_due)
            )
        return tasks

    def start(self) -> None:
        """Start background loops. Must be called from a running event loop."""
        for task in self.tasks:
            task.start()
        self.started_at = time.time()
        logger.info("Resilience services started", extra={"context": {"tasks": [t.name for t in self.tasks]}})

    async def shutdown(self) -> None:
        for task in self.tasks:
            await task.stop()

        if self.snapshot_hook is not None:
            for name, snapshot in (
                ("rate_limit", self.rate_limiter.store.snapshot()),
                ("retry_queue", self.retry_queue.store.snapshot()),
            ):
                try:
                    self.snapshot_hook(name, snapshot)
                except Exception as exc:
                    logger.error("Snapshot hook failed", extra={"context": {"store": name, "error": str(exc)}})

        for client in (self.llm, self.channel):
            if client is not None:
                await client.aclose()
        await flush_alerts()
        logger.info("Resilience services stopped")
