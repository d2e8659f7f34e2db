"""
Pipeline context.

Owns the shared components (queue, cache, cost ledger, gateway, notifier)
and is handed to workers at construction, so nothing lives in module
globals.
"""

import asyncio
import logging

from .anonymization import AnonymizationEngine
from .batching import BatchCoordinator
from .cache_store import ResultCache
from .config import PipelineConfig, get_config
from .cost import CostGovernor
from .gateway import ProviderGateway
from .job_queue import JobQueue
from .notifier import ProgressNotifier, TokenAuthorizer
from .providers import ProviderRegistry, build_registry

logger = logging.getLogger(__name__)


class PipelineContext:
    """Process-wide components shared by every worker."""

    def __init__(
        self,
        config: PipelineConfig | None = None,
        *,
        registry: ProviderRegistry | None = None,
        queue: JobQueue | None = None,
        cache: ResultCache | None = None,
        governor: CostGovernor | None = None,
        notifier: ProgressNotifier | None = None,
        anonymizer: AnonymizationEngine | None = None,
    ):
        self.config = config or get_config()
        config = self.config

        self.notifier = notifier or ProgressNotifier(TokenAuthorizer(config.subscriber_tokens))
        self.queue = queue or JobQueue(
            config.db_path,
            notifier=self.notifier,
            visibility_timeout=config.visibility_timeout_seconds,
        )
        self.cache = cache or ResultCache(config.cache_max_entries, config.cache_ttl_seconds)
        self.governor = governor or CostGovernor(
            daily_budget=config.daily_budget,
            monthly_budget=config.monthly_budget,
            provider_models={name: s.model for name, s in config.providers.items()},
        )
        self.registry = registry if registry is not None else build_registry(config.providers)
        self.gateway = ProviderGateway(
            self.registry,
            self.governor,
            default_provider=config.default_provider,
            fallback_provider=config.fallback_provider,
            max_retries=config.max_retries,
            base_delay=config.retry_base_delay,
            max_delay=config.retry_max_delay,
            jitter=config.retry_jitter,
            timeout=config.provider_timeout_seconds,
            bulk_threshold=config.bulk_threshold,
            rate_limits={
                name: (s.requests_per_minute, s.tokens_per_minute)
                for name, s in config.providers.items()
            },
            breaker_threshold=config.circuit_breaker_threshold,
            breaker_reset_seconds=config.circuit_breaker_reset_seconds,
        )
        self.batcher = BatchCoordinator(self.gateway, config.max_concurrency)
        self.anonymizer = anonymizer or AnonymizationEngine(salt=config.anonymization_salt or None)
        self._sweeper: asyncio.Task | None = None

    async def start(self) -> None:
        await self.queue.initialize()
        if self._sweeper is None:
            self._sweeper = asyncio.create_task(
                self.cache.run_sweeper(self.config.cache_sweep_interval_seconds)
            )
        if len(self.registry) == 0:
            logger.warning("[CONTEXT] No providers registered; jobs will fail with provider_unavailable")

    async def close(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            await asyncio.gather(self._sweeper, return_exceptions=True)
            self._sweeper = None
        self.notifier.close()
        self.cache.close()
        await self.queue.close()
        await self.registry.aclose()
