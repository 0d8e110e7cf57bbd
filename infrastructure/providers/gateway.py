# infrastructure/providers/gateway.py
import asyncio
from datetime import timedelta
from typing import Optional

from domain.errors import PermanentProviderError, TransientProviderError
from domain.models.routing import ModelTier
from infrastructure.providers.base import ModelProvider, ProviderResponse
from infrastructure.resilience.circuit_breaker import CircuitBreakerConfig, CircuitBreakerRegistry
from shared.config import ProviderConfig
from shared.logging import logger


class ModelGateway:
    """
    Single entry point for model calls.

    Bounds in-flight provider calls with a semaphore, guards each tier with
    its own circuit breaker, and retries a transient failure once on the next
    cheaper tier (or the same tier when demotion is not allowed).
    """

    def __init__(self, provider: ModelProvider, max_concurrent_calls: int = 8,
                 registry: Optional[CircuitBreakerRegistry] = None,
                 config: Optional[ProviderConfig] = None):
        self.provider = provider
        self.config = config or ProviderConfig()
        self.registry = registry or CircuitBreakerRegistry()
        self._semaphore = asyncio.Semaphore(max_concurrent_calls)
        self._breaker_config = CircuitBreakerConfig(
            failure_threshold=self.config.breaker_failure_threshold,
            recovery_timeout=timedelta(seconds=self.config.breaker_recovery_seconds),
            timeout_seconds=self.config.request_timeout_seconds,
        )

    async def generate(self, prompt: str, model_tier: ModelTier, max_tokens: int,
                       allow_demotion: bool = True) -> ProviderResponse:
        try:
            return await self._call(prompt, model_tier, max_tokens)
        except PermanentProviderError:
            raise
        except TransientProviderError as e:
            retry_tier = model_tier.demoted() if allow_demotion else model_tier
            logger.warning("Transient provider failure, retrying once",
                           model_tier=model_tier.value,
                           retry_tier=retry_tier.value,
                           error=str(e))
            return await self._call(prompt, retry_tier, max_tokens)

    async def _call(self, prompt: str, model_tier: ModelTier, max_tokens: int) -> ProviderResponse:
        breaker = await self.registry.get_breaker(f"provider:{model_tier.value}", self._breaker_config)
        async with self._semaphore:
            return await breaker.call(self.provider.generate, prompt, model_tier, max_tokens)

    async def close(self) -> None:
        await self.provider.close()
