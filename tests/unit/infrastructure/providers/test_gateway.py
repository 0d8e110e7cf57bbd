# tests/unit/infrastructure/providers/test_gateway.py
import pytest
import asyncio
from typing import List

from domain.errors import PermanentProviderError, TransientProviderError
from domain.models.routing import ModelTier
from infrastructure.providers.base import ModelProvider, ProviderResponse
from infrastructure.providers.gateway import ModelGateway


class ScriptedProvider(ModelProvider):
    """Raises the queued errors in order, then answers"""

    def __init__(self, errors=(), delay: float = 0.0):
        self.errors = list(errors)
        self.delay = delay
        self.calls: List[ModelTier] = []
        self.in_flight = 0
        self.peak = 0
        self.closed = False

    async def generate(self, prompt, model_tier, max_tokens):
        self.calls.append(model_tier)
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.errors:
                raise self.errors.pop(0)
            return ProviderResponse(text="{}", tokens_used=10, model_tier=model_tier,
                                    model_name=f"m-{model_tier.value}")
        finally:
            self.in_flight -= 1

    async def close(self):
        self.closed = True


class TestModelGateway:
    """Test retry, demotion and concurrency limits"""

    @pytest.mark.asyncio
    async def test_success_passes_through(self):
        provider = ScriptedProvider()
        gateway = ModelGateway(provider)

        response = await gateway.generate("p", ModelTier.STANDARD, 100)

        assert response.model_tier == ModelTier.STANDARD
        assert provider.calls == [ModelTier.STANDARD]

    @pytest.mark.asyncio
    async def test_transient_error_retries_one_tier_down(self):
        """A transient failure on Premium is retried once on Standard"""
        provider = ScriptedProvider(errors=[TransientProviderError("rate limited")])
        gateway = ModelGateway(provider)

        response = await gateway.generate("p", ModelTier.PREMIUM, 100)

        assert provider.calls == [ModelTier.PREMIUM, ModelTier.STANDARD]
        assert response.model_tier == ModelTier.STANDARD

    @pytest.mark.asyncio
    async def test_no_demotion_retries_same_tier(self):
        """Forced routing keeps its tier on retry"""
        provider = ScriptedProvider(errors=[TransientProviderError("timeout")])
        gateway = ModelGateway(provider)

        response = await gateway.generate("p", ModelTier.PREMIUM, 100, allow_demotion=False)

        assert provider.calls == [ModelTier.PREMIUM, ModelTier.PREMIUM]
        assert response.model_tier == ModelTier.PREMIUM

    @pytest.mark.asyncio
    async def test_economy_retries_on_economy(self):
        provider = ScriptedProvider(errors=[TransientProviderError("timeout")])

        await ModelGateway(provider).generate("p", ModelTier.ECONOMY, 100)

        assert provider.calls == [ModelTier.ECONOMY, ModelTier.ECONOMY]

    @pytest.mark.asyncio
    async def test_only_one_retry(self):
        provider = ScriptedProvider(errors=[TransientProviderError("a"), TransientProviderError("b")])

        with pytest.raises(TransientProviderError):
            await ModelGateway(provider).generate("p", ModelTier.PREMIUM, 100)

        assert len(provider.calls) == 2

    @pytest.mark.asyncio
    async def test_permanent_error_is_not_retried(self):
        provider = ScriptedProvider(errors=[PermanentProviderError("bad request")])

        with pytest.raises(PermanentProviderError):
            await ModelGateway(provider).generate("p", ModelTier.PREMIUM, 100)

        assert provider.calls == [ModelTier.PREMIUM]

    @pytest.mark.asyncio
    async def test_breakers_are_per_tier(self):
        provider = ScriptedProvider(errors=[TransientProviderError("x")])
        gateway = ModelGateway(provider)

        await gateway.generate("p", ModelTier.PREMIUM, 100)

        status = await gateway.registry.get_all_status()
        assert status["provider:premium"]["failure_count"] == 1
        assert status["provider:standard"]["failure_count"] == 0

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self):
        """In-flight provider calls never exceed the configured limit"""
        provider = ScriptedProvider(delay=0.02)
        gateway = ModelGateway(provider, max_concurrent_calls=2)

        await asyncio.gather(*(gateway.generate("p", ModelTier.ECONOMY, 100) for _ in range(6)))

        assert provider.peak == 2
        assert len(provider.calls) == 6

    @pytest.mark.asyncio
    async def test_close_closes_provider(self):
        provider = ScriptedProvider()
        await ModelGateway(provider).close()
        assert provider.closed
