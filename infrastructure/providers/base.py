# infrastructure/providers/base.py
from abc import ABC, abstractmethod
from dataclasses import dataclass

from domain.models.routing import ModelTier


@dataclass(frozen=True)
class ProviderResponse:
    text: str
    tokens_used: int
    model_tier: ModelTier
    model_name: str


class ModelProvider(ABC):
    """Pure function over (prompt, tier): raises TransientProviderError or PermanentProviderError"""

    name: str = "provider"

    @abstractmethod
    async def generate(self, prompt: str, model_tier: ModelTier, max_tokens: int) -> ProviderResponse:
        ...

    async def close(self) -> None:
        """Release client resources"""
