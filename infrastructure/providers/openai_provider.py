# infrastructure/providers/openai_provider.py
from typing import Dict, Optional

import openai
from openai import AsyncOpenAI

from domain.errors import PermanentProviderError, TransientProviderError
from domain.models.routing import ModelTier
from infrastructure.providers.base import ModelProvider, ProviderResponse

_TRANSIENT = (
    openai.APITimeoutError,
    openai.APIConnectionError,
    openai.RateLimitError,
    openai.InternalServerError,
)

_PERMANENT = (
    openai.AuthenticationError,
    openai.PermissionDeniedError,
    openai.BadRequestError,
    openai.NotFoundError,
    openai.UnprocessableEntityError,
)

SYSTEM_PROMPT = (
    "You analyse inbound customer emails for a sales and support team. "
    "Always answer with a single JSON object and nothing else."
)


class OpenAIModelProvider(ModelProvider):
    name = "openai"

    def __init__(self, tier_models: Dict[ModelTier, str], api_key: Optional[str] = None,
                 base_url: Optional[str] = None, timeout_seconds: float = 30.0,
                 client: Optional[AsyncOpenAI] = None):
        self.tier_models = tier_models
        self.client = client or AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            timeout=timeout_seconds,
            max_retries=0,  # retries are owned by ModelGateway
        )

    async def generate(self, prompt: str, model_tier: ModelTier, max_tokens: int) -> ProviderResponse:
        model_name = self.tier_models[model_tier]
        try:
            completion = await self.client.chat.completions.create(
                model=model_name,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                max_tokens=max_tokens,
                temperature=0.1,
            )
        except _PERMANENT as e:
            raise PermanentProviderError(str(e), tier=model_tier.value) from e
        except _TRANSIENT as e:
            raise TransientProviderError(str(e), tier=model_tier.value) from e
        except openai.APIStatusError as e:
            if e.status_code >= 500:
                raise TransientProviderError(str(e), tier=model_tier.value) from e
            raise PermanentProviderError(str(e), tier=model_tier.value) from e

        text = completion.choices[0].message.content or ""
        tokens_used = completion.usage.total_tokens if completion.usage else 0
        return ProviderResponse(text=text, tokens_used=tokens_used,
                                model_tier=model_tier, model_name=model_name)

    async def close(self) -> None:
        await self.client.close()
