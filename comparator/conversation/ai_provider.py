"""
AI provider gateway.

Every provider call goes through the retry controller under the operation
name ``invoke:{provider}``, so each provider has its own circuit breaker and
a degraded provider cannot slow down the others.
"""

import asyncio
import logging
import math
import time
from typing import Dict, List, Optional, Union

from comparator.common.config import AIConfig
from comparator.common.error_handling import ClassifiedError, ErrorHandler, classify_error
from comparator.conversation.backing_store import AIProviderClient
from comparator.conversation.models import AIProvider, AIRequest, AIResponse, TokenUsage

logger = logging.getLogger(__name__)

# USD per 1K tokens
PROVIDER_COSTS: Dict[str, Dict] = {
    "claude": {
        "default": {"input": 0.0015, "output": 0.0075},
        "models": {
            "claude-3-5-sonnet-20241022": {"input": 0.003, "output": 0.015},
            "claude-3-haiku-20240307": {"input": 0.00025, "output": 0.00125},
        },
    },
    "openai": {
        "default": {"input": 0.0015, "output": 0.002},
        "models": {
            "gpt-4o": {"input": 0.005, "output": 0.015},
            "gpt-4o-mini": {"input": 0.00015, "output": 0.0006},
            "gpt-4-turbo": {"input": 0.01, "output": 0.03},
        },
    },
    "grok": {
        "default": {"input": 0.0005, "output": 0.0015},
        "models": {
            "grok-beta": {"input": 0.0005, "output": 0.0015},
        },
    },
}


class TokenCounter:
    """Token estimates and cost calculation."""

    @staticmethod
    def estimate_tokens(text: Optional[str]) -> int:
        """About four characters per token for English text."""
        return math.ceil(len(text or "") / 4)

    @staticmethod
    def calculate_cost(
        provider: Union[AIProvider, str],
        prompt_tokens: int,
        completion_tokens: int,
        model: Optional[str] = None
    ) -> float:
        """
        Cost in USD of one call.

        Model-specific prices are used when known, the provider default
        otherwise. Unknown providers cost nothing.
        """
        name = provider.value if isinstance(provider, AIProvider) else str(provider)
        provider_costs = PROVIDER_COSTS.get(name)
        if provider_costs is None:
            return 0.0
        prices = provider_costs["models"].get(model or "", provider_costs["default"])
        return (prompt_tokens / 1000) * prices["input"] + (completion_tokens / 1000) * prices["output"]


class AIProviderGateway:
    """
    Sends research prompts to AI providers through the retry controller.
    """

    def __init__(
        self,
        client: AIProviderClient,
        error_handler: Optional[ErrorHandler] = None,
        config: Optional[AIConfig] = None
    ):
        self._client = client
        self._error_handler = error_handler or ErrorHandler("ai-provider")
        self._config = config or AIConfig()

    @property
    def error_handler(self) -> ErrorHandler:
        return self._error_handler

    def prepare_request(self, provider: AIProvider, request: AIRequest) -> AIRequest:
        """Fill the model, token limit and temperature the request left unset."""
        defaults = {
            "model": self._config.default_models.get(provider.value),
            "max_tokens": self._config.max_tokens,
            "temperature": self._config.temperature
        }
        updates = {name: value for name, value in defaults.items() if getattr(request, name) is None}
        return request.model_copy(update=updates) if updates else request

    async def _invoke(self, provider: AIProvider, request: AIRequest) -> AIResponse:
        # Each attempt gets its own deadline; expiry classifies as a retryable timeout
        return await asyncio.wait_for(
            self._client.invoke(provider, request),
            timeout=self._config.request_timeout
        )

    async def generate(
        self,
        provider: Union[AIProvider, str, None],
        request: AIRequest,
        context: Optional[Dict] = None
    ) -> AIResponse:
        """
        Get one provider's completion.

        ``provider`` defaults to the configured default provider. Every attempt
        is bounded by ``request_timeout``.

        Raises:
            ClassifiedError: When the provider fails after retries or its
                circuit is open
        """
        provider = AIProvider(provider or self._config.default_provider)
        request = self.prepare_request(provider, request)
        start_time = time.time()
        call_context = dict(context or {})
        call_context["provider"] = provider.value

        response = await self._error_handler.execute_with_retry(
            lambda: self._invoke(provider, request),
            f"invoke:{provider.value}",
            call_context
        )

        if response.usage.prompt_tokens == 0 and response.usage.completion_tokens == 0:
            response = response.model_copy(update={"usage": TokenUsage(
                prompt_tokens=TokenCounter.estimate_tokens(
                    (request.system_prompt or "") + request.user_prompt
                ),
                completion_tokens=TokenCounter.estimate_tokens(response.content)
            )})
        if not response.cost:
            response = response.model_copy(update={"cost": TokenCounter.calculate_cost(
                provider,
                response.usage.prompt_tokens,
                response.usage.completion_tokens,
                response.model_name or request.model
            )})
        if not response.processing_time:
            response = response.model_copy(update={"processing_time": time.time() - start_time})

        logger.info(
            f"{provider.value} responded with {response.usage.total_tokens} tokens "
            f"(${response.cost:.4f})"
        )
        return response

    async def compare(
        self,
        providers: List[Union[AIProvider, str]],
        request: AIRequest,
        context: Optional[Dict] = None
    ) -> Dict[str, Union[AIResponse, ClassifiedError]]:
        """
        Send the same request to several providers in parallel.

        One provider failing does not affect the others.

        Returns:
            Mapping of provider name to its response or classified error
        """
        names = [AIProvider(provider).value for provider in providers]
        results = await asyncio.gather(
            *(self.generate(name, request, context) for name in names),
            return_exceptions=True
        )

        outcome: Dict[str, Union[AIResponse, ClassifiedError]] = {}
        for name, result in zip(names, results):
            if isinstance(result, BaseException) and not isinstance(result, Exception):
                raise result
            outcome[name] = classify_error(result) if isinstance(result, Exception) else result
        return outcome
