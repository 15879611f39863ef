"""
AI provider gateway

One generate() contract over Azure OpenAI (GPT and DeepSeek deployments) and
Google Gemini, plus the model pricing table used for cost accounting.
"""
import asyncio
import math
import os
import time
from dataclasses import dataclass
from typing import Dict, Optional

from google import genai
from google.genai import types as genai_types
from openai import AsyncAzureOpenAI

from config import settings
import logging

logger = logging.getLogger(__name__)


class AIProviderError(Exception):
    """Provider not configured, request failed, or response malformed"""


@dataclass
class ModelPricing:
    """USD per one million tokens"""
    input: float
    output: float


@dataclass
class RateLimits:
    concurrent_requests: int
    delay_between_chunks_ms: int


@dataclass
class AIResult:
    text: str
    input_tokens: int
    output_tokens: int
    time_taken_ms: int
    finish_reason: Optional[str] = None  # "stop", "length", or provider-specific


MODEL_PRICING: Dict[str, ModelPricing] = {
    # Google Gemini
    "gemini-1.5-flash": ModelPricing(0.075, 0.30),
    "gemini-1.5-pro": ModelPricing(1.25, 5.00),
    "gemini-2.0-flash": ModelPricing(0.10, 0.40),
    "gemini-2.0-flash-001": ModelPricing(0.10, 0.40),
    "gemini-2.0-flash-lite-001": ModelPricing(0.075, 0.30),
    "gemini-2.5-flash": ModelPricing(0.15, 0.60),
    "gemini-2.5-flash-lite": ModelPricing(0.075, 0.30),
    "gemini-2.5-pro": ModelPricing(1.25, 10.00),
    # Azure OpenAI
    "gpt-4o": ModelPricing(2.50, 10.00),
    "gpt-4o-mini": ModelPricing(0.15, 0.60),
    "gpt-5": ModelPricing(5.00, 15.00),
    "gpt-4.1-mini": ModelPricing(0.15, 0.60),
    "gpt-5-mini": ModelPricing(0.30, 1.20),
    "gpt-5-turbo": ModelPricing(3.00, 10.00),
    # DeepSeek (Azure AI Foundry deployments)
    "deepseek-chat": ModelPricing(0.56, 1.68),
    "deepseek-reasoner": ModelPricing(0.56, 1.68),
}

DEFAULT_PRICING = ModelPricing(0.15, 0.60)

AZURE = "azure"
GOOGLE = "google"

# Rough chars-per-token ratio used only to budget output tokens up front
CHARS_PER_TOKEN = 4


def get_model_pricing(model_id: str) -> ModelPricing:
    return MODEL_PRICING.get(model_id, DEFAULT_PRICING)


def calculate_cost(model_id: str, input_tokens: int, output_tokens: int) -> float:
    pricing = get_model_pricing(model_id)
    return (input_tokens * pricing.input + output_tokens * pricing.output) / 1_000_000


def get_provider_from_model(model_id: str) -> str:
    if model_id.startswith("gpt-") or model_id.startswith("deepseek-"):
        return AZURE
    return GOOGLE


def get_provider_rate_limits(provider: str) -> RateLimits:
    if provider == AZURE:
        return RateLimits(concurrent_requests=75, delay_between_chunks_ms=0)
    return RateLimits(concurrent_requests=10, delay_between_chunks_ms=200)


def max_output_tokens_for_budget(model_id: str, prompt: str, max_cost: float, ceiling: int) -> int:
    """
    Largest output token allowance that keeps the estimated row cost under
    max_cost. Returns 0 when the prompt alone is estimated to exceed it.
    """
    pricing = get_model_pricing(model_id)
    estimated_input = math.ceil(len(prompt) / CHARS_PER_TOKEN)
    remaining = max_cost * 1_000_000 - estimated_input * pricing.input
    if remaining <= 0:
        return 0
    return max(0, min(ceiling, int(remaining // pricing.output)))


def is_gpt5_model(model_id: str) -> bool:
    return model_id.startswith("gpt-5")


def get_deployment_name(model_id: str) -> str:
    """Deployment name for a model; AZURE_DEPLOYMENT_<MODEL> overrides it"""
    env_key = "AZURE_DEPLOYMENT_" + model_id.upper().replace("-", "_").replace(".", "_")
    return os.environ.get(env_key) or model_id


def _normalize_finish_reason(reason) -> Optional[str]:
    if reason is None:
        return None
    name = getattr(reason, "name", None) or str(reason)
    if name.upper() in ("MAX_TOKENS", "LENGTH"):
        return "length"
    if name.upper() == "STOP":
        return "stop"
    return name.lower()


class AIProviderService:
    """Routes generation requests to the provider that serves the model"""

    def __init__(self):
        self._azure_clients: Dict[str, AsyncAzureOpenAI] = {}
        self._google_client = None
        self._loop = None

    def is_azure_configured(self) -> bool:
        return bool(settings.AZURE_OPENAI_ENDPOINT and settings.AZURE_OPENAI_API_KEY)

    def is_google_configured(self) -> bool:
        return bool(settings.GOOGLE_CLOUD_PROJECT or settings.GEMINI_API_KEY)

    def _bind_loop(self):
        # Pooled connections belong to the loop that opened them; each
        # asyncio.run() in a worker gets fresh clients
        loop = asyncio.get_running_loop()
        if self._loop is not loop:
            self._azure_clients = {}
            self._google_client = None
            self._loop = loop

    def _azure_client(self, api_version: str) -> AsyncAzureOpenAI:
        if not self.is_azure_configured():
            raise AIProviderError(
                "Azure OpenAI not configured. Set AZURE_OPENAI_ENDPOINT and AZURE_OPENAI_API_KEY."
            )
        client = self._azure_clients.get(api_version)
        if client is None:
            client = AsyncAzureOpenAI(
                azure_endpoint=settings.AZURE_OPENAI_ENDPOINT.rstrip("/"),
                api_key=settings.AZURE_OPENAI_API_KEY,
                api_version=api_version,
                max_retries=0,
            )
            self._azure_clients[api_version] = client
        return client

    def _google(self):
        if not self.is_google_configured():
            raise AIProviderError(
                "Google AI not configured. Set GOOGLE_CLOUD_PROJECT or GEMINI_API_KEY."
            )
        if self._google_client is None:
            if settings.GOOGLE_CLOUD_PROJECT:
                self._google_client = genai.Client(
                    vertexai=True,
                    project=settings.GOOGLE_CLOUD_PROJECT,
                    location=settings.GOOGLE_CLOUD_LOCATION,
                )
            else:
                self._google_client = genai.Client(api_key=settings.GEMINI_API_KEY)
        return self._google_client

    async def generate(
        self,
        prompt: str,
        model_id: str,
        temperature: Optional[float] = None,
        max_output_tokens: Optional[int] = None,
    ) -> AIResult:
        """Generate text for a prompt; raises AIProviderError on any failure"""
        self._bind_loop()
        max_tokens = max_output_tokens or settings.DEFAULT_MAX_OUTPUT_TOKENS
        temp = 0.7 if temperature is None else temperature

        try:
            if get_provider_from_model(model_id) == AZURE:
                return await self._generate_azure(prompt, model_id, temp, max_tokens)
            return await self._generate_google(prompt, model_id, temp, max_tokens)
        except AIProviderError:
            raise
        except Exception as e:
            logger.warning(f"Provider call failed for model={model_id}: {e}")
            raise AIProviderError(str(e)) from e

    async def _generate_azure(self, prompt: str, model_id: str, temperature: float, max_tokens: int) -> AIResult:
        gpt5 = is_gpt5_model(model_id)
        api_version = settings.AZURE_OPENAI_GPT5_API_VERSION if gpt5 else settings.AZURE_OPENAI_API_VERSION
        client = self._azure_client(api_version)

        params = {
            "model": get_deployment_name(model_id),
            "messages": [{"role": "user", "content": prompt}],
        }
        # GPT-5 deployments reject temperature and the legacy max_tokens field
        if gpt5:
            params["max_completion_tokens"] = max_tokens
        else:
            params["max_tokens"] = max_tokens
            params["temperature"] = temperature

        start = time.monotonic()
        response = await client.chat.completions.create(**params)
        elapsed_ms = int((time.monotonic() - start) * 1000)

        if not response.choices:
            raise AIProviderError("Azure OpenAI returned no choices")

        choice = response.choices[0]
        usage = response.usage
        return AIResult(
            text=choice.message.content or "",
            input_tokens=(usage.prompt_tokens if usage else 0) or 0,
            output_tokens=(usage.completion_tokens if usage else 0) or 0,
            time_taken_ms=elapsed_ms,
            finish_reason=_normalize_finish_reason(choice.finish_reason),
        )

    async def _generate_google(self, prompt: str, model_id: str, temperature: float, max_tokens: int) -> AIResult:
        client = self._google()
        config = genai_types.GenerateContentConfig(
            temperature=temperature,
            max_output_tokens=max_tokens,
        )

        start = time.monotonic()
        response = await client.aio.models.generate_content(
            model=model_id,
            contents=prompt,
            config=config,
        )
        elapsed_ms = int((time.monotonic() - start) * 1000)

        usage = response.usage_metadata
        finish_reason = None
        if response.candidates:
            finish_reason = response.candidates[0].finish_reason

        return AIResult(
            text=response.text or "",
            input_tokens=(usage.prompt_token_count if usage else 0) or 0,
            output_tokens=(usage.candidates_token_count if usage else 0) or 0,
            time_taken_ms=elapsed_ms,
            finish_reason=_normalize_finish_reason(finish_reason),
        )


# Singleton instance
ai_provider_service = AIProviderService()
