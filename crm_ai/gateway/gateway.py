"""AI Gateway — the single public surface used by the rest of the CRM.

  1. Builds a provider-neutral CompletionRequest from caller messages
  2. Runs it through the FallbackOrchestrator (credential rotation,
     provider fallback)
  3. Normalizes structured output (JSON repair), re-issuing the request
     once if the model's answer cannot be parsed

Usage:
    gateway = AiGateway.from_settings()

    text = await gateway.generate_completion([{"role": "user", "content": "Hi"}])
    data = await gateway.extract_structured_data(note, "name, company, email")
    async for chunk in gateway.generate_streaming_completion(messages):
        ...
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable, Mapping
from typing import Any

import httpx

from crm_ai.core.config import Settings, settings, validate_ai_settings
from crm_ai.core.metrics import PARSE_RETRIES
from crm_ai.gateway.credential_pool import CredentialPools
from crm_ai.gateway.errors import ParseError
from crm_ai.gateway.normalizer import normalize_text, parse_json
from crm_ai.gateway.orchestrator import FallbackOrchestrator
from crm_ai.gateway.types import (
    Capability,
    CompletionRequest,
    ExtractionSchema,
    Message,
    MultimodalPayload,
    Provider,
)
from crm_ai.gateway.vendor_adapters import ADAPTER_REGISTRY, BaseVendorAdapter, get_adapter

logger = logging.getLogger(__name__)

EXTRACTION_TEMPERATURE = 0.3
DEFAULT_TRANSCRIPTION_PROMPT = (
    "Please provide a high-quality transcript of this audio recording. Return ONLY the transcript text."
)

MessageLike = Message | Mapping[str, Any]
PayloadLike = MultimodalPayload | str


def build_extraction_prompt(schema: str, example: str | None = None) -> str:
    prompt = (
        "You are a data extraction assistant. Extract information according to this schema: "
        f"{schema}. Return ONLY valid JSON, no additional text."
    )
    if example:
        prompt += f"\n\nExample output:\n{example}"
    return prompt


class AiGateway:
    """Facade over adapters, credential pools and the orchestrator.

    Holds no per-request state; the only shared mutable state is the
    rotation cursor inside each credential pool.
    """

    def __init__(
        self,
        adapters: Mapping[Provider, BaseVendorAdapter],
        pools: CredentialPools,
        primary_provider: Provider = Provider.GEMINI,
        fallback_providers: Iterable[Provider] = (),
        default_temperature: float | None = None,
        default_max_tokens: int | None = None,
    ):
        self.pools = pools
        self.orchestrator = FallbackOrchestrator(adapters, pools, primary_provider, fallback_providers)
        self.default_temperature = default_temperature
        self.default_max_tokens = default_max_tokens

    @classmethod
    def from_settings(
        cls,
        config: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> AiGateway:
        """Build a gateway from application settings (env / .env)."""
        config = config or settings
        validate_ai_settings(config)

        provider_configs = config.provider_configs()
        adapters = {p: get_adapter(p, provider_configs.get(p), transport=transport) for p in ADAPTER_REGISTRY}
        pools = CredentialPools.from_mapping(
            {p: config.credentials_for(p) for p in Provider},
            shuffle=config.ai_shuffle_credentials,
        )

        fallbacks = []
        for name in config.fallback_provider_list:
            provider = Provider(name)
            if pools.size(provider) == 0:
                logger.warning("Fallback provider %s has no API keys; leaving it out", provider.value)
                continue
            fallbacks.append(provider)

        return cls(
            adapters,
            pools,
            primary_provider=Provider(config.ai_primary_provider),
            fallback_providers=fallbacks,
            default_temperature=config.ai_default_temperature,
            default_max_tokens=config.ai_default_max_tokens,
        )

    # -- helpers ------------------------------------------------------------

    def _build_request(
        self,
        messages: Iterable[MessageLike],
        temperature: float | None = None,
        max_tokens: int | None = None,
        preferred_provider: Provider | str | None = None,
        fallback_providers: Iterable[Provider | str] | None = None,
        timeout: float | None = None,
        model: str | None = None,
    ) -> CompletionRequest:
        return CompletionRequest(
            messages=[Message.coerce(m) for m in messages],
            temperature=temperature if temperature is not None else self.default_temperature,
            max_tokens=max_tokens or self.default_max_tokens,
            preferred_provider=Provider(preferred_provider) if preferred_provider else None,
            fallback_providers=[Provider(p) for p in fallback_providers] if fallback_providers is not None else None,
            timeout=timeout,
            model=model,
        )

    async def _parse_with_retry(self, operation: str, produce: Callable[[], Awaitable[str]]) -> Any:
        """Parse model output; re-issue the request exactly once on ParseError."""
        raw = await produce()
        try:
            return parse_json(raw)
        except ParseError as e:
            PARSE_RETRIES.labels(operation=operation).inc()
            logger.warning("Unparseable %s output, retrying once: %s", operation, e)
        return parse_json(await produce())

    # -- public operations --------------------------------------------------

    async def generate_completion(
        self,
        messages: Iterable[MessageLike],
        *,
        temperature: float | None = None,
        max_tokens: int | None = None,
        preferred_provider: Provider | str | None = None,
        fallback_providers: Iterable[Provider | str] | None = None,
        timeout: float | None = None,
        model: str | None = None,
    ) -> str:
        """Plain text completion. Raises GenerationError once every provider failed."""
        request = self._build_request(
            messages, temperature, max_tokens, preferred_provider, fallback_providers, timeout, model
        )
        text = await self.orchestrator.run(
            Capability.COMPLETION,
            "completion",
            lambda adapter, credential: adapter.complete(credential, request),
            request.preferred_provider,
            request.fallback_providers,
        )
        return normalize_text(text)

    async def generate_streaming_completion(
        self,
        messages: Iterable[MessageLike],
        *,
        temperature: float | None = None,
        max_tokens: int | None = None,
        preferred_provider: Provider | str | None = None,
        fallback_providers: Iterable[Provider | str] | None = None,
        timeout: float | None = None,
        model: str | None = None,
    ) -> AsyncIterator[str]:
        """Lazily stream text fragments; stop iterating to cancel.

        Nothing runs until the first chunk is requested, so invalid options
        surface there too.
        """
        request = self._build_request(
            messages, temperature, max_tokens, preferred_provider, fallback_providers, timeout, model
        )
        stream = self.orchestrator.stream(
            "stream",
            lambda adapter, credential: adapter.stream_complete(credential, request),
            request.preferred_provider,
            request.fallback_providers,
        )
        try:
            async for chunk in stream:
                yield chunk
        finally:
            await stream.aclose()

    async def extract_structured_data(
        self,
        source_text: str,
        schema: str | ExtractionSchema,
        example: str | None = None,
        *,
        temperature: float = EXTRACTION_TEMPERATURE,
        preferred_provider: Provider | str | None = None,
        fallback_providers: Iterable[Provider | str] | None = None,
        timeout: float | None = None,
    ) -> Any:
        """Ask the model for JSON matching ``schema`` and return the parsed value."""
        if isinstance(schema, ExtractionSchema):
            example = example or schema.example
            schema = schema.description

        messages = [
            Message.system(build_extraction_prompt(schema, example)),
            Message.user(source_text),
        ]
        return await self._parse_with_retry(
            "extraction",
            lambda: self.generate_completion(
                messages,
                temperature=temperature,
                preferred_provider=preferred_provider,
                fallback_providers=fallback_providers,
                timeout=timeout,
            ),
        )

    async def generate_embedding(
        self,
        text: str,
        *,
        preferred_provider: Provider | str | None = None,
        fallback_providers: Iterable[Provider | str] | None = None,
        timeout: float | None = None,
    ) -> list[float]:
        return await self.orchestrator.run(
            Capability.EMBEDDING,
            "embedding",
            lambda adapter, credential: adapter.embed(credential, text, timeout=timeout),
            preferred_provider,
            fallback_providers,
        )

    async def analyze_image(
        self,
        payload: PayloadLike,
        prompt: str,
        schema: str | None = None,
        *,
        preferred_provider: Provider | str | None = None,
        fallback_providers: Iterable[Provider | str] | None = None,
        timeout: float | None = None,
    ) -> Any:
        """Describe an image; with a schema, return the parsed JSON instead of text."""
        if isinstance(payload, str):
            payload = MultimodalPayload.from_data_url(payload, default_mime="image/jpeg")
        if schema:
            prompt = f"{prompt}\n\nReturn EXACTLY a JSON object matching this schema: {schema}"

        async def produce() -> str:
            return await self.orchestrator.run(
                Capability.MULTIMODAL,
                "image_analysis",
                lambda adapter, credential: adapter.analyze_image(credential, payload, prompt, timeout=timeout),
                preferred_provider,
                fallback_providers,
            )

        if schema:
            return await self._parse_with_retry("image_analysis", produce)
        return normalize_text(await produce())

    async def transcribe_audio(
        self,
        payload: PayloadLike,
        prompt: str = DEFAULT_TRANSCRIPTION_PROMPT,
        *,
        preferred_provider: Provider | str | None = None,
        fallback_providers: Iterable[Provider | str] | None = None,
        timeout: float | None = None,
    ) -> str:
        if isinstance(payload, str):
            payload = MultimodalPayload.from_data_url(payload, default_mime="audio/webm")
        text = await self.orchestrator.run(
            Capability.MULTIMODAL,
            "transcription",
            lambda adapter, credential: adapter.transcribe_audio(credential, payload, prompt, timeout=timeout),
            preferred_provider,
            fallback_providers,
        )
        return normalize_text(text)

    @staticmethod
    def parse_json(text: str) -> Any:
        """Run the JSON repair pipeline on raw model text."""
        return parse_json(text)

    def get_status(self) -> dict:
        """Routing and credential overview (no secrets)."""
        orchestrator = self.orchestrator
        return {
            "primary_provider": orchestrator.primary_provider.value,
            "fallback_providers": [p.value for p in orchestrator.fallback_providers],
            "credentials": self.pools.get_stats(),
            "capabilities": {
                p.value: sorted(c.value for c in adapter.capabilities) for p, adapter in orchestrator.adapters.items()
            },
        }
