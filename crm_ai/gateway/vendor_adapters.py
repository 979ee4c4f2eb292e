"""Provider Adapters — protocol-level handling for each LLM backend.

Each adapter translates the gateway's provider-neutral request into the
backend's HTTP protocol, sends it with the credential it is handed, and
returns plain text, text chunks or a vector. Backend failures are
classified into the gateway error taxonomy here and nowhere else.

Provider-specific behaviors:
  - Gemini: generateContent / streamGenerateContent (SSE) / embedContent,
    systemInstruction for system prompts, inlineData for image/audio,
    finishReason SAFETY or a prompt blockReason → ProviderError
  - OpenAI: chat completions with SSE streaming; completion and streaming
    only, used as the fallback path
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from contextlib import contextmanager
from typing import Any

import httpx

from crm_ai.gateway.errors import (
    ProviderError,
    ProviderTimeoutError,
    RateLimitError,
    UnsupportedOperationError,
)
from crm_ai.gateway.types import (
    DEFAULT_PROVIDER_CONFIGS,
    Capability,
    CompletionRequest,
    Credential,
    MultimodalPayload,
    Provider,
    ProviderConfig,
    Role,
    hoist_system,
)

logger = logging.getLogger(__name__)


async def _iter_sse(response: httpx.Response) -> AsyncIterator[dict]:
    """Yield decoded JSON events from a server-sent-events response."""
    async for line in response.aiter_lines():
        if not line.startswith("data:"):
            continue
        data = line[5:].strip()
        if data == "[DONE]":
            return
        try:
            yield json.loads(data)
        except json.JSONDecodeError:
            logger.debug("Skipping undecodable stream event: %.200s", data)


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


class BaseVendorAdapter(ABC):
    """Base class for all provider adapters."""

    provider: Provider
    capabilities: frozenset[Capability] = frozenset()

    def __init__(
        self,
        config: ProviderConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.config = config or DEFAULT_PROVIDER_CONFIGS[self.provider]
        self._transport = transport

    @property
    def name(self) -> str:
        return self.provider.value

    def supports(self, capability: Capability) -> bool:
        return capability in self.capabilities

    # -- operations ---------------------------------------------------------

    @abstractmethod
    async def complete(self, credential: Credential, request: CompletionRequest) -> str:
        """Send a completion request and return the generated text."""
        ...

    @abstractmethod
    def stream_complete(self, credential: Credential, request: CompletionRequest) -> AsyncIterator[str]:
        """Stream text chunks as the backend emits them."""
        ...

    async def embed(self, credential: Credential, text: str, timeout: float | None = None) -> list[float]:
        raise self._unsupported(Capability.EMBEDDING)

    async def analyze_image(
        self,
        credential: Credential,
        payload: MultimodalPayload,
        prompt: str,
        timeout: float | None = None,
    ) -> str:
        raise self._unsupported(Capability.MULTIMODAL)

    async def transcribe_audio(
        self,
        credential: Credential,
        payload: MultimodalPayload,
        prompt: str,
        timeout: float | None = None,
    ) -> str:
        raise self._unsupported(Capability.MULTIMODAL)

    # -- helpers ------------------------------------------------------------

    def _unsupported(self, capability: Capability) -> UnsupportedOperationError:
        return UnsupportedOperationError(
            f"{capability.value} is not supported by {self.name}",
            provider=self.provider,
            capability=capability,
        )

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    def _timeout(self, timeout: float | None) -> float:
        return timeout if timeout is not None else self.config.timeout_seconds

    def _model(self, request: CompletionRequest) -> str:
        return request.model or self.config.default_model

    def _temperature(self, request: CompletionRequest) -> float:
        if request.temperature is not None:
            return request.temperature
        return self.config.default_temperature

    def _max_tokens(self, request: CompletionRequest) -> int:
        return request.max_tokens or self.config.default_max_tokens

    def _check_response(self, response: httpx.Response) -> None:
        """Map a non-2xx HTTP response to RateLimitError / ProviderError."""
        if response.status_code < 400:
            return
        if response.status_code == 429:
            raise RateLimitError(
                f"Rate limited by {self.name}",
                provider=self.provider,
                retry_after=_retry_after(response),
            )
        raise ProviderError(
            f"{self.name} request failed: {response.status_code} {response.text[:200]}",
            provider=self.provider,
            status_code=response.status_code,
            error_code=str(response.status_code),
        )

    async def _check_stream_response(self, response: httpx.Response) -> None:
        if response.status_code >= 400:
            await response.aread()
            self._check_response(response)

    @contextmanager
    def _translate_errors(self, timeout: float):
        """Classify transport failures and malformed bodies."""
        try:
            yield
        except httpx.TimeoutException as e:
            raise ProviderTimeoutError(f"{self.name} timeout after {timeout}s", provider=self.provider) from e
        except httpx.HTTPError as e:
            raise ProviderError(f"{self.name} transport error: {e}", provider=self.provider) from e
        except (AttributeError, KeyError, IndexError, TypeError, ValueError) as e:
            raise ProviderError(
                f"Malformed {self.name} response: {e}",
                provider=self.provider,
                error_code="MALFORMED",
            ) from e


# ---------------------------------------------------------------------------
# Gemini Adapter (Google AI)
# ---------------------------------------------------------------------------


class GeminiAdapter(BaseVendorAdapter):
    """Google Gemini adapter: completion, streaming, embeddings and media."""

    provider = Provider.GEMINI
    capabilities = frozenset(Capability)

    def _url(self, model: str, method: str) -> str:
        return f"{self.config.base_url}/models/{model}:{method}"

    @staticmethod
    def _headers(credential: Credential) -> dict[str, str]:
        return {"x-goog-api-key": credential.secret, "Content-Type": "application/json"}

    def _build_payload(self, request: CompletionRequest) -> dict[str, Any]:
        system_text, turns = hoist_system(request.messages)
        contents = [
            {
                "role": "model" if m.role == Role.ASSISTANT else "user",
                "parts": [{"text": m.content}],
            }
            for m in turns
        ]
        payload: dict[str, Any] = {
            "contents": contents,
            "generationConfig": {
                "temperature": self._temperature(request),
                "maxOutputTokens": self._max_tokens(request),
            },
        }
        if system_text and contents:
            # System instruction is separate from contents in the Gemini API
            payload["systemInstruction"] = {"parts": [{"text": system_text}]}
        elif system_text:
            payload["contents"] = [{"role": "user", "parts": [{"text": system_text}]}]
        return payload

    def _check_response(self, response: httpx.Response) -> None:
        if response.status_code >= 400 and "RESOURCE_EXHAUSTED" in response.text:
            raise RateLimitError(
                "Gemini quota exhausted",
                provider=self.provider,
                retry_after=_retry_after(response),
            )
        super()._check_response(response)

    def _extract_text(self, data: dict) -> str:
        """Pull text out of a generateContent body, rejecting blocked output."""
        candidates = data.get("candidates") or []
        if not candidates:
            block_reason = (data.get("promptFeedback") or {}).get("blockReason", "")
            if block_reason:
                raise ProviderError(
                    f"Gemini blocked the prompt: {block_reason}",
                    provider=self.provider,
                    error_code=f"BLOCKED_{block_reason}",
                )
            return ""

        candidate = candidates[0]
        if candidate.get("finishReason") == "SAFETY":
            raise ProviderError(
                "Gemini safety filter triggered",
                provider=self.provider,
                error_code="SAFETY",
            )
        parts = (candidate.get("content") or {}).get("parts") or []
        return "".join(p.get("text", "") for p in parts if "text" in p)

    async def _generate(self, credential: Credential, model: str, payload: dict, timeout: float) -> str:
        with self._translate_errors(timeout):
            async with self._client(timeout) as client:
                resp = await client.post(
                    self._url(model, "generateContent"),
                    json=payload,
                    headers=self._headers(credential),
                )
            self._check_response(resp)
            return self._extract_text(resp.json())

    async def complete(self, credential: Credential, request: CompletionRequest) -> str:
        timeout = self._timeout(request.timeout)
        return await self._generate(credential, self._model(request), self._build_payload(request), timeout)

    async def stream_complete(self, credential: Credential, request: CompletionRequest) -> AsyncIterator[str]:
        timeout = self._timeout(request.timeout)
        url = self._url(self._model(request), "streamGenerateContent")

        with self._translate_errors(timeout):
            async with self._client(timeout) as client:
                async with client.stream(
                    "POST",
                    url,
                    json=self._build_payload(request),
                    params={"alt": "sse"},
                    headers=self._headers(credential),
                ) as resp:
                    await self._check_stream_response(resp)
                    async for event in _iter_sse(resp):
                        text = self._extract_text(event)
                        if text:
                            yield text

    async def embed(self, credential: Credential, text: str, timeout: float | None = None) -> list[float]:
        timeout = self._timeout(timeout)
        model = self.config.embedding_model or "text-embedding-004"
        payload = {"model": f"models/{model}", "content": {"parts": [{"text": text}]}}

        with self._translate_errors(timeout):
            async with self._client(timeout) as client:
                resp = await client.post(
                    self._url(model, "embedContent"),
                    json=payload,
                    headers=self._headers(credential),
                )
            self._check_response(resp)
            return [float(v) for v in resp.json()["embedding"]["values"]]

    def _media_payload(self, payload: MultimodalPayload, prompt: str) -> dict:
        return {
            "contents": [
                {
                    "role": "user",
                    "parts": [
                        {"text": prompt},
                        {"inlineData": {"mimeType": payload.mime_type, "data": payload.data_base64}},
                    ],
                }
            ],
        }

    async def analyze_image(
        self,
        credential: Credential,
        payload: MultimodalPayload,
        prompt: str,
        timeout: float | None = None,
    ) -> str:
        model = self.config.multimodal_model or self.config.default_model
        return await self._generate(credential, model, self._media_payload(payload, prompt), self._timeout(timeout))

    async def transcribe_audio(
        self,
        credential: Credential,
        payload: MultimodalPayload,
        prompt: str,
        timeout: float | None = None,
    ) -> str:
        model = self.config.audio_model or self.config.multimodal_model or self.config.default_model
        return await self._generate(credential, model, self._media_payload(payload, prompt), self._timeout(timeout))


# ---------------------------------------------------------------------------
# OpenAI Adapter (fallback path)
# ---------------------------------------------------------------------------


class OpenAIAdapter(BaseVendorAdapter):
    """OpenAI Chat Completions adapter."""

    provider = Provider.OPENAI
    capabilities = frozenset({Capability.COMPLETION, Capability.STREAMING})

    @property
    def api_url(self) -> str:
        return f"{self.config.base_url}/chat/completions"

    @staticmethod
    def _headers(credential: Credential) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {credential.secret}",
            "Content-Type": "application/json",
        }

    def _build_payload(self, request: CompletionRequest, stream: bool = False) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self._model(request),
            "messages": [{"role": m.role.value, "content": m.content} for m in request.ordered_messages],
            "temperature": self._temperature(request),
            "max_tokens": self._max_tokens(request),
        }
        if stream:
            payload["stream"] = True
        return payload

    async def complete(self, credential: Credential, request: CompletionRequest) -> str:
        timeout = self._timeout(request.timeout)

        with self._translate_errors(timeout):
            async with self._client(timeout) as client:
                resp = await client.post(
                    self.api_url,
                    json=self._build_payload(request),
                    headers=self._headers(credential),
                )
            self._check_response(resp)
            data = resp.json()
            return data["choices"][0]["message"]["content"] or ""

    async def stream_complete(self, credential: Credential, request: CompletionRequest) -> AsyncIterator[str]:
        timeout = self._timeout(request.timeout)

        with self._translate_errors(timeout):
            async with self._client(timeout) as client:
                async with client.stream(
                    "POST",
                    self.api_url,
                    json=self._build_payload(request, stream=True),
                    headers=self._headers(credential),
                ) as resp:
                    await self._check_stream_response(resp)
                    async for event in _iter_sse(resp):
                        choices = event.get("choices") or [{}]
                        content = (choices[0].get("delta") or {}).get("content")
                        if content:
                            yield content


# ---------------------------------------------------------------------------
# Adapter registry
# ---------------------------------------------------------------------------

ADAPTER_REGISTRY: dict[Provider, type[BaseVendorAdapter]] = {
    Provider.GEMINI: GeminiAdapter,
    Provider.OPENAI: OpenAIAdapter,
}


def get_adapter(
    provider: Provider,
    config: ProviderConfig | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> BaseVendorAdapter:
    """Factory: get the appropriate adapter for a provider."""
    cls = ADAPTER_REGISTRY.get(provider)
    if cls is None:
        raise ValueError(f"No adapter registered for provider: {provider}")
    return cls(config=config, transport=transport)
