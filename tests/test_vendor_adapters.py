"""Tests for the provider adapters (mocked HTTP)."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from crm_ai.gateway.errors import (
    ProviderError,
    ProviderTimeoutError,
    RateLimitError,
    UnsupportedOperationError,
)
from crm_ai.gateway.types import (
    Capability,
    CompletionRequest,
    Credential,
    Message,
    MultimodalPayload,
    Provider,
    ProviderConfig,
)
from crm_ai.gateway.vendor_adapters import (
    ADAPTER_REGISTRY,
    GeminiAdapter,
    OpenAIAdapter,
    get_adapter,
)

GEMINI_KEY = Credential(Provider.GEMINI, "gemini-key-0001")
OPENAI_KEY = Credential(Provider.OPENAI, "sk-openai-0002")


# ==========================================================================
# Helpers
# ==========================================================================


def _make_httpx_response(
    status_code: int,
    json_data: dict | list | None = None,
    text: str = "",
    headers: dict | None = None,
) -> httpx.Response:
    request = httpx.Request("POST", "https://example.com")
    if json_data is not None:
        return httpx.Response(status_code, json=json_data, headers=headers, request=request)
    return httpx.Response(status_code, text=text, headers=headers, request=request)


def _mock_gemini_response(text="Hello world", finish_reason="STOP"):
    return _make_httpx_response(
        200,
        json_data={
            "candidates": [{"content": {"parts": [{"text": text}]}, "finishReason": finish_reason}],
            "usageMetadata": {"promptTokenCount": 10, "candidatesTokenCount": 20, "totalTokenCount": 30},
        },
    )


def _mock_openai_response(text="Hello world", model="gpt-4-turbo-preview"):
    return _make_httpx_response(
        200,
        json_data={
            "choices": [{"message": {"content": text}, "finish_reason": "stop"}],
            "model": model,
        },
    )


class _FakeStream:
    """Stands in for the response context returned by AsyncClient.stream()."""

    def __init__(self, lines: list[str], status_code: int = 200, body: str = ""):
        self.lines = lines
        self.status_code = status_code
        self.text = body
        self.headers = httpx.Headers()
        self.lines_read = 0
        self.closed = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        self.closed = True
        return None

    async def aread(self) -> bytes:
        return self.text.encode()

    async def aiter_lines(self):
        for line in self.lines:
            self.lines_read += 1
            yield line


def _patched_client(mock_client_cls, post_result=None, post_side_effect=None, stream=None) -> AsyncMock:
    mock_client = AsyncMock()
    if post_side_effect is not None:
        mock_client.post.side_effect = post_side_effect
    else:
        mock_client.post.return_value = post_result
    if stream is not None:
        mock_client.stream = MagicMock(return_value=stream)
    mock_client.__aenter__ = AsyncMock(return_value=mock_client)
    mock_client.__aexit__ = AsyncMock(return_value=None)
    mock_client_cls.return_value = mock_client
    return mock_client


def _sse(obj: dict | str) -> str:
    return f"data: {obj if isinstance(obj, str) else json.dumps(obj)}"


def _gemini_chunk(text: str) -> str:
    return _sse({"candidates": [{"content": {"parts": [{"text": text}]}}]})


def _openai_chunk(text: str) -> str:
    return _sse({"choices": [{"delta": {"content": text}}]})


def _request(*messages: Message, **kwargs) -> CompletionRequest:
    return CompletionRequest(messages=list(messages) or [Message.user("Hello")], **kwargs)


# ==========================================================================
# Test: Gemini Adapter
# ==========================================================================


class TestGeminiAdapter:
    @pytest.mark.asyncio
    async def test_success(self):
        adapter = GeminiAdapter()

        with patch("crm_ai.gateway.vendor_adapters.httpx.AsyncClient") as mock_client_cls:
            mock_client = _patched_client(mock_client_cls, _mock_gemini_response())
            text = await adapter.complete(GEMINI_KEY, _request())

        assert text == "Hello world"
        url = mock_client.post.call_args.args[0]
        assert url.endswith("/models/gemini-2.5-flash:generateContent")
        assert mock_client.post.call_args.kwargs["headers"]["x-goog-api-key"] == "gemini-key-0001"

    @pytest.mark.asyncio
    async def test_payload_hoists_system_and_maps_roles(self):
        adapter = GeminiAdapter()
        request = _request(
            Message.user("John is 30 years old"),
            Message.system("extract name and age as JSON"),
            Message.assistant("ok"),
            temperature=0.3,
            max_tokens=256,
        )

        with patch("crm_ai.gateway.vendor_adapters.httpx.AsyncClient") as mock_client_cls:
            mock_client = _patched_client(mock_client_cls, _mock_gemini_response())
            await adapter.complete(GEMINI_KEY, request)

        payload = mock_client.post.call_args.kwargs["json"]
        assert payload["systemInstruction"] == {"parts": [{"text": "extract name and age as JSON"}]}
        assert [c["role"] for c in payload["contents"]] == ["user", "model"]
        assert payload["generationConfig"] == {"temperature": 0.3, "maxOutputTokens": 256}

    @pytest.mark.asyncio
    async def test_defaults_from_config(self):
        adapter = GeminiAdapter()

        with patch("crm_ai.gateway.vendor_adapters.httpx.AsyncClient") as mock_client_cls:
            mock_client = _patched_client(mock_client_cls, _mock_gemini_response())
            await adapter.complete(GEMINI_KEY, _request())

        assert mock_client.post.call_args.kwargs["json"]["generationConfig"] == {
            "temperature": 0.7,
            "maxOutputTokens": 2000,
        }
        mock_client_cls.assert_called_once_with(timeout=60.0, transport=None)

    @pytest.mark.asyncio
    async def test_rate_limited(self):
        adapter = GeminiAdapter()

        with patch("crm_ai.gateway.vendor_adapters.httpx.AsyncClient") as mock_client_cls:
            _patched_client(
                mock_client_cls,
                _make_httpx_response(429, text="quota", headers={"Retry-After": "7"}),
            )
            with pytest.raises(RateLimitError) as exc_info:
                await adapter.complete(GEMINI_KEY, _request())

        assert exc_info.value.retry_after == 7.0
        assert exc_info.value.provider == Provider.GEMINI

    @pytest.mark.asyncio
    async def test_resource_exhausted_is_rate_limit(self):
        adapter = GeminiAdapter()
        body = {"error": {"code": 400, "status": "RESOURCE_EXHAUSTED", "message": "Quota exceeded"}}

        with patch("crm_ai.gateway.vendor_adapters.httpx.AsyncClient") as mock_client_cls:
            _patched_client(mock_client_cls, _make_httpx_response(400, json_data=body))
            with pytest.raises(RateLimitError):
                await adapter.complete(GEMINI_KEY, _request())

    @pytest.mark.asyncio
    async def test_server_error(self):
        adapter = GeminiAdapter()

        with patch("crm_ai.gateway.vendor_adapters.httpx.AsyncClient") as mock_client_cls:
            _patched_client(mock_client_cls, _make_httpx_response(500, text="internal"))
            with pytest.raises(ProviderError) as exc_info:
                await adapter.complete(GEMINI_KEY, _request())

        assert exc_info.value.status_code == 500
        assert not isinstance(exc_info.value, RateLimitError)

    @pytest.mark.asyncio
    async def test_timeout(self):
        adapter = GeminiAdapter()

        with patch("crm_ai.gateway.vendor_adapters.httpx.AsyncClient") as mock_client_cls:
            _patched_client(mock_client_cls, post_side_effect=httpx.TimeoutException("timeout"))
            with pytest.raises(ProviderTimeoutError):
                await adapter.complete(GEMINI_KEY, _request(timeout=5.0))

        mock_client_cls.assert_called_once_with(timeout=5.0, transport=None)

    @pytest.mark.asyncio
    async def test_connection_error(self):
        adapter = GeminiAdapter()

        with patch("crm_ai.gateway.vendor_adapters.httpx.AsyncClient") as mock_client_cls:
            _patched_client(mock_client_cls, post_side_effect=httpx.ConnectError("refused"))
            with pytest.raises(ProviderError):
                await adapter.complete(GEMINI_KEY, _request())

    @pytest.mark.asyncio
    async def test_safety_filter(self):
        adapter = GeminiAdapter()
        safety = _make_httpx_response(200, json_data={"candidates": [{"finishReason": "SAFETY"}]})

        with patch("crm_ai.gateway.vendor_adapters.httpx.AsyncClient") as mock_client_cls:
            _patched_client(mock_client_cls, safety)
            with pytest.raises(ProviderError) as exc_info:
                await adapter.complete(GEMINI_KEY, _request())

        assert exc_info.value.error_code == "SAFETY"

    @pytest.mark.asyncio
    async def test_prompt_blocked(self):
        adapter = GeminiAdapter()
        blocked = _make_httpx_response(200, json_data={"candidates": [], "promptFeedback": {"blockReason": "SAFETY"}})

        with patch("crm_ai.gateway.vendor_adapters.httpx.AsyncClient") as mock_client_cls:
            _patched_client(mock_client_cls, blocked)
            with pytest.raises(ProviderError) as exc_info:
                await adapter.complete(GEMINI_KEY, _request())

        assert exc_info.value.error_code == "BLOCKED_SAFETY"

    @pytest.mark.asyncio
    async def test_non_object_body_is_malformed(self):
        adapter = GeminiAdapter()

        with patch("crm_ai.gateway.vendor_adapters.httpx.AsyncClient") as mock_client_cls:
            _patched_client(mock_client_cls, _make_httpx_response(200, json_data=["not", "an", "object"]))
            with pytest.raises(ProviderError) as exc_info:
                await adapter.complete(GEMINI_KEY, _request())

        assert exc_info.value.error_code == "MALFORMED"

    @pytest.mark.asyncio
    async def test_embed(self):
        adapter = GeminiAdapter()
        body = {"embedding": {"values": [0.1, -0.2, 3]}}

        with patch("crm_ai.gateway.vendor_adapters.httpx.AsyncClient") as mock_client_cls:
            mock_client = _patched_client(mock_client_cls, _make_httpx_response(200, json_data=body))
            vector = await adapter.embed(GEMINI_KEY, "Acme Corp, logistics")

        assert vector == [0.1, -0.2, 3.0]
        assert mock_client.post.call_args.args[0].endswith("/models/text-embedding-004:embedContent")
        sent = mock_client.post.call_args.kwargs["json"]
        assert sent["content"] == {"parts": [{"text": "Acme Corp, logistics"}]}

    @pytest.mark.asyncio
    async def test_analyze_image_sends_inline_data(self):
        adapter = GeminiAdapter()
        payload = MultimodalPayload(mime_type="image/png", data_base64="iVBORw0KGgo=")

        with patch("crm_ai.gateway.vendor_adapters.httpx.AsyncClient") as mock_client_cls:
            mock_client = _patched_client(mock_client_cls, _mock_gemini_response('{"name": "Ann"}'))
            text = await adapter.analyze_image(GEMINI_KEY, payload, "Read this business card")

        assert text == '{"name": "Ann"}'
        parts = mock_client.post.call_args.kwargs["json"]["contents"][0]["parts"]
        assert parts[0] == {"text": "Read this business card"}
        assert parts[1] == {"inlineData": {"mimeType": "image/png", "data": "iVBORw0KGgo="}}

    @pytest.mark.asyncio
    async def test_transcribe_audio_uses_audio_model(self):
        config = ProviderConfig(
            provider=Provider.GEMINI,
            default_model="gemini-2.5-pro",
            audio_model="gemini-2.5-flash",
            base_url="https://gemini.test/v1beta",
        )
        adapter = GeminiAdapter(config=config)
        payload = MultimodalPayload(mime_type="audio/webm", data_base64="GkXfo0A=")

        with patch("crm_ai.gateway.vendor_adapters.httpx.AsyncClient") as mock_client_cls:
            mock_client = _patched_client(mock_client_cls, _mock_gemini_response("Met Ann at the expo."))
            text = await adapter.transcribe_audio(GEMINI_KEY, payload, "Transcribe")

        assert text == "Met Ann at the expo."
        assert mock_client.post.call_args.args[0] == "https://gemini.test/v1beta/models/gemini-2.5-flash:generateContent"

    @pytest.mark.asyncio
    async def test_stream(self):
        adapter = GeminiAdapter()
        stream = _FakeStream([_gemini_chunk("Hel"), "", _gemini_chunk("lo"), _sse({"candidates": [{"finishReason": "STOP"}]})])

        with patch("crm_ai.gateway.vendor_adapters.httpx.AsyncClient") as mock_client_cls:
            mock_client = _patched_client(mock_client_cls, stream=stream)
            chunks = [c async for c in adapter.stream_complete(GEMINI_KEY, _request())]

        assert chunks == ["Hel", "lo"]
        call = mock_client.stream.call_args
        assert call.args[0] == "POST"
        assert call.args[1].endswith(":streamGenerateContent")
        assert call.kwargs["params"] == {"alt": "sse"}
        assert stream.closed

    @pytest.mark.asyncio
    async def test_stream_early_stop_releases_connection(self):
        adapter = GeminiAdapter()
        stream = _FakeStream([_gemini_chunk(str(i)) for i in range(100)])

        with patch("crm_ai.gateway.vendor_adapters.httpx.AsyncClient") as mock_client_cls:
            _patched_client(mock_client_cls, stream=stream)
            gen = adapter.stream_complete(GEMINI_KEY, _request())
            assert await gen.__anext__() == "0"
            await gen.aclose()

        assert stream.closed
        assert stream.lines_read < 100

    @pytest.mark.asyncio
    async def test_stream_rate_limited_before_first_chunk(self):
        adapter = GeminiAdapter()
        stream = _FakeStream([], status_code=429, body="quota")

        with patch("crm_ai.gateway.vendor_adapters.httpx.AsyncClient") as mock_client_cls:
            _patched_client(mock_client_cls, stream=stream)
            with pytest.raises(RateLimitError):
                await adapter.stream_complete(GEMINI_KEY, _request()).__anext__()

    def test_capabilities(self):
        adapter = GeminiAdapter()
        assert all(adapter.supports(c) for c in Capability)


# ==========================================================================
# Test: OpenAI Adapter
# ==========================================================================


class TestOpenAIAdapter:
    @pytest.mark.asyncio
    async def test_success_orders_system_first(self):
        adapter = OpenAIAdapter()
        request = _request(Message.user("John is 30"), Message.system("Extract as JSON"))

        with patch("crm_ai.gateway.vendor_adapters.httpx.AsyncClient") as mock_client_cls:
            mock_client = _patched_client(mock_client_cls, _mock_openai_response())
            text = await adapter.complete(OPENAI_KEY, request)

        assert text == "Hello world"
        call = mock_client.post.call_args
        assert call.args[0] == "https://api.openai.com/v1/chat/completions"
        assert call.kwargs["headers"]["Authorization"] == "Bearer sk-openai-0002"
        payload = call.kwargs["json"]
        assert payload["messages"] == [
            {"role": "system", "content": "Extract as JSON"},
            {"role": "user", "content": "John is 30"},
        ]
        assert payload["model"] == "gpt-4-turbo-preview"
        assert payload["max_tokens"] == 1000
        assert "stream" not in payload

    @pytest.mark.asyncio
    async def test_null_content(self):
        adapter = OpenAIAdapter()

        with patch("crm_ai.gateway.vendor_adapters.httpx.AsyncClient") as mock_client_cls:
            _patched_client(mock_client_cls, _mock_openai_response(text=None))
            assert await adapter.complete(OPENAI_KEY, _request()) == ""

    @pytest.mark.asyncio
    async def test_rate_limited(self):
        adapter = OpenAIAdapter()

        with patch("crm_ai.gateway.vendor_adapters.httpx.AsyncClient") as mock_client_cls:
            _patched_client(mock_client_cls, _make_httpx_response(429, text="rate limited"))
            with pytest.raises(RateLimitError):
                await adapter.complete(OPENAI_KEY, _request())

    @pytest.mark.asyncio
    async def test_unauthorized_is_provider_error(self):
        adapter = OpenAIAdapter()

        with patch("crm_ai.gateway.vendor_adapters.httpx.AsyncClient") as mock_client_cls:
            _patched_client(mock_client_cls, _make_httpx_response(401, text="bad key"))
            with pytest.raises(ProviderError) as exc_info:
                await adapter.complete(OPENAI_KEY, _request())

        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_malformed_body(self):
        adapter = OpenAIAdapter()

        with patch("crm_ai.gateway.vendor_adapters.httpx.AsyncClient") as mock_client_cls:
            _patched_client(mock_client_cls, _make_httpx_response(200, json_data={"unexpected": True}))
            with pytest.raises(ProviderError) as exc_info:
                await adapter.complete(OPENAI_KEY, _request())

        assert exc_info.value.error_code == "MALFORMED"

    @pytest.mark.asyncio
    async def test_stream_stops_at_done(self):
        adapter = OpenAIAdapter()
        stream = _FakeStream(
            [
                _openai_chunk("Hi"),
                _sse({"choices": [{"delta": {}}]}),
                "data: {not json",
                _openai_chunk(" there"),
                "data: [DONE]",
                _openai_chunk("ignored"),
            ]
        )

        with patch("crm_ai.gateway.vendor_adapters.httpx.AsyncClient") as mock_client_cls:
            mock_client = _patched_client(mock_client_cls, stream=stream)
            chunks = [c async for c in adapter.stream_complete(OPENAI_KEY, _request())]

        assert chunks == ["Hi", " there"]
        assert mock_client.stream.call_args.kwargs["json"]["stream"] is True

    @pytest.mark.asyncio
    async def test_stream_non_object_event_is_malformed(self):
        adapter = OpenAIAdapter()
        stream = _FakeStream([_sse('"oops"'), "data: [DONE]"])

        with patch("crm_ai.gateway.vendor_adapters.httpx.AsyncClient") as mock_client_cls:
            _patched_client(mock_client_cls, stream=stream)
            with pytest.raises(ProviderError) as exc_info:
                async for _ in adapter.stream_complete(OPENAI_KEY, _request()):
                    pass

        assert exc_info.value.error_code == "MALFORMED"
        assert stream.closed

    @pytest.mark.asyncio
    async def test_embeddings_unsupported(self):
        adapter = OpenAIAdapter()
        assert not adapter.supports(Capability.EMBEDDING)
        assert not adapter.supports(Capability.MULTIMODAL)

        with pytest.raises(UnsupportedOperationError) as exc_info:
            await adapter.embed(OPENAI_KEY, "text")
        assert exc_info.value.capability == Capability.EMBEDDING

        payload = MultimodalPayload(mime_type="image/png", data_base64="")
        with pytest.raises(UnsupportedOperationError):
            await adapter.analyze_image(OPENAI_KEY, payload, "describe")


# ==========================================================================
# Test: Adapter registry
# ==========================================================================


class TestAdapterRegistry:
    def test_registry_covers_all_providers(self):
        assert set(ADAPTER_REGISTRY) == set(Provider)

    def test_get_adapter(self):
        adapter = get_adapter(Provider.OPENAI)
        assert isinstance(adapter, OpenAIAdapter)
        assert adapter.config.default_model == "gpt-4-turbo-preview"

    def test_get_adapter_with_config(self):
        config = ProviderConfig(provider=Provider.GEMINI, default_model="gemini-2.5-pro")
        adapter = get_adapter(Provider.GEMINI, config)
        assert adapter.config is config
