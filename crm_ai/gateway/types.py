"""Core types and DTOs for the AI Provider Gateway."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class Provider(str, Enum):
    """Supported LLM providers."""

    GEMINI = "gemini"
    OPENAI = "openai"


class Capability(str, Enum):
    """Operations an adapter may support."""

    COMPLETION = "completion"
    STREAMING = "streaming"
    EMBEDDING = "embedding"
    MULTIMODAL = "multimodal"


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class AttemptStatus(str, Enum):
    """Outcome of a single adapter attempt."""

    SUCCESS = "success"
    RATE_LIMITED = "rate_limited"
    PROVIDER_ERROR = "provider_error"
    UNSUPPORTED = "unsupported"


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Credential:
    """A single API key for a provider. The secret never appears in repr."""

    provider: Provider
    secret: str = field(repr=False)

    @property
    def fingerprint(self) -> str:
        """Short, log-safe identifier for the key."""
        return f"...{self.secret[-4:]}" if len(self.secret) > 4 else "..."


# ---------------------------------------------------------------------------
# Messages & requests
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Message:
    role: Role
    content: str

    @classmethod
    def system(cls, content: str) -> Message:
        return cls(Role.SYSTEM, content)

    @classmethod
    def user(cls, content: str) -> Message:
        return cls(Role.USER, content)

    @classmethod
    def assistant(cls, content: str) -> Message:
        return cls(Role.ASSISTANT, content)

    @classmethod
    def coerce(cls, value: Message | dict[str, Any]) -> Message:
        """Accept either a Message or an OpenAI-style {"role", "content"} dict."""
        if isinstance(value, Message):
            return value
        return cls(Role(value["role"]), str(value.get("content") or ""))


def hoist_system(messages: list[Message]) -> tuple[str, list[Message]]:
    """Split a conversation into (merged system text, remaining turns).

    System messages are merged in order regardless of where they appear;
    the relative order of the other turns is preserved.
    """
    system_parts = [m.content for m in messages if m.role == Role.SYSTEM and m.content]
    turns = [m for m in messages if m.role != Role.SYSTEM]
    return "\n\n".join(system_parts), turns


@dataclass
class CompletionRequest:
    """Provider-neutral completion request handed to adapters."""

    messages: list[Message] = field(default_factory=list)
    temperature: float | None = None
    max_tokens: int | None = None
    preferred_provider: Provider | None = None
    fallback_providers: list[Provider] | None = None
    timeout: float | None = None  # Per-request transport timeout (seconds)
    model: str | None = None  # Override of the provider's default model

    @property
    def ordered_messages(self) -> list[Message]:
        """Messages with the (merged) system message first."""
        system_text, turns = hoist_system(self.messages)
        if system_text:
            return [Message.system(system_text), *turns]
        return list(turns)


@dataclass(frozen=True)
class ExtractionSchema:
    """Shape description used only to steer the prompt; never enforced."""

    description: str
    example: str | None = None


# ---------------------------------------------------------------------------
# Multimodal payloads
# ---------------------------------------------------------------------------

_DATA_URL = re.compile(r"^data:(?P<mime>[^;,]+)?(?:;[^,]*)?,(?P<data>.*)$", re.DOTALL)


@dataclass(frozen=True)
class MultimodalPayload:
    """Inline media owned by the caller; never persisted by the gateway."""

    mime_type: str
    data_base64: str

    @classmethod
    def from_data_url(cls, value: str, default_mime: str = "image/jpeg") -> MultimodalPayload:
        """Build from a ``data:<mime>;base64,<data>`` URL or bare base64."""
        match = _DATA_URL.match(value.strip())
        if not match:
            return cls(mime_type=default_mime, data_base64=value.strip())
        return cls(
            mime_type=match.group("mime") or default_mime,
            data_base64=match.group("data"),
        )


# ---------------------------------------------------------------------------
# Attempt result: one per adapter call made by the orchestrator
# ---------------------------------------------------------------------------


@dataclass
class AttemptResult:
    """Discriminated outcome of one attempt against one provider/credential."""

    status: AttemptStatus
    provider: Provider
    credential: str = ""  # Fingerprint, never the secret
    value: Any = None
    error: Exception | None = None
    latency_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.status == AttemptStatus.SUCCESS

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "provider": self.provider.value,
            "credential": self.credential,
            "error": str(self.error) if self.error else "",
            "latency_ms": self.latency_ms,
        }


# ---------------------------------------------------------------------------
# Provider config
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProviderConfig:
    """Model defaults and transport settings for one provider."""

    provider: Provider
    default_model: str
    default_temperature: float = 0.7
    default_max_tokens: int = 2000
    timeout_seconds: float = 60.0
    embedding_model: str = ""
    multimodal_model: str = ""  # Empty → default_model
    audio_model: str = ""  # Empty → multimodal model
    base_url: str = ""


# Defaults per provider
DEFAULT_PROVIDER_CONFIGS: dict[Provider, ProviderConfig] = {
    Provider.GEMINI: ProviderConfig(
        provider=Provider.GEMINI,
        default_model="gemini-2.5-flash",
        default_temperature=0.7,
        default_max_tokens=2000,
        embedding_model="text-embedding-004",
        audio_model="gemini-2.5-flash",  # Efficient for audio
        base_url="https://generativelanguage.googleapis.com/v1beta",
    ),
    Provider.OPENAI: ProviderConfig(
        provider=Provider.OPENAI,
        default_model="gpt-4-turbo-preview",
        default_temperature=0.7,
        default_max_tokens=1000,
        base_url="https://api.openai.com/v1",
    ),
}
