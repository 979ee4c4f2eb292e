"""Error taxonomy for the AI Provider Gateway.

Adapters classify every backend failure into one of these kinds; the
orchestrator only ever reasons about them.
"""

from __future__ import annotations

from typing import Any


class AiGatewayError(Exception):
    """Base exception for gateway errors."""

    def __init__(self, message: str, provider: Any = None):
        super().__init__(message)
        self.message = message
        self.provider = provider


class ConfigurationError(AiGatewayError):
    """No credentials (or an invalid setup) for a required provider. Fatal."""


class RateLimitError(AiGatewayError):
    """Provider signalled throttling; rotate to the next credential."""

    def __init__(self, message: str, provider: Any = None, retry_after: float | None = None):
        super().__init__(message, provider)
        self.retry_after = retry_after


class ProviderError(AiGatewayError):
    """Any other adapter, network or backend failure; fall back to the next provider."""

    def __init__(
        self,
        message: str,
        provider: Any = None,
        status_code: int = 0,
        error_code: str = "",
    ):
        super().__init__(message, provider)
        self.status_code = status_code
        self.error_code = error_code


class ProviderTimeoutError(ProviderError):
    """The transport timeout fired."""

    def __init__(self, message: str, provider: Any = None):
        super().__init__(message, provider, error_code="TIMEOUT")


class UnsupportedOperationError(AiGatewayError):
    """The provider does not implement the requested capability."""

    def __init__(self, message: str, provider: Any = None, capability: Any = None):
        super().__init__(message, provider)
        self.capability = capability


class ParseError(AiGatewayError):
    """Model output could not be repaired into valid JSON."""

    def __init__(self, message: str, raw_text: str = ""):
        super().__init__(message)
        self.raw_text = raw_text


class GenerationError(AiGatewayError):
    """Every provider and credential was exhausted.

    ``last_error`` is the last underlying cause, ``attempts`` the full
    attempt history (list of AttemptResult).
    """

    def __init__(self, message: str, last_error: Exception | None = None, attempts: list | None = None):
        super().__init__(message)
        self.last_error = last_error
        self.attempts = attempts or []

    def __str__(self) -> str:
        if self.last_error is None:
            return self.message
        return f"{self.message}: {type(self.last_error).__name__}: {self.last_error}"
