"""Retry/Fallback Orchestrator — credential rotation and provider fallback.

For one logical request:
  1. Build the attempt list: preferred provider, then fallbacks (each once)
  2. Skip providers whose adapter lacks the capability (no network call)
  3. Per provider, try up to pool-size credentials; only a rate limit
     rotates to the next credential, any other failure moves on to the
     next provider
  4. When everything is exhausted, raise GenerationError with the last cause

Each attempt is turned into an AttemptResult; ``next_step`` decides what
happens next from that result alone.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable, Mapping
from enum import Enum
from typing import Any

from crm_ai.core.metrics import GATEWAY_FAILURES, record_attempt
from crm_ai.gateway.credential_pool import CredentialPools
from crm_ai.gateway.errors import (
    AiGatewayError,
    GenerationError,
    ProviderError,
    RateLimitError,
    UnsupportedOperationError,
)
from crm_ai.gateway.types import (
    AttemptResult,
    AttemptStatus,
    Capability,
    Credential,
    Provider,
)
from crm_ai.gateway.vendor_adapters import BaseVendorAdapter

logger = logging.getLogger(__name__)

AdapterCall = Callable[[BaseVendorAdapter, Credential], Awaitable[Any]]


class NextStep(str, Enum):
    DONE = "done"
    RETRY_SAME_PROVIDER = "retry_same_provider"
    NEXT_PROVIDER = "next_provider"


def next_step(result: AttemptResult) -> NextStep:
    """Retry/fallback policy for a single attempt outcome."""
    if result.status == AttemptStatus.SUCCESS:
        return NextStep.DONE
    if result.status == AttemptStatus.RATE_LIMITED:
        return NextStep.RETRY_SAME_PROVIDER
    return NextStep.NEXT_PROVIDER


async def _open_stream(stream: AsyncIterator[str]) -> tuple[str | None, AsyncIterator[str]]:
    """Pull the first chunk so connection/auth failures surface as attempt failures."""
    try:
        first = await stream.__anext__()
    except StopAsyncIteration:
        return None, stream
    return first, stream


class FallbackOrchestrator:
    """Runs adapter calls across credentials and providers."""

    def __init__(
        self,
        adapters: Mapping[Provider, BaseVendorAdapter],
        pools: CredentialPools,
        primary_provider: Provider,
        fallback_providers: Iterable[Provider] = (),
    ):
        self.adapters = dict(adapters)
        self.pools = pools
        self.primary_provider = Provider(primary_provider)
        self.fallback_providers = [Provider(p) for p in fallback_providers]

    def attempt_order(
        self,
        preferred: Provider | str | None = None,
        fallbacks: Iterable[Provider | str] | None = None,
    ) -> list[Provider]:
        """Preferred provider first, then fallbacks, each at most once."""
        head = Provider(preferred) if preferred else self.primary_provider
        tail = self.fallback_providers if fallbacks is None else [Provider(p) for p in fallbacks]
        order: list[Provider] = []
        for provider in [head, *tail]:
            if provider not in order:
                order.append(provider)
        return order

    async def _attempt(
        self,
        adapter: BaseVendorAdapter,
        operation: str,
        call: AdapterCall,
    ) -> AttemptResult:
        """Draw one credential and run one call; classify the outcome."""
        provider = adapter.provider
        credential = self.pools.draw(provider)  # ConfigurationError is fatal
        result = AttemptResult(status=AttemptStatus.SUCCESS, provider=provider, credential=credential.fingerprint)

        start = time.monotonic()
        try:
            result.value = await call(adapter, credential)
        except RateLimitError as e:
            result.status = AttemptStatus.RATE_LIMITED
            result.error = e
        except UnsupportedOperationError as e:
            result.status = AttemptStatus.UNSUPPORTED
            result.error = e
        except ProviderError as e:
            result.status = AttemptStatus.PROVIDER_ERROR
            result.error = e
        elapsed = time.monotonic() - start
        result.latency_ms = int(elapsed * 1000)

        record_attempt(provider.value, operation, result.status.value, elapsed)
        if not result.ok:
            logger.warning(
                "%s %s attempt failed (%s) with key %s: %s",
                provider.value,
                operation,
                result.status.value,
                credential.fingerprint,
                result.error,
                extra={"provider": provider.value, "operation": operation, "credential": credential.fingerprint},
            )
        return result

    async def run(
        self,
        capability: Capability,
        operation: str,
        call: AdapterCall,
        preferred: Provider | str | None = None,
        fallbacks: Iterable[Provider | str] | None = None,
    ) -> Any:
        """Execute ``call`` with rotation and fallback; return the first success value."""
        attempts: list[AttemptResult] = []

        for provider in self.attempt_order(preferred, fallbacks):
            adapter = self.adapters.get(provider)
            if adapter is None or not adapter.supports(capability):
                logger.debug("Skipping %s: %s not supported", provider.value, capability.value)
                attempts.append(
                    AttemptResult(
                        status=AttemptStatus.UNSUPPORTED,
                        provider=provider,
                        error=UnsupportedOperationError(
                            f"{capability.value} is not supported by {provider.value}",
                            provider=provider,
                            capability=capability,
                        ),
                    )
                )
                continue

            for _ in range(max(1, self.pools.size(provider))):
                result = await self._attempt(adapter, operation, call)
                attempts.append(result)
                step = next_step(result)
                if step == NextStep.DONE:
                    if len(attempts) > 1:
                        logger.info(
                            "%s succeeded on %s after %d failed attempt(s)",
                            operation,
                            provider.value,
                            len(attempts) - 1,
                            extra={"provider": provider.value, "operation": operation},
                        )
                    return result.value
                if step == NextStep.NEXT_PROVIDER:
                    break

        raise self._exhausted(operation, attempts)

    async def stream(
        self,
        operation: str,
        open_stream: Callable[[BaseVendorAdapter, Credential], AsyncIterator[str]],
        preferred: Provider | str | None = None,
        fallbacks: Iterable[Provider | str] | None = None,
    ) -> AsyncIterator[str]:
        """Stream chunks from the first provider that produces output.

        Failures before the first chunk fall through like any attempt; once
        output has been delivered a failure surfaces as GenerationError.
        """
        first, stream = await self.run(
            Capability.STREAMING,
            operation,
            lambda adapter, credential: _open_stream(open_stream(adapter, credential)),
            preferred,
            fallbacks,
        )
        try:
            if first is not None:
                yield first
            async for chunk in stream:
                yield chunk
        except AiGatewayError as e:
            GATEWAY_FAILURES.labels(operation=operation).inc()
            raise GenerationError(f"{operation} failed after output started", last_error=e) from e
        finally:
            await stream.aclose()

    @staticmethod
    def _exhausted(operation: str, attempts: list[AttemptResult]) -> GenerationError:
        GATEWAY_FAILURES.labels(operation=operation).inc()
        # Prefer a real backend failure over a capability skip
        tried = [a for a in attempts if a.status != AttemptStatus.UNSUPPORTED] or attempts
        last_error = tried[-1].error if tried else None
        logger.error(
            "%s failed on every provider after %d attempt(s); last error: %s",
            operation,
            len(attempts),
            last_error,
            extra={"operation": operation, "provider": tried[-1].provider.value if tried else ""},
        )
        error = GenerationError(f"All providers failed for {operation}", last_error=last_error, attempts=attempts)
        error.__cause__ = last_error
        return error
