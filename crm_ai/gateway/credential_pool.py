"""Credential Pool — per-provider round-robin rotation of API keys.

Each provider owns one pool. Entries are deduplicated and shuffled at load
time so several processes started with the same key list spread their
load. ``draw()`` returns the key at the cursor and advances it; the cursor
only ever grows and is read modulo the pool size.

Thread-safe via threading.Lock (one lock per pool), which also makes it
safe for concurrent asyncio tasks.
"""

from __future__ import annotations

import logging
import random
import threading
from collections.abc import Iterable, Mapping

from crm_ai.gateway.errors import ConfigurationError
from crm_ai.gateway.types import Credential, Provider

logger = logging.getLogger(__name__)


class CredentialPool:
    """Ordered, immutable set of credentials for a single provider."""

    def __init__(
        self,
        provider: Provider,
        secrets: Iterable[str],
        shuffle: bool = True,
        rng: random.Random | None = None,
    ):
        self.provider = provider

        # Deduplicate while preserving order, drop blanks
        seen: set[str] = set()
        unique: list[str] = []
        for secret in secrets:
            cleaned = (secret or "").strip()
            if cleaned and cleaned not in seen:
                seen.add(cleaned)
                unique.append(cleaned)

        if shuffle:
            (rng or random).shuffle(unique)

        self._credentials: tuple[Credential, ...] = tuple(Credential(provider, s) for s in unique)
        self._cursor = 0
        self._lock = threading.Lock()

    @property
    def size(self) -> int:
        return len(self._credentials)

    def __len__(self) -> int:
        return self.size

    @property
    def cursor(self) -> int:
        """Total number of draws so far (monotonic)."""
        return self._cursor

    def draw(self) -> Credential:
        """Return the credential at the cursor, then advance the cursor by one."""
        if not self._credentials:
            raise ConfigurationError(
                f"No credentials configured for provider {self.provider.value}",
                provider=self.provider,
            )
        with self._lock:
            index = self._cursor % len(self._credentials)
            self._cursor += 1
        return self._credentials[index]

    def __repr__(self) -> str:
        return f"CredentialPool(provider={self.provider.value!r}, size={self.size})"


class CredentialPools:
    """Registry of one CredentialPool per provider, owned by the gateway."""

    def __init__(self, pools: Iterable[CredentialPool] = ()):
        self._pools: dict[Provider, CredentialPool] = {}
        for pool in pools:
            self._pools[pool.provider] = pool

    @classmethod
    def from_mapping(
        cls,
        secrets: Mapping[Provider | str, Iterable[str]],
        shuffle: bool = True,
        rng: random.Random | None = None,
    ) -> CredentialPools:
        """Build pools from a provider → list-of-secrets mapping."""
        pools = []
        for provider, keys in secrets.items():
            pool = CredentialPool(Provider(provider), keys, shuffle=shuffle, rng=rng)
            logger.debug("Loaded %d credential(s) for %s", pool.size, pool.provider.value)
            pools.append(pool)
        return cls(pools)

    def get(self, provider: Provider) -> CredentialPool | None:
        return self._pools.get(provider)

    def providers(self) -> list[Provider]:
        return list(self._pools)

    def size(self, provider: Provider) -> int:
        pool = self._pools.get(provider)
        return pool.size if pool else 0

    def draw(self, provider: Provider) -> Credential:
        pool = self._pools.get(provider)
        if pool is None:
            raise ConfigurationError(
                f"No credentials configured for provider {provider.value}",
                provider=provider,
            )
        return pool.draw()

    def get_stats(self) -> dict[str, dict]:
        return {p.value: {"size": pool.size, "draws": pool.cursor} for p, pool in self._pools.items()}
