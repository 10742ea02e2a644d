"""
Token cache — reuse access tickets until shortly before they expire.

Entries are keyed by tenant, target service and environment under a
configurable prefix. The storage TTL is the configured TTL or the
ticket's remaining life minus a safety margin, whichever is shorter, and
a hit is only served while the ticket still has more than the margin left.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import structlog

from afip_client.domain.models import Environment, Token
from afip_client.domain.ports import KeyValueCache

log = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(UTC)


def cache_key(prefix: str, environment: Environment | str, kind: str, tenant_id: str) -> str:
    """Deterministic key: {prefix}:{environment}:{kind}:{tenant}."""
    return f"{prefix}:{environment}:{kind}:{tenant_id}"


class TokenCache:
    """Expiry-aware token storage over any KeyValueCache."""

    def __init__(
        self,
        cache: KeyValueCache,
        prefix: str = "afip_sdk",
        ttl_seconds: int = 43200,
        safety_margin_seconds: int = 300,
        enabled: bool = True,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._cache = cache
        self._prefix = prefix
        self._ttl = ttl_seconds
        self._margin = timedelta(seconds=safety_margin_seconds)
        self._enabled = enabled
        self._clock = clock

    def key(self, tenant_id: str, service: str, environment: Environment) -> str:
        return cache_key(self._prefix, environment, f"token.{service}", tenant_id)

    def get(self, tenant_id: str, service: str, environment: Environment) -> Token | None:
        if not self._enabled:
            return None
        cached = self._cache.get(self.key(tenant_id, service, environment))
        if not isinstance(cached, Token):
            return None
        if self._clock() + self._margin >= cached.expires_at:
            log.debug("token.cache_stale", tenant=tenant_id, service=service)
            return None
        return cached

    def put(
        self,
        tenant_id: str,
        service: str,
        environment: Environment,
        token: Token,
        ttl_seconds: int | None = None,
    ) -> int:
        """
        Store `token`; returns the TTL used (0 means it was not stored).

        A ticket whose remaining life is within the safety margin is never stored.
        """
        if not self._enabled:
            return 0
        configured = self._ttl if ttl_seconds is None else ttl_seconds
        remaining = token.seconds_until_expiration(self._clock()) - int(self._margin.total_seconds())
        ttl = min(configured, remaining)
        key = self.key(tenant_id, service, environment)
        if ttl <= 0:
            self._cache.forget(key)
            return 0
        self._cache.put(key, token, ttl)
        log.debug("token.cached", tenant=tenant_id, service=service, ttl_seconds=ttl)
        return ttl

    def forget(self, tenant_id: str, service: str, environment: Environment) -> None:
        self._cache.forget(self.key(tenant_id, service, environment))
