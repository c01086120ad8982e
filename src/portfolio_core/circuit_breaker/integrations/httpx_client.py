from __future__ import annotations

import json
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from types import TracebackType

import httpx

from portfolio_core.circuit_breaker import CircuitBreaker, StatsReport
from portfolio_core.errors import UpstreamUnavailableError
from portfolio_core.health import STATUS_HEALTHY, STATUS_UNHEALTHY, ServiceHealth
from portfolio_core.logging import AnyLogger, get_logger, log_info

UNAVAILABLE_STATUSES = frozenset({429})

QueryParams = Mapping[str, str | int | float | bool]


@dataclass(frozen=True)
class _CacheEntry:
    payload: object
    stored_at: float


@dataclass(frozen=True)
class CacheStats:
    """Response cache size plus the guarding breaker's counters."""

    cache_size: int
    breaker_stats: StatsReport


class GuardedHttpClient:
    """JSON-over-HTTP client whose every request runs through one breaker.

    Successful payloads are cached per path and query for ``cache_ttl``
    seconds; cache hits never touch the breaker.
    """

    def __init__(
        self,
        breaker: CircuitBreaker,
        *,
        base_url: str,
        headers: Mapping[str, str] | None = None,
        cache_ttl: float = 300.0,
        request_timeout: float = 8.0,
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.monotonic,
        logger: AnyLogger | None = None,
    ) -> None:
        """Create a guarded client.

        Args:
            breaker: Breaker owned by the dependency this client talks to.
            base_url: Base URL every request path is joined to.
            headers: Default request headers.
            cache_ttl: Seconds a cached payload stays fresh.
            request_timeout: Transport timeout for the HTTP client it creates.
            client: Existing ``httpx.AsyncClient`` to reuse. It is not closed
                by ``aclose``.
            clock: Monotonic clock for cache freshness.
            logger: Structured logger. Defaults to this module's logger.
        """
        if cache_ttl < 0:
            raise ValueError("cache_ttl must be >= 0")
        self.breaker = breaker
        self._base_url = base_url.rstrip("/")
        self._headers = dict(headers or {})
        self._cache_ttl = cache_ttl
        self._owns_client = client is None
        self._client = (
            httpx.AsyncClient(timeout=request_timeout) if client is None else client
        )
        self._clock = clock
        self._logger = get_logger(__name__) if logger is None else logger
        self._cache: dict[str, _CacheEntry] = {}

    async def __aenter__(self) -> GuardedHttpClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def url_for(self, path: str) -> str:
        return f"{self._base_url}/{path.lstrip('/')}"

    @staticmethod
    def _cache_key(url: str, params: QueryParams | None) -> str:
        return f"{url}:{json.dumps(dict(params or {}), sort_keys=True)}"

    def _is_fresh(self, entry: _CacheEntry, now: float) -> bool:
        return now - entry.stored_at < self._cache_ttl

    def _cached(self, key: str) -> _CacheEntry | None:
        entry = self._cache.get(key)
        if entry is None:
            return None
        if self._is_fresh(entry, self._clock()):
            return entry
        del self._cache[key]
        return None

    def _store(self, key: str, payload: object) -> None:
        # Expired entries for keys never requested again are dropped here.
        now = self._clock()
        self._cache = {
            cached_key: entry
            for cached_key, entry in self._cache.items()
            if self._is_fresh(entry, now)
        }
        self._cache[key] = _CacheEntry(payload=payload, stored_at=now)

    async def get_json(self, path: str, params: QueryParams | None = None) -> object:
        """GET ``path`` and return its decoded JSON body.

        Raises:
            CircuitOpenError: When the breaker rejects the call.
            OperationTimeoutError: When the request exceeds the breaker timeout.
            UpstreamUnavailableError: On transport errors, 429 or 5xx answers.
            httpx.HTTPStatusError: On other 4xx answers.
        """
        url = self.url_for(path)
        key = self._cache_key(url, params)
        entry = self._cached(key)
        if entry is not None:
            return entry.payload

        async def _request() -> object:
            return await self._get_once(url, params)

        payload = await self.breaker.execute(_request)
        self._store(key, payload)
        return payload

    async def _get_once(self, url: str, params: QueryParams | None) -> object:
        try:
            response = await self._client.get(
                url,
                params=dict(params) if params else None,
                headers=self._headers,
            )
        except httpx.RequestError as exc:
            raise UpstreamUnavailableError(self.breaker.name, str(exc)) from exc

        status = response.status_code
        if status >= 500 or status in UNAVAILABLE_STATUSES:
            raise UpstreamUnavailableError(
                self.breaker.name,
                response.text[:200],
                status_code=status,
            )
        response.raise_for_status()
        return response.json()

    async def health_check(self, path: str) -> ServiceHealth:
        """GET ``path`` bypassing the cache and report the outcome."""

        async def _check() -> object:
            return await self._get_once(self.url_for(path), None)

        try:
            await self.breaker.execute(_check)
        except Exception as exc:
            return ServiceHealth(
                name=self.breaker.name,
                status=STATUS_UNHEALTHY,
                detail=f"{exc.__class__.__name__}: {exc}",
                breaker=self.breaker.get_state(),
            )
        return ServiceHealth(
            name=self.breaker.name,
            status=STATUS_HEALTHY,
            breaker=self.breaker.get_state(),
        )

    def clear_cache(self) -> None:
        self._cache.clear()
        log_info(self._logger, "http_client.cache_cleared", breaker=self.breaker.name)

    def cache_stats(self) -> CacheStats:
        return CacheStats(
            cache_size=len(self._cache),
            breaker_stats=self.breaker.get_stats(),
        )
