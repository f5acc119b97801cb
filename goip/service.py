import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timezone

from goip.cache import CacheStore
from goip.errors import AppError, CacheStoreError
from goip.logger import logger
from goip.models.common import GeoRecord, Source
from goip.models.request_models import API_PROVIDER_KINDS
from goip.models.response_models import BatchResult, ServiceStats
from goip.providers.base import parse_ip
from goip.resolver import MultiProviderResolver

BATCH_CONCURRENCY = 10


@dataclass
class _Counters:
    """Process-lifetime counters. Only ever incremented."""

    total_queries: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    total_errors: int = 0
    total_time_us: int = 0
    query_count: int = 0


def source_for(kind: str) -> Source:
    return "api" if kind in API_PROVIDER_KINDS else "db"


class LookupService:
    """Cache-aside lookups over the multi-provider resolver.

    Counters are updated on the event loop between suspension points, so each
    increment is indivisible with respect to other tasks and no lock is needed.
    A cache store failure never fails a lookup: it is logged and the query is
    answered from the providers.
    """

    def __init__(
        self,
        resolver: MultiProviderResolver,
        cache: CacheStore | None,
        batch_concurrency: int = BATCH_CONCURRENCY,
    ) -> None:
        self._resolver = resolver
        self._cache = cache
        self._batch_concurrency = batch_concurrency
        self._counters = _Counters()

    async def lookup(self, ip: str) -> GeoRecord:
        start = time.perf_counter()
        self._counters.total_queries += 1

        try:
            parse_ip(ip)
        except AppError:
            self._counters.total_errors += 1
            raise

        cached = await self._cache_get(ip)
        if cached is not None:
            self._counters.cache_hits += 1
            self._record_query_time(start)
            return cached.model_copy(update={"source": "cache"})
        self._counters.cache_misses += 1

        try:
            record = await self._resolver.lookup(ip)
        except Exception:
            self._counters.total_errors += 1
            raise

        record = self._finish(record, start)
        if self._cache is not None:
            record = record.model_copy(update={"cached_at": datetime.now(timezone.utc)})
            try:
                await self._cache.set(ip, record)
            except CacheStoreError as exc:
                logger.warning(f"Failed to cache result ip={ip} error={exc}")

        self._record_query_time(start)
        return record

    async def _cache_get(self, ip: str) -> GeoRecord | None:
        if self._cache is None:
            return None
        try:
            return await self._cache.get(ip)
        except CacheStoreError as exc:
            logger.warning(f"Cache error, falling back to providers ip={ip} error={exc}")
            return None

    async def batch(self, ips: list[str]) -> BatchResult:
        if not ips:
            return BatchResult(results=[], total=0, success=0, failed=0)

        self._counters.total_queries += len(ips)

        cached: dict[str, GeoRecord] = {}
        if self._cache is not None:
            try:
                cached = await self._cache.mget(ips)
            except CacheStoreError as exc:
                logger.warning(f"Batch cache lookup failed error={exc}")
        cached = {ip: record.model_copy(update={"source": "cache"}) for ip, record in cached.items()}

        # Counted per submitted IP so hits plus misses always equals total_queries.
        hits = sum(1 for ip in ips if ip in cached)
        self._counters.cache_hits += hits
        self._counters.cache_misses += len(ips) - hits
        missed = [ip for ip in dict.fromkeys(ips) if ip not in cached]

        resolved = await self._fan_out(missed)

        if resolved and self._cache is not None:
            cached_at = datetime.now(timezone.utc)
            resolved = {ip: record.model_copy(update={"cached_at": cached_at}) for ip, record in resolved.items()}
            try:
                await self._cache.mset(resolved)
            except CacheStoreError as exc:
                logger.warning(f"Batch cache write failed error={exc}")

        results: list[GeoRecord] = []
        failed = 0
        for ip in ips:
            record = cached.get(ip) or resolved.get(ip)
            if record is None:
                failed += 1
            else:
                results.append(record)

        return BatchResult(results=results, total=len(ips), success=len(results), failed=failed)

    async def _fan_out(self, ips: list[str]) -> dict[str, GeoRecord]:
        """Resolve `ips` concurrently with at most `batch_concurrency` provider calls in flight."""
        semaphore = asyncio.Semaphore(self._batch_concurrency)
        results: dict[str, GeoRecord] = {}

        async def resolve(ip: str) -> None:
            async with semaphore:
                start = time.perf_counter()
                try:
                    record = await self._resolver.lookup(ip)
                except AppError as exc:
                    self._counters.total_errors += 1
                    logger.debug(f"Failed to lookup IP ip={ip} error={exc!r}")
                    return
                except Exception as exc:
                    self._counters.total_errors += 1
                    logger.warning(f"Unexpected error looking up IP ip={ip} error={exc!r}")
                    return
            results[ip] = self._finish(record, start)

        await asyncio.gather(*(resolve(ip) for ip in ips))
        return results

    async def lookup_with(self, ip: str, kind: str) -> GeoRecord:
        """Ask one named provider. Never reads or writes the cache: its key does not encode the provider."""
        start = time.perf_counter()
        self._counters.total_queries += 1
        try:
            record = await self._resolver.lookup_with(ip, kind)
        except Exception:
            self._counters.total_errors += 1
            raise
        record = self._finish(record, start)
        self._record_query_time(start)
        return record

    async def invalidate(self, ips: list[str]) -> int:
        """Drop cached records for `ips`. Returns how many IPs were submitted."""
        if self._cache is not None:
            await self._cache.delete(*ips)
        return len(ips)

    def available_providers(self) -> list[str]:
        return self._resolver.list_kinds()

    def stats(self) -> ServiceStats:
        counters = self._counters
        hit_rate = counters.cache_hits / counters.total_queries * 100 if counters.total_queries else 0.0
        avg_query_time = counters.total_time_us / counters.query_count / 1000 if counters.query_count else 0.0
        return ServiceStats(
            total_queries=counters.total_queries,
            cache_hits=counters.cache_hits,
            cache_misses=counters.cache_misses,
            cache_hit_rate=hit_rate,
            avg_query_time_ms=avg_query_time,
            total_errors=counters.total_errors,
        )

    @staticmethod
    def _finish(record: GeoRecord, start: float) -> GeoRecord:
        elapsed_ms = int((time.perf_counter() - start) * 1000)
        return record.model_copy(update={"source": source_for(record.provider), "query_time_ms": elapsed_ms})

    def _record_query_time(self, start: float) -> None:
        self._counters.total_time_us += int((time.perf_counter() - start) * 1_000_000)
        self._counters.query_count += 1
