import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from pydantic import ValidationError
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import RedisError

from goip.config import RedisConfig
from goip.errors import CacheStoreError
from goip.logger import logger
from goip.models.common import GeoRecord
from goip.models.response_models import CacheStats

NAMESPACE = "goip:"
KEY_PREFIX = f"{NAMESPACE}country:"
DELETE_BATCH_SIZE = 1000
HEALTH_CHECK_TIMEOUT_SECONDS = 2.0


def cache_key(ip: str) -> str:
    return f"{KEY_PREFIX}{ip}"


def build_redis_client(config: RedisConfig) -> aioredis.Redis:
    """Create the pooled Redis client shared by the cache store and the rate limiter."""
    return aioredis.Redis(
        host=config.host,
        port=config.port,
        password=config.password or None,
        db=config.db,
        max_connections=config.pool_size,
        socket_connect_timeout=config.dial_timeout,
        socket_timeout=config.read_timeout,
        retry=Retry(ExponentialBackoff(), config.max_retries),
        decode_responses=True,
    )


class CacheStore:
    """Geolocation records in Redis under `goip:country:<ip>`, serialized as JSON.

    Every operation is bounded by `operation_timeout` and every store failure
    surfaces as CacheStoreError; callers on the lookup path log and continue.
    """

    def __init__(self, client: aioredis.Redis, ttl_seconds: float, operation_timeout: float = 3.0) -> None:
        self._client = client
        self._ttl = max(1, int(ttl_seconds))
        self._operation_timeout = operation_timeout

    @property
    def ttl_seconds(self) -> int:
        return self._ttl

    @asynccontextmanager
    async def _guard(self, operation: str) -> AsyncIterator[None]:
        try:
            async with asyncio.timeout(self._operation_timeout):
                yield
        except TimeoutError as exc:
            raise CacheStoreError(f"cache {operation} timed out after {self._operation_timeout}s") from exc
        except RedisError as exc:
            raise CacheStoreError(f"cache {operation} failed: {exc!r}") from exc

    async def get(self, ip: str) -> GeoRecord | None:
        """Return the cached record, or None on a miss."""
        async with self._guard("get"):
            raw = await self._client.get(cache_key(ip))
        if raw is None:
            return None
        try:
            return GeoRecord.model_validate_json(raw)
        except ValidationError as exc:
            raise CacheStoreError(f"corrupt cache entry for {ip}: {exc}") from exc

    async def mget(self, ips: list[str]) -> dict[str, GeoRecord]:
        """Fetch many records in one round-trip. Missing or unreadable entries are left out."""
        if not ips:
            return {}
        async with self._guard("mget"):
            values = await self._client.mget([cache_key(ip) for ip in ips])

        results: dict[str, GeoRecord] = {}
        for ip, raw in zip(ips, values):
            if raw is None:
                continue
            try:
                results[ip] = GeoRecord.model_validate_json(raw)
            except ValidationError:
                logger.debug(f"Skipping corrupt cache entry ip={ip}")
        return results

    async def set(self, ip: str, record: GeoRecord) -> None:
        payload = self._serialize(ip, record)
        async with self._guard("set"):
            await self._client.set(cache_key(ip), payload, ex=self._ttl)

    async def mset(self, records: dict[str, GeoRecord]) -> None:
        """Write many records in one pipeline; entries that fail to serialize are skipped."""
        if not records:
            return
        async with self._guard("mset"):
            async with self._client.pipeline(transaction=False) as pipe:
                queued = 0
                for ip, record in records.items():
                    try:
                        payload = self._serialize(ip, record)
                    except CacheStoreError as exc:
                        logger.debug(f"Skipping unserializable record ip={ip} error={exc}")
                        continue
                    pipe.set(cache_key(ip), payload, ex=self._ttl)
                    queued += 1
                if queued:
                    await pipe.execute()

    @staticmethod
    def _serialize(ip: str, record: GeoRecord) -> str:
        try:
            return record.model_dump_json()
        except (ValueError, TypeError) as exc:
            raise CacheStoreError(f"failed to serialize record for {ip}: {exc}") from exc

    async def delete(self, *ips: str) -> int:
        if not ips:
            return 0
        async with self._guard("delete"):
            return await self._client.delete(*(cache_key(ip) for ip in ips))

    async def exists(self, ip: str) -> bool:
        async with self._guard("exists"):
            return await self._client.exists(cache_key(ip)) > 0

    async def health_check(self) -> None:
        try:
            async with asyncio.timeout(min(HEALTH_CHECK_TIMEOUT_SECONDS, self._operation_timeout)):
                await self._client.ping()
        except TimeoutError as exc:
            raise CacheStoreError("cache ping timed out") from exc
        except RedisError as exc:
            raise CacheStoreError(f"cache ping failed: {exc!r}") from exc

    async def flush_prefix(self, prefix: str = KEY_PREFIX) -> int:
        """Delete every key under `prefix` with SCAN, in batches of at most DELETE_BATCH_SIZE.

        Not bounded by the operation timeout: the scan length depends on the keyspace.
        """
        if not prefix.startswith(NAMESPACE):
            raise ValueError(f"refusing to flush keys outside the {NAMESPACE} namespace: {prefix}")
        deleted = 0
        batch: list[str] = []
        try:
            async for key in self._client.scan_iter(match=f"{prefix}*", count=DELETE_BATCH_SIZE):
                batch.append(key)
                if len(batch) >= DELETE_BATCH_SIZE:
                    deleted += await self._client.delete(*batch)
                    batch = []
            if batch:
                deleted += await self._client.delete(*batch)
        except RedisError as exc:
            raise CacheStoreError(f"cache flush failed: {exc!r}") from exc
        logger.info(f"Flushed cache keys prefix={prefix} deleted={deleted}")
        return deleted

    async def stats(self) -> CacheStats:
        try:
            async with asyncio.timeout(self._operation_timeout):
                memory = await self._client.info("memory")
                server_stats = await self._client.info("stats")
            key_count = 0
            async for _ in self._client.scan_iter(match=f"{KEY_PREFIX}*", count=DELETE_BATCH_SIZE):
                key_count += 1
        except TimeoutError as exc:
            raise CacheStoreError("cache stats timed out") from exc
        except RedisError as exc:
            raise CacheStoreError(f"cache stats failed: {exc!r}") from exc

        pool = self._client.connection_pool
        in_use = len(getattr(pool, "_in_use_connections", ()))
        available = len(getattr(pool, "_available_connections", ()))
        return CacheStats(
            pool_max_connections=pool.max_connections,
            pool_in_use=in_use,
            pool_available=available,
            key_count=key_count,
            used_memory=int(memory.get("used_memory", 0)),
            evicted_keys=int(server_stats.get("evicted_keys", 0)),
            keyspace_hits=int(server_stats.get("keyspace_hits", 0)),
            keyspace_misses=int(server_stats.get("keyspace_misses", 0)),
        )
