import os
from dataclasses import dataclass

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from goip.cache import NAMESPACE, CacheStore, build_redis_client
from goip.config import Settings
from goip.errors import CacheStoreError
from goip.logger import logger
from goip.providers.base import BaseGeoProvider
from goip.providers.factory import ProviderFactory
from goip.rate_limiter import MemoryRateLimiter, RedisRateLimiter, SlidingWindowRateLimiter
from goip.resolver import MultiProviderResolver, ProviderEntry
from goip.service import LookupService

FLUSH_ENV_VAR = "FLUSH_DNS"


@dataclass
class Runtime:
    """Long-lived collaborators owned by the application lifespan."""

    settings: Settings
    resolver: MultiProviderResolver
    service: LookupService
    cache: CacheStore | None
    rate_limiter: SlidingWindowRateLimiter | None
    redis: aioredis.Redis | None

    async def aclose(self) -> None:
        try:
            self.resolver.close()
        except ExceptionGroup as exc:
            logger.error(f"Failed to close providers errors={exc.exceptions!r}")
        if self.redis is not None:
            await self.redis.aclose()
        logger.info("Runtime closed")


def build_resolver(settings: Settings, factory: ProviderFactory | None = None) -> MultiProviderResolver:
    factory = factory or ProviderFactory()
    providers: list[BaseGeoProvider] = []
    entries: list[ProviderEntry] = []
    try:
        for provider_config in settings.providers:
            provider = factory(provider_config)
            providers.append(provider)
            entries.append(ProviderEntry(provider, provider_config.priority, provider_config.region))
            logger.info(
                f"Provider initialized provider={provider.kind} priority={provider_config.priority} "
                f"region={provider_config.region or '-'}"
            )
    except Exception:
        # Release whatever opened before the failure.
        for provider in providers:
            provider.close()
        raise
    return MultiProviderResolver(entries)


async def build_runtime(settings: Settings, environ: dict[str, str] | None = None) -> Runtime:
    environ = os.environ if environ is None else environ
    resolver = build_resolver(settings)

    needs_redis = settings.cache.enabled or (settings.rate_limit.enabled and settings.rate_limit.storage == "redis")
    redis_client = build_redis_client(settings.redis) if needs_redis else None
    if redis_client is not None:
        try:
            await redis_client.ping()
            logger.info(f"Redis connected host={settings.redis.host} port={settings.redis.port}")
        except (RedisError, OSError) as exc:
            logger.warning(f"Redis connection failed, cache and rate limiting will degrade error={exc!r}")

    cache: CacheStore | None = None
    if settings.cache.enabled and redis_client is not None:
        cache = CacheStore(redis_client, settings.cache.ttl, operation_timeout=settings.redis.read_timeout)
        if environ.get(FLUSH_ENV_VAR, "").lower() == "true":
            try:
                await cache.flush_prefix(NAMESPACE)
            except CacheStoreError as exc:
                logger.warning(f"Startup cache flush failed error={exc}")

    rate_limiter: SlidingWindowRateLimiter | None = None
    limits = settings.rate_limit
    if limits.enabled:
        if limits.storage == "redis" and redis_client is not None:
            rate_limiter = RedisRateLimiter(redis_client, limits.requests_per_minute, limits.requests_per_hour)
        else:
            rate_limiter = MemoryRateLimiter(limits.requests_per_minute, limits.requests_per_hour)

    service = LookupService(resolver, cache)
    return Runtime(
        settings=settings,
        resolver=resolver,
        service=service,
        cache=cache,
        rate_limiter=rate_limiter,
        redis=redis_client,
    )
