import asyncio
import fnmatch
from collections.abc import AsyncIterator, Callable
from http import HTTPStatus
from types import SimpleNamespace
from typing import Any

import httpx
from redis.exceptions import ConnectionError as RedisConnectionError

from goip.errors import IpNotFoundError
from goip.models.common import CityInfo, CountryInfo, GeoRecord
from goip.providers.base import BaseGeoProvider, parse_ip


class MockResponse:
    def __init__(self, status_code: int, payload: Any = None, text: str = "") -> None:
        self.status_code = status_code
        self._payload = {} if payload is None else payload
        self.text = text

    def json(self) -> Any:
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


class MockAsyncClient:
    """Minimal async context-manager mock for httpx.AsyncClient that records requested URLs."""

    def __init__(self, response: MockResponse, requested: list[str] | None = None) -> None:
        self._response = response
        self._requested = requested if requested is not None else []

    async def __aenter__(self) -> "MockAsyncClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        return None

    async def get(self, url: str) -> MockResponse:
        self._requested.append(url)
        return self._response


class FailingAsyncClient:
    """Async client that raises a RequestError on enter to simulate network failure.

    The target URL is provided at construction time, so tests for different providers
    can reuse this implementation with different base URLs.
    """

    def __init__(self, url: str, *args: Any, **kwargs: Any) -> None:
        self._url = url

    async def __aenter__(self) -> "FailingAsyncClient":
        request = httpx.Request("GET", self._url)
        raise httpx.RequestError("Network failure", request=request)

    async def __aexit__(self, exc_type, exc, tb) -> None:
        return None

    async def get(self, url: str) -> MockResponse:
        return MockResponse(status_code=HTTPStatus.OK, payload={})


def make_fake_async_client(
    response: MockResponse, requested: list[str] | None = None
) -> Callable[..., MockAsyncClient]:
    """Factory for a fake httpx.AsyncClient returning a fixed response."""

    def _fake_client(*args: Any, **kwargs: Any) -> MockAsyncClient:
        return MockAsyncClient(response, requested)

    return _fake_client


def make_record(ip: str, iso_code: str, city: str = "", country_name: str = "") -> GeoRecord:
    return GeoRecord(
        ip=ip,
        country=CountryInfo(iso_code=iso_code, name=country_name),
        city=CityInfo(name=city),
    )


class FakeProvider(BaseGeoProvider):
    """In-memory provider answering from a fixed ip -> record map.

    Unknown IPs raise IpNotFoundError; `error` is raised for every lookup when set.
    Tracks calls and the peak number of concurrent lookups.
    """

    def __init__(
        self,
        kind: str,
        records: dict[str, GeoRecord] | None = None,
        error: Exception | None = None,
        delay: float = 0.0,
    ) -> None:
        self.kind = kind
        self.records = records or {}
        self.error = error
        self.delay = delay
        self.calls: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.closed = False

    async def lookup(self, ip: str) -> GeoRecord:
        parse_ip(ip)
        self.calls.append(ip)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.error is not None:
                raise self.error
            record = self.records.get(ip)
            if record is None:
                raise IpNotFoundError(f"{self.kind} has no record for {ip}")
            return record.model_copy(deep=True)
        finally:
            self.in_flight -= 1

    def close(self) -> None:
        self.closed = True


class FakePipeline:
    """Buffers commands and applies them to the owning FakeRedis on execute()."""

    def __init__(self, redis: "FakeRedis") -> None:
        self._redis = redis
        self._commands: list[tuple[str, tuple[Any, ...], dict[str, Any]]] = []

    async def __aenter__(self) -> "FakePipeline":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self._commands = []

    def _queue(self, name: str, *args: Any, **kwargs: Any) -> "FakePipeline":
        self._commands.append((name, args, kwargs))
        return self

    def set(self, key: str, value: str, ex: int | None = None) -> "FakePipeline":
        return self._queue("set", key, value, ex=ex)

    def zremrangebyscore(self, key: str, min_score: float, max_score: float) -> "FakePipeline":
        return self._queue("zremrangebyscore", key, min_score, max_score)

    def zcard(self, key: str) -> "FakePipeline":
        return self._queue("zcard", key)

    def zadd(self, key: str, mapping: dict[str, float]) -> "FakePipeline":
        return self._queue("zadd", key, mapping)

    def expire(self, key: str, seconds: int) -> "FakePipeline":
        return self._queue("expire", key, seconds)

    async def execute(self) -> list[Any]:
        self._redis._check()
        self._redis.pipelines_executed += 1
        results = []
        for name, args, kwargs in self._commands:
            results.append(getattr(self._redis, f"_{name}")(*args, **kwargs))
        self._commands = []
        return results


class FakeRedis:
    """Small in-memory stand-in for redis.asyncio.Redis (decode_responses=True).

    Setting `broken` makes every command raise redis ConnectionError.
    """

    def __init__(self) -> None:
        self.store: dict[str, str] = {}
        self.ttls: dict[str, int] = {}
        self.zsets: dict[str, dict[str, float]] = {}
        self.broken = False
        self.closed = False
        self.pipelines_executed = 0
        self.connection_pool = SimpleNamespace(
            max_connections=10,
            _in_use_connections={object()},
            _available_connections=[object(), object()],
        )

    def _check(self) -> None:
        if self.broken:
            raise RedisConnectionError("Error 111 connecting to localhost:6379. Connection refused.")

    def _set(self, key: str, value: str, ex: int | None = None) -> bool:
        self.store[key] = value
        if ex is not None:
            self.ttls[key] = ex
        return True

    def _zremrangebyscore(self, key: str, min_score: float, max_score: float) -> int:
        members = self.zsets.get(key, {})
        doomed = [member for member, score in members.items() if min_score <= score <= max_score]
        for member in doomed:
            del members[member]
        return len(doomed)

    def _zcard(self, key: str) -> int:
        return len(self.zsets.get(key, {}))

    def _zadd(self, key: str, mapping: dict[str, float]) -> int:
        members = self.zsets.setdefault(key, {})
        added = len([member for member in mapping if member not in members])
        members.update(mapping)
        return added

    def _expire(self, key: str, seconds: int) -> bool:
        self.ttls[key] = seconds
        return True

    async def get(self, key: str) -> str | None:
        self._check()
        return self.store.get(key)

    async def set(self, key: str, value: str, ex: int | None = None) -> bool:
        self._check()
        return self._set(key, value, ex=ex)

    async def mget(self, keys: list[str]) -> list[str | None]:
        self._check()
        return [self.store.get(key) for key in keys]

    async def delete(self, *keys: str) -> int:
        self._check()
        deleted = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                deleted += 1
            self.ttls.pop(key, None)
        return deleted

    async def exists(self, *keys: str) -> int:
        self._check()
        return len([key for key in keys if key in self.store])

    async def ping(self) -> bool:
        self._check()
        return True

    async def info(self, section: str | None = None) -> dict[str, Any]:
        self._check()
        if section == "memory":
            return {"used_memory": 1048576}
        return {"evicted_keys": 2, "keyspace_hits": 40, "keyspace_misses": 10}

    async def scan_iter(self, match: str | None = None, count: int | None = None) -> AsyncIterator[str]:
        self._check()
        for key in list(self.store):
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key

    async def zrange(self, key: str, start: int, end: int, withscores: bool = False) -> list[Any]:
        self._check()
        ordered = sorted(self.zsets.get(key, {}).items(), key=lambda item: item[1])
        selected = ordered[start : end + 1] if end >= 0 else ordered[start:]
        if withscores:
            return selected
        return [member for member, _ in selected]

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        return FakePipeline(self)

    async def aclose(self) -> None:
        self.closed = True
