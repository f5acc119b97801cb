from datetime import datetime

from pydantic import BaseModel

from goip.models.common import GeoRecord


class HealthResponse(BaseModel):
    """Response model for the dependency health endpoint."""

    status: str
    services: dict[str, str]


class BatchResult(BaseModel):
    """Results of a batch lookup, in input order. Failed IPs are only counted."""

    results: list[GeoRecord]
    total: int
    success: int
    failed: int


class ServiceStats(BaseModel):
    total_queries: int
    cache_hits: int
    cache_misses: int
    cache_hit_rate: float
    avg_query_time_ms: float
    total_errors: int


class CacheStats(BaseModel):
    pool_max_connections: int
    pool_in_use: int
    pool_available: int
    key_count: int
    used_memory: int
    evicted_keys: int
    keyspace_hits: int
    keyspace_misses: int


class ProvidersResponse(BaseModel):
    providers: list[str]
    count: int


class InvalidateResponse(BaseModel):
    message: str
    count: int


class ErrorResponse(BaseModel):
    """Shared error payload for every non-2xx response."""

    error: str
    code: str
    timestamp: datetime
