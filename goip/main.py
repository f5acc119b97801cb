from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import APIRouter, Depends, FastAPI, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from goip.bootstrap import Runtime, build_runtime
from goip.cache import CacheStore
from goip.config import Settings
from goip.errors import (
    AppError,
    BatchTooLargeError,
    CacheStoreError,
    InvalidRequestError,
    IpNotFoundError,
)
from goip.exception_handlers import (
    app_error_handler,
    http_exception_handler,
    request_validation_exception_handler,
)
from goip.logger import configure_logging, logger
from goip.middleware import request_context_middleware
from goip.models.common import GeoRecord
from goip.models.request_models import API_PROVIDER_KINDS, BatchRequest, InvalidateRequest
from goip.models.response_models import (
    BatchResult,
    CacheStats,
    ErrorResponse,
    HealthResponse,
    InvalidateResponse,
    ProvidersResponse,
    ServiceStats,
)
from goip.rate_limiter import SlidingWindowRateLimiter
from goip.resolver import MultiProviderResolver
from goip.service import LookupService

SERVICE_NAME = "GoIP"
SERVICE_VERSION = "1.0.0"
HEALTH_CHECK_IP = "8.8.8.8"


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_lookup_service(runtime: Annotated[Runtime, Depends(get_runtime)]) -> LookupService:
    return runtime.service


def get_resolver(runtime: Annotated[Runtime, Depends(get_runtime)]) -> MultiProviderResolver:
    return runtime.resolver


def get_cache_store(runtime: Annotated[Runtime, Depends(get_runtime)]) -> CacheStore | None:
    return runtime.cache


def get_rate_limiter(runtime: Annotated[Runtime, Depends(get_runtime)]) -> SlidingWindowRateLimiter | None:
    return runtime.rate_limiter


async def enforce_rate_limit(
    request: Request,
    limiter: Annotated[SlidingWindowRateLimiter | None, Depends(get_rate_limiter)],
) -> None:
    """Reject the request with 429 once the client exceeds its budget."""
    if limiter is None:
        return
    client_ip = request.client.host if request.client else "unknown"
    await limiter.admit(client_ip)


ERROR_RESPONSES: dict[int | str, dict] = {
    status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
    status.HTTP_404_NOT_FOUND: {"model": ErrorResponse},
    status.HTTP_429_TOO_MANY_REQUESTS: {"model": ErrorResponse},
    status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": ErrorResponse},
}

router = APIRouter(prefix="/api/v1", dependencies=[Depends(enforce_rate_limit)], responses=ERROR_RESPONSES)


@router.get(
    "/ip/{ip}",
    response_model=GeoRecord,
    response_model_exclude_none=True,
    tags=["ip"],
    summary="Look up geolocation information for an IP address.",
)
async def ip_lookup(
    request: Request,
    ip: str,
    service: Annotated[LookupService, Depends(get_lookup_service)],
) -> GeoRecord:
    """Cached lookup through the provider routing policy."""
    record = await service.lookup(ip)
    request.state.source = record.source
    request.state.provider = record.provider
    return record


@router.get(
    "/ip/{ip}/provider",
    response_model=GeoRecord,
    response_model_exclude_none=True,
    tags=["ip"],
    summary="Look up an IP address with one named provider.",
)
async def ip_lookup_by_provider(
    request: Request,
    ip: str,
    service: Annotated[LookupService, Depends(get_lookup_service)],
    provider: Annotated[str | None, Query(description="Provider kind, e.g. maxmind or ipip.")] = None,
) -> GeoRecord:
    """Uncached lookup against a single provider, bypassing the routing policy."""
    if not provider:
        raise InvalidRequestError("provider parameter is required")
    record = await service.lookup_with(ip, provider)
    request.state.source = record.source
    request.state.provider = record.provider
    return record


@router.post(
    "/ip/batch",
    response_model=BatchResult,
    response_model_exclude_none=True,
    tags=["ip"],
    summary="Look up many IP addresses at once.",
)
async def ip_batch_lookup(
    body: BatchRequest,
    service: Annotated[LookupService, Depends(get_lookup_service)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> BatchResult:
    max_size = settings.batch.max_size
    if len(body.ips) > max_size:
        raise BatchTooLargeError(f"batch size {len(body.ips)} exceeds the limit of {max_size} IPs")
    return await service.batch(body.ips)


@router.get("/providers", response_model=ProvidersResponse, tags=["system"], summary="List configured providers")
async def list_providers(service: Annotated[LookupService, Depends(get_lookup_service)]) -> ProvidersResponse:
    providers = service.available_providers()
    return ProvidersResponse(providers=providers, count=len(providers))


@router.get("/health", response_model=HealthResponse, tags=["system"], summary="Dependency health check")
async def dependency_health(
    resolver: Annotated[MultiProviderResolver, Depends(get_resolver)],
    cache: Annotated[CacheStore | None, Depends(get_cache_store)],
) -> JSONResponse:
    services: dict[str, str] = {}

    if cache is None:
        services["cache"] = "disabled"
    else:
        try:
            await cache.health_check()
            services["cache"] = "healthy"
        except CacheStoreError as exc:
            services["cache"] = f"unhealthy: {exc}"

    kinds = resolver.list_kinds()
    # Database-backed providers first; a remote API only when nothing else is configured.
    kind = next((candidate for candidate in kinds if candidate not in API_PROVIDER_KINDS), kinds[0])
    try:
        await resolver.lookup_with(HEALTH_CHECK_IP, kind)
        services["provider"] = "healthy"
    except IpNotFoundError:
        # The provider answered; it just has no record for the check address.
        services["provider"] = "healthy"
    except AppError as exc:
        services["provider"] = f"unhealthy: {exc}"

    healthy = all(value in ("healthy", "disabled") for value in services.values())
    payload = HealthResponse(status="healthy" if healthy else "unhealthy", services=services)
    return JSONResponse(
        status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content=payload.model_dump(),
    )


@router.get("/stats", response_model=ServiceStats, tags=["system"], summary="Lookup statistics")
async def service_stats(service: Annotated[LookupService, Depends(get_lookup_service)]) -> ServiceStats:
    return service.stats()


@router.get("/cache/stats", response_model=CacheStats, tags=["cache"], summary="Cache store statistics")
async def cache_stats(cache: Annotated[CacheStore | None, Depends(get_cache_store)]) -> CacheStats:
    if cache is None:
        raise CacheStoreError("cache is disabled")
    return await cache.stats()


@router.post(
    "/cache/invalidate",
    response_model=InvalidateResponse,
    tags=["cache"],
    summary="Drop cached records for the given IPs",
)
async def invalidate_cache(
    body: InvalidateRequest,
    service: Annotated[LookupService, Depends(get_lookup_service)],
) -> InvalidateResponse:
    count = await service.invalidate(body.ips)
    return InvalidateResponse(message="cache invalidated", count=count)


async def liveness() -> PlainTextResponse:
    return PlainTextResponse("OK")


def create_app(settings: Settings | None = None, runtime: Runtime | None = None) -> FastAPI:
    """Build the FastAPI application.

    Without `runtime`, the lifespan builds providers, Redis and the lookup
    service from `settings` at startup and closes them at shutdown.
    """
    settings = settings or Settings.load()
    configure_logging(settings.log.level, settings.log.format)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owned = getattr(app.state, "runtime", None) is None
        if owned:
            app.state.runtime = await build_runtime(settings)
        logger.info(f"Started {SERVICE_NAME} providers={app.state.runtime.resolver.list_kinds()}")
        try:
            yield
        finally:
            logger.info(f"Shutting down {SERVICE_NAME}")
            if owned:
                await app.state.runtime.aclose()

    app = FastAPI(
        title="IP Geolocation Service",
        version=SERVICE_VERSION,
        description="IP geolocation lookups over MaxMind, IPIP and remote APIs with a shared Redis cache.",
        lifespan=lifespan,
    )
    app.state.settings = settings
    if runtime is not None:
        app.state.runtime = runtime

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.middleware("http")(request_context_middleware)

    app.include_router(router)
    app.add_api_route("/healthz", liveness, methods=["GET"], include_in_schema=False)
    app.add_api_route("/health", liveness, methods=["GET"], include_in_schema=False)

    @app.get("/", include_in_schema=False)
    async def root() -> dict[str, str]:
        return {"service": SERVICE_NAME, "version": SERVICE_VERSION, "status": "running"}

    return app


app = create_app()
