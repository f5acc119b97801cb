from datetime import datetime, timezone

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from goip.errors import (
    AllProvidersFailedError,
    AppError,
    BatchTooLargeError,
    CacheStoreError,
    InvalidIpError,
    InvalidRequestError,
    IpNotFoundError,
    ProviderNotFoundError,
    ProviderUnavailableError,
    RateLimitExceededError,
    UpstreamServiceError,
)
from goip.logger import logger

HTTP_ERROR_CODES: dict[int, str] = {
    status.HTTP_404_NOT_FOUND: "NOT_FOUND",
    status.HTTP_405_METHOD_NOT_ALLOWED: "METHOD_NOT_ALLOWED",
}

# Checked in order, so subclasses must precede their bases.
ERROR_MAP: tuple[tuple[type[AppError], int, str], ...] = (
    (InvalidIpError, status.HTTP_400_BAD_REQUEST, "INVALID_IP"),
    (BatchTooLargeError, status.HTTP_400_BAD_REQUEST, "BATCH_TOO_LARGE"),
    (InvalidRequestError, status.HTTP_400_BAD_REQUEST, "INVALID_REQUEST"),
    (ProviderNotFoundError, status.HTTP_404_NOT_FOUND, "PROVIDER_NOT_FOUND"),
    (IpNotFoundError, status.HTTP_404_NOT_FOUND, "IP_NOT_FOUND"),
    (ProviderUnavailableError, status.HTTP_503_SERVICE_UNAVAILABLE, "DB_ERROR"),
    (RateLimitExceededError, status.HTTP_429_TOO_MANY_REQUESTS, "RATE_LIMIT_EXCEEDED"),
    (CacheStoreError, status.HTTP_500_INTERNAL_SERVER_ERROR, "CACHE_ERROR"),
    (AllProvidersFailedError, status.HTTP_500_INTERNAL_SERVER_ERROR, "INTERNAL_ERROR"),
    (UpstreamServiceError, status.HTTP_500_INTERNAL_SERVER_ERROR, "INTERNAL_ERROR"),
)


def _classify(exc: AppError) -> tuple[int, str]:
    for error_cls, status_code, code in ERROR_MAP:
        if isinstance(exc, error_cls):
            return status_code, code
    return status.HTTP_500_INTERNAL_SERVER_ERROR, "INTERNAL_ERROR"


def error_response(
    status_code: int, code: str, message: str, headers: dict[str, str] | None = None
) -> JSONResponse:
    """Build the shared `{error, code, timestamp}` payload."""
    content = {
        "error": message,
        "code": code,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    return JSONResponse(status_code=status_code, content=content, headers=headers)


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Map domain errors raised by the handlers onto HTTP responses."""
    status_code, code = _classify(exc)
    headers = None
    if isinstance(exc, RateLimitExceededError):
        headers = {
            "Retry-After": str(exc.retry_after),
            "X-RateLimit-Limit": str(exc.limit),
            "X-RateLimit-Remaining": "0",
        }

    log = logger.error if status_code >= status.HTTP_500_INTERNAL_SERVER_ERROR else logger.warning
    log(
        "Request error "
        f"code={code} message={exc} path={request.url.path} method={request.method} "
        f"request_id={getattr(request.state, 'request_id', None)}"
    )
    return error_response(status_code, code, str(exc), headers)


async def request_validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handle malformed bodies and parameters with a stable, minimal payload.

    Internal validation details are logged but not exposed to clients.
    """
    logger.info(
        "Request validation error "
        f"path={request.url.path} method={request.method} errors={exc.errors()}"
    )
    return error_response(status.HTTP_400_BAD_REQUEST, "INVALID_REQUEST", "Invalid request parameters")


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Render routing errors (unknown path, wrong method) in the shared error shape."""
    code = HTTP_ERROR_CODES.get(exc.status_code, "HTTP_ERROR")
    logger.info(f"HTTP error code={code} path={request.url.path} method={request.method}")
    return error_response(exc.status_code, code, str(exc.detail), dict(exc.headers) if exc.headers else None)
