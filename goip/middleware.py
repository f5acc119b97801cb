import secrets
import time
from collections.abc import Awaitable, Callable

from fastapi import Request, Response, status

from goip.exception_handlers import error_response
from goip.logger import logger

REQUEST_ID_HEADER = "X-Request-ID"
HEALTH_CHECK_PATHS = frozenset({"/healthz", "/health"})


def generate_request_id() -> str:
    return secrets.token_hex(16)


async def request_context_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Attach a request id, log the request/response pair and recover from unexpected errors.

    Anything that escapes the route and exception handlers is logged with its
    stack and answered with 500 PANIC_RECOVERED, still carrying X-Request-ID.
    """
    request_id = request.headers.get(REQUEST_ID_HEADER) or generate_request_id()
    request.state.request_id = request_id

    path = request.url.path
    client_ip = request.client.host if request.client else None
    log_enabled = path not in HEALTH_CHECK_PATHS
    start = time.perf_counter()

    if log_enabled:
        logger.info(
            f"request request_id={request_id} method={request.method} path={path} "
            f"query={request.url.query} client_ip={client_ip} "
            f"user_agent={request.headers.get('user-agent')}"
        )

    try:
        response = await call_next(request)
    except Exception as exc:
        logger.exception(
            f"Panic recovered: {exc!r} request_id={request_id} path={path} "
            f"method={request.method} client_ip={client_ip}"
        )
        response = error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "PANIC_RECOVERED", "Internal server error")

    response.headers[REQUEST_ID_HEADER] = request_id

    if log_enabled:
        latency_ms = int((time.perf_counter() - start) * 1000)
        if response.status_code >= status.HTTP_500_INTERNAL_SERVER_ERROR:
            log = logger.error
        elif response.status_code >= status.HTTP_400_BAD_REQUEST:
            log = logger.warning
        else:
            log = logger.info
        extra = ""
        source = getattr(request.state, "source", None)
        provider = getattr(request.state, "provider", None)
        if source:
            extra += f" source={source}"
        if provider:
            extra += f" provider={provider}"
        log(
            f"response request_id={request_id} method={request.method} path={path} "
            f"status={response.status_code} latency_ms={latency_ms} client_ip={client_ip}{extra}"
        )
    return response
