from abc import abstractmethod
from http import HTTPStatus
from typing import Any

import httpx

from goip.errors import IpNotFoundError, ProviderUnavailableError, ReservedIpError, UpstreamServiceError
from goip.logger import logger
from goip.models.common import GeoRecord
from goip.providers.base import BaseGeoProvider, parse_ip
from goip.validator import is_private_ip

MAX_TIMEOUT_SECONDS = 5.0


class HttpApiProvider(BaseGeoProvider):
    """Shared request flow for remote geolocation APIs.

    Subclasses provide the URL, the vendor's in-body status check and the
    payload mapping. Every non-success answer becomes IpNotFoundError so the
    resolver can move on to the next provider; only network failures and
    undecodable bodies are reported as UpstreamServiceError.
    """

    default_base_url: str

    def __init__(self, base_url: str | None = None, timeout_seconds: float = MAX_TIMEOUT_SECONDS) -> None:
        self._base_url = (base_url or self.default_base_url).rstrip("/")
        self._timeout_seconds = min(timeout_seconds, MAX_TIMEOUT_SECONDS)
        self._closed = False

    async def lookup(self, ip: str) -> GeoRecord:
        """Look up geolocation information for an explicit IP address."""
        if self._closed:
            raise ProviderUnavailableError(f"provider {self.kind} is closed")
        parse_ip(ip)
        if is_private_ip(ip):
            # Public APIs never locate private ranges; skip the round-trip.
            raise ReservedIpError(f"reserved IP address: {ip}")
        return await self._request(ip, self._build_url(ip))

    async def _request(self, ip: str, url: str) -> GeoRecord:
        """Perform the HTTP request and normalize the response."""
        try:
            async with httpx.AsyncClient(timeout=self._timeout_seconds) as client:
                response = await client.get(url)
        except httpx.RequestError as exc:
            raise UpstreamServiceError(f"Request to {self.kind} failed: {repr(exc)}") from exc

        self._handle_http_errors(response)

        data = self._parse_json(response)
        self._handle_provider_status(data)

        return self._normalize_payload(ip, data)

    def _handle_http_errors(self, response: httpx.Response) -> None:
        """Map HTTP status codes from the provider to domain-specific errors."""
        status_code = response.status_code

        if status_code == HTTPStatus.TOO_MANY_REQUESTS:
            logger.warning(f"IP provider rate limit or quota exceeded provider={self.kind}")
        elif status_code >= HTTPStatus.INTERNAL_SERVER_ERROR:
            logger.warning(f"IP provider returned HTTP {status_code} provider={self.kind}")

        if status_code >= HTTPStatus.BAD_REQUEST:
            raise IpNotFoundError(f"{self.kind} returned HTTP {status_code}")

    def _parse_json(self, response: httpx.Response) -> dict[str, Any]:
        try:
            data = response.json()
        except ValueError as exc:
            raise UpstreamServiceError(f"Failed to decode {self.kind} response as JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise UpstreamServiceError(f"Unexpected {self.kind} response shape: {type(data).__name__}")
        return data

    @abstractmethod
    def _build_url(self, ip: str) -> str:
        raise NotImplementedError

    @abstractmethod
    def _handle_provider_status(self, data: dict[str, Any]) -> None:
        """Raise a domain error when the payload signals a failed lookup."""
        raise NotImplementedError

    @abstractmethod
    def _normalize_payload(self, ip: str, data: dict[str, Any]) -> GeoRecord:
        raise NotImplementedError

    def close(self) -> None:
        # A client is opened per request, so there is no connection to release.
        self._closed = True
