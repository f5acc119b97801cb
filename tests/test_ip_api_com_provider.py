from http import HTTPStatus

import httpx
import pytest

from goip.errors import (
    InvalidIpError,
    IpNotFoundError,
    ProviderUnavailableError,
    ReservedIpError,
    UpstreamServiceError,
)
from goip.models.common import GeoRecord
from goip.providers.ip_api_com import IP_API_FIELDS, IpApiComProvider
from tests.common import FailingAsyncClient, MockResponse, make_fake_async_client


@pytest.mark.asyncio
async def test_lookup_success(monkeypatch: pytest.MonkeyPatch) -> None:
    """Happy path: successful lookup with normalized fields."""
    payload = {
        "status": "success",
        "query": "8.8.8.8",
        "continent": "North America",
        "continentCode": "NA",
        "countryCode": "US",
        "country": "United States",
        "city": "Mountain View",
        "zip": "94043",
        "lat": 37.386,
        "lon": -122.0838,
        "timezone": "America/Los_Angeles",
    }
    requested: list[str] = []
    response = MockResponse(status_code=HTTPStatus.OK, payload=payload)

    monkeypatch.setattr(httpx, "AsyncClient", make_fake_async_client(response, requested))

    provider = IpApiComProvider()
    result = await provider.lookup("8.8.8.8")

    assert isinstance(result, GeoRecord)
    assert requested == [f"http://ip-api.com/json/8.8.8.8?fields={IP_API_FIELDS}"]
    assert result.ip == "8.8.8.8"
    assert result.country.iso_code == "US"
    assert result.country.name == "United States"
    assert result.city.name == "Mountain View"
    assert result.city.postal_code == "94043"
    assert result.continent is not None
    assert result.continent.code == "NA"
    assert result.continent.name == "North America"
    assert result.location is not None
    assert result.location.latitude == pytest.approx(37.386)
    assert result.location.longitude == pytest.approx(-122.0838)
    assert result.location.time_zone == "America/Los_Angeles"


@pytest.mark.asyncio
async def test_lookup_without_city_or_coordinates(monkeypatch: pytest.MonkeyPatch) -> None:
    """Country-only answers leave the city empty and omit location."""
    payload = {"status": "success", "query": "1.2.3.4", "countryCode": "AU", "country": "Australia"}
    monkeypatch.setattr(
        httpx, "AsyncClient", make_fake_async_client(MockResponse(status_code=HTTPStatus.OK, payload=payload))
    )

    result = await IpApiComProvider().lookup("1.2.3.4")

    assert result.country.iso_code == "AU"
    assert result.city.name == ""
    assert result.location is None
    assert result.continent is None


@pytest.mark.asyncio
async def test_lookup_invalid_ip_never_calls_upstream(monkeypatch: pytest.MonkeyPatch) -> None:
    """Unparseable IPs are rejected before any request is made."""
    requested: list[str] = []
    response = MockResponse(status_code=HTTPStatus.OK, payload={"status": "success"})
    monkeypatch.setattr(httpx, "AsyncClient", make_fake_async_client(response, requested))

    with pytest.raises(InvalidIpError):
        await IpApiComProvider().lookup("not-an-ip")

    assert requested == []


@pytest.mark.asyncio
async def test_lookup_private_ip_short_circuits(monkeypatch: pytest.MonkeyPatch) -> None:
    """Private ranges are reported as reserved without a round-trip."""
    requested: list[str] = []
    response = MockResponse(status_code=HTTPStatus.OK, payload={"status": "success"})
    monkeypatch.setattr(httpx, "AsyncClient", make_fake_async_client(response, requested))

    with pytest.raises(ReservedIpError):
        await IpApiComProvider().lookup("192.168.1.1")

    assert requested == []


@pytest.mark.asyncio
async def test_lookup_reserved_range_message(monkeypatch: pytest.MonkeyPatch) -> None:
    """status=fail with a reserved range message maps to ReservedIpError."""
    payload = {"status": "fail", "message": "reserved range", "query": "240.0.0.1"}
    monkeypatch.setattr(
        httpx, "AsyncClient", make_fake_async_client(MockResponse(status_code=HTTPStatus.OK, payload=payload))
    )

    with pytest.raises(ReservedIpError):
        await IpApiComProvider().lookup("240.0.0.1")


@pytest.mark.asyncio
async def test_lookup_generic_fail_maps_to_not_found(monkeypatch: pytest.MonkeyPatch) -> None:
    """Any other status=fail is reported as IpNotFoundError."""
    payload = {"status": "fail", "message": "invalid query", "query": "8.8.8.8"}
    monkeypatch.setattr(
        httpx, "AsyncClient", make_fake_async_client(MockResponse(status_code=HTTPStatus.OK, payload=payload))
    )

    with pytest.raises(IpNotFoundError) as exc_info:
        await IpApiComProvider().lookup("8.8.8.8")

    assert not isinstance(exc_info.value, ReservedIpError)
    assert "invalid query" in str(exc_info.value)


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code", [HTTPStatus.TOO_MANY_REQUESTS, HTTPStatus.SERVICE_UNAVAILABLE])
async def test_lookup_http_error_maps_to_not_found(monkeypatch: pytest.MonkeyPatch, status_code: int) -> None:
    """Non-2xx answers are treated as a miss so the resolver can fall back."""
    monkeypatch.setattr(
        httpx, "AsyncClient", make_fake_async_client(MockResponse(status_code=status_code, payload={}))
    )

    with pytest.raises(IpNotFoundError):
        await IpApiComProvider().lookup("8.8.8.8")


@pytest.mark.asyncio
async def test_lookup_undecodable_body(monkeypatch: pytest.MonkeyPatch) -> None:
    """A body that is not JSON is reported as an upstream failure."""
    response = MockResponse(status_code=HTTPStatus.OK, payload=ValueError("Expecting value"))
    monkeypatch.setattr(httpx, "AsyncClient", make_fake_async_client(response))

    with pytest.raises(UpstreamServiceError):
        await IpApiComProvider().lookup("8.8.8.8")


@pytest.mark.asyncio
async def test_lookup_network_error(monkeypatch: pytest.MonkeyPatch) -> None:
    """Network errors are wrapped into UpstreamServiceError."""

    def _failing_client(*args, **kwargs) -> FailingAsyncClient:
        return FailingAsyncClient("http://ip-api.com/json/8.8.8.8", *args, **kwargs)

    monkeypatch.setattr(httpx, "AsyncClient", _failing_client)

    with pytest.raises(UpstreamServiceError):
        await IpApiComProvider().lookup("8.8.8.8")


@pytest.mark.asyncio
async def test_lookup_after_close_is_unavailable() -> None:
    """A closed provider refuses lookups."""
    provider = IpApiComProvider()
    provider.close()
    provider.close()

    with pytest.raises(ProviderUnavailableError):
        await provider.lookup("8.8.8.8")


def test_custom_base_url_and_timeout_cap() -> None:
    """Base URLs are normalized and timeouts never exceed five seconds."""
    provider = IpApiComProvider(base_url="http://localhost:9000/", timeout_seconds=30)

    assert provider._build_url("1.1.1.1").startswith("http://localhost:9000/json/1.1.1.1?")
    assert provider._timeout_seconds == 5.0
