from http import HTTPStatus

import httpx
import pytest

from goip.errors import IpNotFoundError, ReservedIpError
from goip.providers.ipinfo import IpInfoProvider
from tests.common import MockResponse, make_fake_async_client


@pytest.mark.asyncio
async def test_lookup_success(monkeypatch: pytest.MonkeyPatch) -> None:
    """ipinfo's "lat,lon" string is split into coordinates."""
    payload = {
        "ip": "8.8.8.8",
        "city": "Mountain View",
        "region": "California",
        "country": "US",
        "loc": "37.4056,-122.0775",
        "postal": "94043",
        "timezone": "America/Los_Angeles",
    }
    requested: list[str] = []
    response = MockResponse(status_code=HTTPStatus.OK, payload=payload)
    monkeypatch.setattr(httpx, "AsyncClient", make_fake_async_client(response, requested))

    result = await IpInfoProvider().lookup("8.8.8.8")

    assert requested == ["https://ipinfo.io/8.8.8.8/json"]
    assert result.country.iso_code == "US"
    assert result.country.name == ""
    assert result.city.name == "Mountain View"
    assert result.city.postal_code == "94043"
    assert result.location is not None
    assert result.location.latitude == pytest.approx(37.4056)
    assert result.location.longitude == pytest.approx(-122.0775)
    assert result.location.time_zone == "America/Los_Angeles"


@pytest.mark.asyncio
async def test_lookup_malformed_loc_omits_location(monkeypatch: pytest.MonkeyPatch) -> None:
    """A loc value that is not "lat,lon" yields no location."""
    payload = {"ip": "1.1.1.1", "country": "AU", "loc": "somewhere"}
    monkeypatch.setattr(
        httpx, "AsyncClient", make_fake_async_client(MockResponse(status_code=HTTPStatus.OK, payload=payload))
    )

    result = await IpInfoProvider().lookup("1.1.1.1")

    assert result.country.iso_code == "AU"
    assert result.location is None


@pytest.mark.asyncio
async def test_lookup_bogon(monkeypatch: pytest.MonkeyPatch) -> None:
    """Bogon addresses map to ReservedIpError."""
    payload = {"ip": "240.0.0.1", "bogon": True}
    monkeypatch.setattr(
        httpx, "AsyncClient", make_fake_async_client(MockResponse(status_code=HTTPStatus.OK, payload=payload))
    )

    with pytest.raises(ReservedIpError):
        await IpInfoProvider().lookup("240.0.0.1")


@pytest.mark.asyncio
async def test_lookup_error_object(monkeypatch: pytest.MonkeyPatch) -> None:
    """Error objects in the body map to IpNotFoundError with the vendor message."""
    payload = {"error": {"title": "Wrong ip", "message": "Please provide a valid IP address"}}
    monkeypatch.setattr(
        httpx, "AsyncClient", make_fake_async_client(MockResponse(status_code=HTTPStatus.OK, payload=payload))
    )

    with pytest.raises(IpNotFoundError) as exc_info:
        await IpInfoProvider().lookup("8.8.8.8")

    assert "valid IP address" in str(exc_info.value)


@pytest.mark.asyncio
async def test_lookup_without_country(monkeypatch: pytest.MonkeyPatch) -> None:
    """An answer without a country is not a usable record."""
    payload = {"ip": "8.8.8.8", "city": "Mountain View"}
    monkeypatch.setattr(
        httpx, "AsyncClient", make_fake_async_client(MockResponse(status_code=HTTPStatus.OK, payload=payload))
    )

    with pytest.raises(IpNotFoundError):
        await IpInfoProvider().lookup("8.8.8.8")
