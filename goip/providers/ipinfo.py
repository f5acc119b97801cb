from typing import Any

from goip.errors import IpNotFoundError, ReservedIpError
from goip.models.common import CityInfo, CountryInfo, GeoRecord, LocationInfo
from goip.models.request_models import ProviderKind
from goip.providers.http_api import HttpApiProvider


class IpInfoProvider(HttpApiProvider):
    """Provider for the https://ipinfo.io JSON API.

    ipinfo.io reports coordinates as a single "lat,lon" string and marks
    private or reserved addresses with `"bogon": true` instead of an error.
    Country names are not part of the free payload; only the ISO code is set.
    """

    kind = ProviderKind.ipinfo.value
    default_base_url = "https://ipinfo.io"

    def _build_url(self, ip: str) -> str:
        return f"{self._base_url}/{ip}/json"

    def _handle_provider_status(self, data: dict[str, Any]) -> None:
        if data.get("bogon"):
            raise ReservedIpError(f"reserved IP address: {data.get('ip')}")
        error = data.get("error")
        if error:
            message = error.get("message") if isinstance(error, dict) else error
            raise IpNotFoundError(f"ipinfo lookup failed: {message}")
        if not data.get("country"):
            raise IpNotFoundError("ipinfo returned no country for this IP address")

    def _normalize_payload(self, ip: str, data: dict[str, Any]) -> GeoRecord:
        record = GeoRecord(
            ip=ip,
            country=CountryInfo(iso_code=str(data.get("country") or "")),
            city=CityInfo(
                name=str(data.get("city") or ""),
                postal_code=str(data.get("postal") or ""),
            ),
        )

        lat, lon = self._parse_loc(data.get("loc"))
        if lat or lon:
            record.location = LocationInfo(
                latitude=lat,
                longitude=lon,
                time_zone=str(data.get("timezone") or ""),
            )
        return record

    @staticmethod
    def _parse_loc(loc: Any) -> tuple[float | None, float | None]:
        """Split ipinfo's "lat,lon" string; malformed values yield no location."""
        if not loc:
            return None, None
        parts = str(loc).split(",")
        if len(parts) != 2:
            return None, None
        try:
            return float(parts[0]), float(parts[1])
        except ValueError:
            return None, None
