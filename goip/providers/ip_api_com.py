from typing import Any

from goip.errors import IpNotFoundError, ReservedIpError
from goip.models.common import CityInfo, ContinentInfo, CountryInfo, GeoRecord, LocationInfo
from goip.models.request_models import ProviderKind
from goip.providers.http_api import HttpApiProvider

IP_API_FIELDS = "status,message,continent,continentCode,country,countryCode,city,zip,lat,lon,timezone,query"


class IpApiComProvider(HttpApiProvider):
    """Provider for the http://ip-api.com JSON API.

    ip-api.com answers HTTP 200 even for failed lookups and reports the outcome
    in a `status` field ("success" or "fail") with an explanatory `message`.
    """

    kind = ProviderKind.ip_api.value
    default_base_url = "http://ip-api.com"

    def _build_url(self, ip: str) -> str:
        return f"{self._base_url}/json/{ip}?fields={IP_API_FIELDS}"

    def _handle_provider_status(self, data: dict[str, Any]) -> None:
        """Normalize ip-api.com status/message into domain exceptions."""
        status_value = str(data.get("status") or "").lower()

        if status_value == "success":
            return

        # status is "fail" or unknown
        message = str(data.get("message") or "Unknown error from ip-api.com")
        lower_msg = message.lower()

        if "private range" in lower_msg or "reserved range" in lower_msg:
            raise ReservedIpError(message)

        raise IpNotFoundError(f"ip-api lookup failed: {message}")

    def _normalize_payload(self, ip: str, data: dict[str, Any]) -> GeoRecord:
        """Map ip-api.com's response into our normalized schema."""
        record = GeoRecord(
            ip=ip,
            country=CountryInfo(
                iso_code=str(data.get("countryCode") or ""),
                name=str(data.get("country") or ""),
            ),
            city=CityInfo(
                name=str(data.get("city") or ""),
                postal_code=str(data.get("zip") or ""),
            ),
        )

        if data.get("continentCode"):
            record.continent = ContinentInfo(
                code=str(data["continentCode"]),
                name=str(data.get("continent") or ""),
            )

        if data.get("lat") or data.get("lon"):
            record.location = LocationInfo(
                latitude=data.get("lat"),
                longitude=data.get("lon"),
                time_zone=str(data.get("timezone") or ""),
            )
        return record
