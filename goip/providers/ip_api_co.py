from typing import Any

from goip.errors import IpNotFoundError, ReservedIpError
from goip.logger import logger
from goip.models.common import CityInfo, ContinentInfo, CountryInfo, GeoRecord, LocationInfo
from goip.models.request_models import ProviderKind
from goip.providers.http_api import HttpApiProvider


class IpApiCoProvider(HttpApiProvider):
    """Provider for the https://ipapi.co/ IP geolocation API."""

    kind = ProviderKind.ipapi_co.value
    default_base_url = "https://ipapi.co"

    def _build_url(self, ip: str) -> str:
        return f"{self._base_url}/{ip}/json/"

    def _handle_provider_status(self, data: dict[str, Any]) -> None:
        """Normalize provider-specific error payloads into domain exceptions.

        ipapi.co embeds error information in the JSON body, sometimes with HTTP 200.
        Examples:
            { "error": true, "reason": "Invalid IP Address", "ip": "..." }
            { "error": true, "reason": "Reserved IP Address", "ip": "127.0.0.1", "reserved": true }
            { "error": true, "reason": "RateLimited", "message": "..." }
            { "error": true, "reason": "Quota exceeded", "message": "..." }
        """
        if not data.get("error"):
            return

        reason = str(data.get("reason") or data.get("message") or "Unknown error from ipapi.co")
        lower_reason = reason.lower()

        # Reserved / private address, e.g. 127.0.0.1, 192.168.x.x.
        if "reserved" in lower_reason or data.get("reserved") is True:
            raise ReservedIpError(reason)

        if "ratelimited" in lower_reason or "quota" in lower_reason:
            logger.warning(f"IP provider rate limit or quota exceeded provider={self.kind} reason={reason}")

        raise IpNotFoundError(f"ipapi.co lookup failed: {reason}")

    def _normalize_payload(self, ip: str, data: dict[str, Any]) -> GeoRecord:
        """Map ipapi.co's response into our normalized schema.

        Latitude/longitude are passed through as-is; LocationInfo is responsible
        for coercing them into floats via field validators.
        """
        record = GeoRecord(
            ip=ip,
            country=CountryInfo(
                iso_code=str(data.get("country_code") or data.get("country") or ""),
                name=str(data.get("country_name") or ""),
            ),
            city=CityInfo(
                name=str(data.get("city") or ""),
                postal_code=str(data.get("postal") or ""),
            ),
        )

        if data.get("continent_code"):
            record.continent = ContinentInfo(code=str(data["continent_code"]))

        if data.get("latitude") or data.get("longitude"):
            record.location = LocationInfo(
                latitude=data.get("latitude"),
                longitude=data.get("longitude"),
                time_zone=str(data.get("timezone") or ""),
            )
        return record
