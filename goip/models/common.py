from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, field_validator

Source = Literal["cache", "db", "api"]


class CountryInfo(BaseModel):
    iso_code: str = ""
    name: str = ""
    name_zh: str = ""


class CityInfo(BaseModel):
    """City-level data. Any field may be empty when the provider has no city for the IP."""

    name: str = ""
    name_zh: str = ""
    postal_code: str = ""


class ContinentInfo(BaseModel):
    code: str = ""
    name: str = ""


class LocationInfo(BaseModel):
    latitude: float | None = None
    longitude: float | None = None
    time_zone: str = ""

    @field_validator("latitude", "longitude", mode="before")
    @classmethod
    def _coerce_lat_lon(cls, value: Any) -> float | None:
        """Allow latitude/longitude to be provided as strings, numbers, or null.

        Providers may return these fields as strings; this validator normalizes them
        into floats while gracefully handling missing or invalid values.
        """
        if value is None or value == "":
            return None
        try:
            # For general GPS and mapping, 5-6 decimal places (e.g., 34.052235)
            return round(float(value), 6)
        except (TypeError, ValueError):
            return None


class GeoRecord(BaseModel):
    """Normalized geolocation data returned by a provider.

    Adapters fill the geographic fields. The resolver owns `provider`, and the
    lookup service owns `source`, `query_time_ms` and `cached_at`.
    """

    ip: str
    country: CountryInfo = CountryInfo()
    city: CityInfo = CityInfo()
    provider: str = ""
    source: Source | None = None
    continent: ContinentInfo | None = None
    location: LocationInfo | None = None
    query_time_ms: int = 0
    cached_at: datetime | None = None
