import asyncio
from typing import Any

import geoip2.database
import geoip2.errors
import maxminddb

from goip.errors import IpNotFoundError, UpstreamServiceError
from goip.logger import logger
from goip.models.common import CityInfo, ContinentInfo, CountryInfo, GeoRecord, LocationInfo
from goip.models.request_models import ProviderKind
from goip.providers.base import BaseGeoProvider, parse_ip
from goip.providers.handle import SwappableHandle


class MaxMindProvider(BaseGeoProvider):
    """Provider backed by a MaxMind GeoIP2/GeoLite2 `.mmdb` file.

    City databases yield country, continent, city, postal code and location;
    Country databases yield country and continent only. Lookups are blocking
    reads of a memory-mapped file, so they run in a worker thread.
    """

    kind = ProviderKind.maxmind.value

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        self._handle = SwappableHandle(self._open(db_path), closer=lambda reader: reader.close())

    @property
    def db_path(self) -> str:
        return self._db_path

    @staticmethod
    def _open(db_path: str) -> geoip2.database.Reader:
        reader = geoip2.database.Reader(db_path)
        logger.info(f"MaxMind database loaded db_path={db_path} type={reader.metadata().database_type}")
        return reader

    async def lookup(self, ip: str) -> GeoRecord:
        parse_ip(ip)
        return await asyncio.to_thread(self._lookup_blocking, ip)

    def _lookup_blocking(self, ip: str) -> GeoRecord:
        with self._handle.acquire() as reader:
            try:
                if "City" in reader.metadata().database_type:
                    response = reader.city(ip)
                else:
                    response = reader.country(ip)
            except geoip2.errors.AddressNotFoundError as exc:
                raise IpNotFoundError(f"IP not found in MaxMind database: {ip}") from exc
            except ValueError as exc:
                # IPv6 address against an IPv4-only database.
                raise IpNotFoundError(f"IP not found in MaxMind database: {ip}") from exc
            except maxminddb.InvalidDatabaseError as exc:
                raise UpstreamServiceError(f"MaxMind database is unreadable: {exc}") from exc
        return self._normalize_response(ip, response)

    @staticmethod
    def _normalize_response(ip: str, response: Any) -> GeoRecord:
        """Map a geoip2 City or Country model into our normalized schema."""
        country = response.country
        record = GeoRecord(
            ip=ip,
            country=CountryInfo(
                iso_code=country.iso_code or "",
                name=country.names.get("en", ""),
                name_zh=country.names.get("zh-CN", ""),
            ),
        )

        continent = response.continent
        if continent.code:
            record.continent = ContinentInfo(code=continent.code, name=continent.names.get("en", ""))

        # Country models carry no city, postal or location attributes.
        city = getattr(response, "city", None)
        if city is not None and city.names:
            postal = getattr(response, "postal", None)
            record.city = CityInfo(
                name=city.names.get("en", ""),
                name_zh=city.names.get("zh-CN", ""),
                postal_code=(postal.code if postal is not None else None) or "",
            )

        location = getattr(response, "location", None)
        if location is not None and (location.latitude or location.longitude):
            record.location = LocationInfo(
                latitude=location.latitude,
                longitude=location.longitude,
                time_zone=location.time_zone or "",
            )
        return record

    async def reload(self, db_path: str) -> None:
        """Open `db_path` and swap it in; lookups already running finish on the old file."""
        reader = await asyncio.to_thread(self._open, db_path)
        self._handle.swap(reader)
        self._db_path = db_path

    def close(self) -> None:
        self._handle.close()
