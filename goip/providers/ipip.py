import asyncio

import ipdb

from goip.errors import IpNotFoundError
from goip.logger import logger
from goip.models.common import CityInfo, ContinentInfo, CountryInfo, GeoRecord, LocationInfo
from goip.models.request_models import ProviderKind
from goip.providers.base import BaseGeoProvider, parse_ip
from goip.providers.handle import SwappableHandle

IPIP_LANGUAGE = "CN"


class IpipProvider(BaseGeoProvider):
    """Provider backed by an IPIP.NET `.ipdb` city database.

    IPIP carries richer city data for mainland China than MaxMind, which is why
    the resolver prefers it for CN addresses. The free edition has no separate
    province field in most records, so `city.name_zh` joins region and city.
    """

    kind = ProviderKind.ipip.value

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        # ipdb readers hold no OS resources beyond the loaded buffer; nothing to release.
        self._handle: SwappableHandle[ipdb.City] = SwappableHandle(self._open(db_path))

    @property
    def db_path(self) -> str:
        return self._db_path

    @staticmethod
    def _open(db_path: str) -> ipdb.City:
        reader = ipdb.City(db_path)
        logger.info(f"IPIP database loaded db_path={db_path}")
        return reader

    async def lookup(self, ip: str) -> GeoRecord:
        parse_ip(ip)
        return await asyncio.to_thread(self._lookup_blocking, ip)

    def _lookup_blocking(self, ip: str) -> GeoRecord:
        with self._handle.acquire() as reader:
            try:
                info = reader.find_map(ip, IPIP_LANGUAGE)
            except Exception as exc:
                # ipdb signals misses, unsupported IP versions and unknown languages alike by raising.
                raise IpNotFoundError(f"IP not found in IPIP database: {ip}") from exc
        if not info:
            raise IpNotFoundError(f"IP not found in IPIP database: {ip}")
        return self._normalize_payload(ip, info)

    @staticmethod
    def _normalize_payload(ip: str, info: dict[str, str]) -> GeoRecord:
        record = GeoRecord(
            ip=ip,
            country=CountryInfo(
                iso_code=info.get("country_code") or "",
                name=info.get("country_name") or "",
            ),
        )

        city_name = info.get("city_name") or ""
        if city_name:
            region_name = info.get("region_name") or ""
            record.city = CityInfo(name=city_name, name_zh=f"{region_name}{city_name}" if region_name else "")

        if info.get("continent_code"):
            record.continent = ContinentInfo(code=info["continent_code"])

        if info.get("latitude") or info.get("longitude"):
            record.location = LocationInfo(
                latitude=info.get("latitude"),
                longitude=info.get("longitude"),
                time_zone=info.get("timezone") or "",
            )
        return record

    async def reload(self, db_path: str) -> None:
        reader = await asyncio.to_thread(self._open, db_path)
        self._handle.swap(reader)
        self._db_path = db_path

    def close(self) -> None:
        self._handle.close()
