from dataclasses import dataclass

from goip.errors import (
    AllProvidersFailedError,
    AppError,
    InvalidIpError,
    IpNotFoundError,
    NoProvidersError,
    ProviderNotFoundError,
)
from goip.logger import logger
from goip.models.common import GeoRecord
from goip.models.request_models import ProviderKind
from goip.providers.base import BaseGeoProvider, parse_ip

PROBE_KIND = ProviderKind.maxmind.value
CHINA_KIND = ProviderKind.ipip.value


@dataclass(frozen=True)
class ProviderEntry:
    provider: BaseGeoProvider
    priority: int = 0
    region: str = ""  # cn, global, all


def has_city_info(record: GeoRecord) -> bool:
    """A record is complete when it carries any city name."""
    return bool(record.city.name or record.city.name_zh)


class MultiProviderResolver:
    """Routes each lookup to the best-fit provider and falls back on incomplete answers.

    Policy for `lookup`:
      1. Ask the MaxMind provider (if configured) for the country; its failure is tolerated.
      2. Mainland China (CN) uses IPIP as the primary provider, everything else uses MaxMind.
      3. If the primary answer has no city, try the remaining providers in priority
         order and return the first answer that has one.
      4. Otherwise return the primary answer (country-only is acceptable).

    Providers are sorted once at construction and never mutated afterwards, so
    lookups need no synchronization.
    """

    def __init__(self, entries: list[ProviderEntry]) -> None:
        if not entries:
            raise NoProvidersError("no providers configured")
        self._entries: tuple[ProviderEntry, ...] = tuple(sorted(entries, key=lambda entry: entry.priority))

    def list_kinds(self) -> list[str]:
        """Distinct provider kinds in priority order."""
        return list(dict.fromkeys(entry.provider.kind for entry in self._entries))

    def _get_provider(self, kind: str) -> BaseGeoProvider | None:
        for entry in self._entries:
            if entry.provider.kind == kind:
                return entry.provider
        return None

    async def lookup(self, ip: str) -> GeoRecord:
        parse_ip(ip)
        errors: list[Exception] = []

        probe_record: GeoRecord | None = None
        probe = self._get_provider(PROBE_KIND)
        if probe is not None:
            probe_record = await self._try_provider(probe, ip, errors)

        country_code = probe_record.country.iso_code if probe_record is not None else ""
        if country_code == "CN":
            primary_kind = CHINA_KIND
            china = self._get_provider(CHINA_KIND)
            primary_record = await self._try_provider(china, ip, errors) if china is not None else None
        else:
            primary_kind = PROBE_KIND
            primary_record = probe_record

        if primary_record is not None and has_city_info(primary_record):
            return primary_record

        fallback_record: GeoRecord | None = None
        for entry in self._entries:
            if entry.provider.kind == primary_kind:
                continue
            if entry.provider is probe:
                # Already asked during routing.
                record = probe_record
            else:
                record = await self._try_provider(entry.provider, ip, errors)
            if record is None:
                continue
            if has_city_info(record):
                logger.debug(
                    f"Primary provider lacked city data, using fallback ip={ip} "
                    f"primary={primary_kind} provider={record.provider}"
                )
                return record
            if fallback_record is None:
                fallback_record = record

        if primary_record is not None:
            return primary_record
        if fallback_record is not None:
            return fallback_record

        if errors and all(isinstance(error, IpNotFoundError) for error in errors):
            raise IpNotFoundError(f"IP not found by any provider: {ip}")
        raise AllProvidersFailedError(f"all providers failed to lookup IP {ip}", errors)

    async def _try_provider(self, provider: BaseGeoProvider, ip: str, errors: list[Exception]) -> GeoRecord | None:
        """Ask one provider; failures are recorded and reported as None so the policy can continue."""
        try:
            record = await provider.lookup(ip)
        except InvalidIpError:
            raise
        except AppError as exc:
            logger.debug(f"Provider lookup failed ip={ip} provider={provider.kind} error={exc!r}")
            errors.append(exc)
            return None
        except Exception as exc:
            logger.warning(f"Provider lookup raised unexpectedly ip={ip} provider={provider.kind} error={exc!r}")
            errors.append(exc)
            return None
        return self._stamp(record, ip, provider.kind)

    @staticmethod
    def _stamp(record: GeoRecord, ip: str, kind: str) -> GeoRecord:
        return record.model_copy(update={"ip": ip, "provider": kind})

    async def lookup_with(self, ip: str, kind: str) -> GeoRecord:
        """Ask the named provider directly, bypassing the routing policy."""
        provider = self._get_provider(kind)
        if provider is None:
            raise ProviderNotFoundError(f"provider not found: {kind}")
        record = await provider.lookup(ip)
        return self._stamp(record, ip, kind)

    async def reload(self, kind: str, db_path: str) -> None:
        provider = self._get_provider(kind)
        if provider is None:
            raise ProviderNotFoundError(f"provider not found: {kind}")
        await provider.reload(db_path)
        logger.info(f"Provider database reloaded provider={kind} db_path={db_path}")

    def close(self) -> None:
        """Close every provider, raising the collected failures together."""
        errors: list[Exception] = []
        for entry in self._entries:
            try:
                entry.provider.close()
            except Exception as exc:
                errors.append(exc)
        if errors:
            raise ExceptionGroup("failed to close providers", errors)
