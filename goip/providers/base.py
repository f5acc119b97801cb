from abc import ABC, abstractmethod

from goip.errors import InvalidIpError
from goip.models.common import GeoRecord
from goip.validator import is_valid_ip


def parse_ip(ip: str) -> str:
    """Return `ip` unchanged if it is an IPv4/IPv6 literal, otherwise raise InvalidIpError."""
    if not is_valid_ip(ip):
        raise InvalidIpError(f"invalid IP address: {ip!r}")
    return ip


class BaseGeoProvider(ABC):
    """Abstract base for all IP geolocation providers.

    Concrete implementations (MaxMind and IPIP database files, remote HTTP APIs)
    map backend-specific records into a normalized GeoRecord. Implementations
    must reject unparseable IPs before touching their backend, and must leave
    `provider` empty or set to their own `kind`: the resolver has the final say.
    """

    kind: str

    @abstractmethod
    async def lookup(self, ip: str) -> GeoRecord:
        """Look up geolocation information for an explicit IP address."""
        raise NotImplementedError

    @abstractmethod
    def close(self) -> None:
        """Release the backend. Idempotent; later lookups raise ProviderUnavailableError."""
        raise NotImplementedError

    async def reload(self, db_path: str) -> None:
        """Swap in a new backing database. Providers without a database file ignore this."""
        return None
