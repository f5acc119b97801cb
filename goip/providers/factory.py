from collections.abc import Callable

from goip.config import ProviderConfig
from goip.models.request_models import ProviderKind
from goip.providers.base import BaseGeoProvider
from goip.providers.ip_api_co import IpApiCoProvider
from goip.providers.ip_api_com import IpApiComProvider
from goip.providers.ipinfo import IpInfoProvider
from goip.providers.ipip import IpipProvider
from goip.providers.maxmind import MaxMindProvider


class ProviderFactory:
    """Factory for geolocation providers.

    Given a ProviderConfig, returns a concrete provider instance. File-backed
    kinds open their database here, so a missing or corrupt file fails startup.
    """

    PROVIDERS_MAP: dict[ProviderKind, Callable[[ProviderConfig], BaseGeoProvider]] = {
        ProviderKind.maxmind: lambda config: MaxMindProvider(config.db_path),
        ProviderKind.ipip: lambda config: IpipProvider(config.db_path),
        ProviderKind.ip_api: lambda config: IpApiComProvider(),
        ProviderKind.ipinfo: lambda config: IpInfoProvider(),
        ProviderKind.ipapi_co: lambda config: IpApiCoProvider(),
    }

    def __call__(self, config: ProviderConfig) -> BaseGeoProvider:
        build = self.PROVIDERS_MAP[config.kind]
        return build(config)
