from enum import Enum

from pydantic import BaseModel, Field, field_validator


class ProviderKind(str, Enum):
    """Supported IP geolocation providers."""

    maxmind = "maxmind"
    ipip = "ipip"
    ip_api = "ip-api"
    ipinfo = "ipinfo"
    ipapi_co = "ipapi.co"


# Kinds answered by a remote HTTP API; every other kind reads a local database file.
API_PROVIDER_KINDS = frozenset({ProviderKind.ip_api.value, ProviderKind.ipinfo.value, ProviderKind.ipapi_co.value})


class BatchRequest(BaseModel):
    """Request body for batch lookups.

    The list must be non-empty. The upper bound is a runtime setting
    (`batch.max_size`) and is enforced by the endpoint, not by this model.
    Individual entries are not validated here: an unparseable IP is counted
    as a failed entry of the batch rather than rejecting the whole request.
    """

    ips: list[str] = Field(
        min_length=1,
        description="IPv4 or IPv6 addresses to look up.",
        examples=[["8.8.8.8", "1.1.1.1"]],
    )

    @field_validator("ips", mode="after")
    @classmethod
    def _strip_ips(cls, value: list[str]) -> list[str]:
        return [ip.strip() for ip in value]


class InvalidateRequest(BaseModel):
    """Request body for cache invalidation."""

    ips: list[str] = Field(
        min_length=1,
        description="IP addresses whose cached records should be dropped.",
        examples=[["8.8.8.8"]],
    )
