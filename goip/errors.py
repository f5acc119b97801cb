class AppError(Exception):
    """Base application error for the IP geolocation service."""


class ConfigError(AppError):
    """Raised when the configuration cannot be loaded or is invalid."""


class IpProviderError(AppError):
    """Base error for IP geolocation provider failures."""


class InvalidIpError(IpProviderError):
    """Raised when the supplied IP address is syntactically invalid."""


class IpNotFoundError(IpProviderError):
    """Raised when no geolocation information is found for the IP."""


class ReservedIpError(IpNotFoundError):
    """Raised when a provider flags the IP as reserved/private (e.g. 127.0.0.1, 192.168.x.x)."""


class ProviderNotFoundError(IpProviderError):
    """Raised when a lookup names a provider kind that is not configured."""


class ProviderUnavailableError(IpProviderError):
    """Raised when a provider has been closed and can no longer serve lookups."""


class UpstreamServiceError(IpProviderError):
    """Raised when the upstream IP provider fails."""


class NoProvidersError(IpProviderError):
    """Raised when the resolver is constructed without any provider."""


class AllProvidersFailedError(IpProviderError):
    """Raised when every configured provider failed to answer a lookup."""

    def __init__(self, message: str, errors: list[Exception] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or []


class CacheStoreError(AppError):
    """Raised when the shared cache store fails or times out."""


class InvalidRequestError(AppError):
    """Raised when a request body or parameter is malformed."""


class BatchTooLargeError(InvalidRequestError):
    """Raised when a batch request exceeds the configured maximum size."""


class RateLimitExceededError(AppError):
    """Raised when a client exceeds its request budget."""

    def __init__(self, retry_after: int, limit: int) -> None:
        super().__init__(f"Rate limit exceeded. Retry after {retry_after} seconds")
        self.retry_after = retry_after
        self.limit = limit
