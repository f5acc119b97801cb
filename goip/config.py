import os
import re
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, ValidationError, ValidationInfo, field_validator, model_validator

from goip.errors import ConfigError
from goip.models.request_models import ProviderKind

CONFIG_ENV_VAR = "GOIP_CONFIG"
CONFIG_SEARCH_PATHS = (
    Path("config.yaml"),
    Path("config") / "config.yaml",
    Path("/etc/goip/config.yaml"),
)

# Environment variable -> dotted settings path. Environment wins over the file.
ENV_BINDINGS: dict[str, str] = {
    "SERVER_PORT": "server.port",
    "SERVER_READ_TIMEOUT": "server.read_timeout",
    "SERVER_WRITE_TIMEOUT": "server.write_timeout",
    "SERVER_SHUTDOWN_TIMEOUT": "server.shutdown_timeout",
    "MAXMIND_DB_PATH": "maxmind.db_path",
    "REDIS_HOST": "redis.host",
    "REDIS_PORT": "redis.port",
    "REDIS_PASSWORD": "redis.password",
    "REDIS_DB": "redis.db",
    "REDIS_POOL_SIZE": "redis.pool_size",
    "REDIS_MIN_IDLE_CONNS": "redis.min_idle_conns",
    "REDIS_MAX_RETRIES": "redis.max_retries",
    "REDIS_DIAL_TIMEOUT": "redis.dial_timeout",
    "REDIS_READ_TIMEOUT": "redis.read_timeout",
    "REDIS_WRITE_TIMEOUT": "redis.write_timeout",
    "CACHE_ENABLED": "cache.enabled",
    "CACHE_TTL": "cache.ttl",
    "RATE_LIMIT_ENABLED": "rate_limit.enabled",
    "RATE_LIMIT_RPM": "rate_limit.requests_per_minute",
    "RATE_LIMIT_RPH": "rate_limit.requests_per_hour",
    "RATE_LIMIT_BURST": "rate_limit.burst",
    "RATE_LIMIT_STORAGE": "rate_limit.storage",
    "BATCH_MAX_SIZE": "batch.max_size",
    "LOG_LEVEL": "log.level",
    "LOG_FORMAT": "log.format",
}

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0, None: 1.0}


def parse_duration(value: Any) -> float:
    """Convert `3s`, `500ms`, `5m`, `24h` or a bare number of seconds into seconds."""
    if isinstance(value, bool):
        raise ValueError(f"invalid duration: {value!r}")
    if isinstance(value, int | float):
        return float(value)
    match = _DURATION_RE.match(str(value))
    if not match:
        raise ValueError(f"invalid duration: {value!r}")
    number, unit = match.groups()
    return float(number) * _DURATION_UNITS[unit]


class _DurationModel(BaseModel):
    """Base for sections whose `*_timeout` / `ttl` fields accept duration strings."""

    @field_validator("*", mode="before")
    @classmethod
    def _parse_durations(cls, value: Any, info: ValidationInfo) -> Any:
        if info.field_name.endswith("timeout") or info.field_name == "ttl":
            return parse_duration(value)
        return value


class ServerConfig(_DurationModel):
    host: str = "0.0.0.0"
    port: int = Field(default=8080, ge=1, le=65535)
    read_timeout: float = 10.0
    write_timeout: float = 10.0
    shutdown_timeout: float = 30.0


class RedisConfig(_DurationModel):
    host: str = "localhost"
    port: int = 6379
    password: str = ""
    db: int = 0
    pool_size: int = Field(default=10, ge=1)
    max_retries: int = Field(default=3, ge=0)
    dial_timeout: float = 5.0
    read_timeout: float = 3.0
    # Accepted but unused: redis-py opens pool connections lazily and has a single socket timeout.
    min_idle_conns: int = 5
    write_timeout: float = 3.0


class CacheConfig(_DurationModel):
    enabled: bool = True
    ttl: float = 24 * 3600.0


class RateLimitConfig(BaseModel):
    enabled: bool = True
    requests_per_minute: int = Field(default=100, ge=0)
    requests_per_hour: int = Field(default=5000, ge=0)
    # Accepted for compatibility with existing deployment files; admission uses the window limits only.
    burst: int = 10
    storage: Literal["redis", "memory"] = "redis"


class BatchConfig(BaseModel):
    max_size: int = Field(default=100, ge=1, le=1000)


class LogConfig(BaseModel):
    level: Literal["debug", "info", "warning", "error", "critical"] = "info"
    format: Literal["console", "plain"] = "console"

    @field_validator("level", "format", mode="before")
    @classmethod
    def _lower(cls, value: Any) -> Any:
        return value.lower() if isinstance(value, str) else value


class ProviderConfig(BaseModel):
    kind: ProviderKind
    db_path: str = ""
    priority: int = 0
    region: Literal["cn", "global", "all", ""] = ""

    @model_validator(mode="after")
    def _require_db_path(self) -> "ProviderConfig":
        if self.kind in (ProviderKind.maxmind, ProviderKind.ipip) and not self.db_path:
            raise ValueError(f"provider {self.kind.value} requires db_path")
        return self


class MaxMindConfig(BaseModel):
    """Legacy single-provider setting, used when `providers` is empty."""

    db_path: str = "./data/GeoLite2-City.mmdb"


class Settings(BaseModel):
    server: ServerConfig = ServerConfig()
    redis: RedisConfig = RedisConfig()
    cache: CacheConfig = CacheConfig()
    rate_limit: RateLimitConfig = RateLimitConfig()
    batch: BatchConfig = BatchConfig()
    log: LogConfig = LogConfig()
    maxmind: MaxMindConfig = MaxMindConfig()
    providers: list[ProviderConfig] = Field(default_factory=list)

    @model_validator(mode="after")
    def _legacy_provider(self) -> "Settings":
        if not self.providers:
            if not self.maxmind.db_path:
                raise ValueError("at least one provider (or maxmind.db_path) is required")
            self.providers = [ProviderConfig(kind=ProviderKind.maxmind, db_path=self.maxmind.db_path)]
        return self

    @classmethod
    def load(cls, path: str | Path | None = None, environ: dict[str, str] | None = None) -> "Settings":
        """Load settings with precedence environment > file > defaults."""
        environ = os.environ if environ is None else environ
        data = _read_config_file(_resolve_config_path(path, environ))
        _apply_env_overrides(data, environ)
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            raise ConfigError(f"invalid configuration: {exc}") from exc


def _resolve_config_path(path: str | Path | None, environ: dict[str, str]) -> Path | None:
    if path is not None:
        return Path(path)
    if environ.get(CONFIG_ENV_VAR):
        return Path(environ[CONFIG_ENV_VAR])
    for candidate in CONFIG_SEARCH_PATHS:
        if candidate.exists():
            return candidate
    return None


def _read_config_file(path: Path | None) -> dict[str, Any]:
    # A missing file is fine: environment variables and defaults still apply.
    if path is None or not path.exists():
        return {}
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"failed to read config file {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"config file {path} must contain a mapping at the top level")
    return data


def _apply_env_overrides(data: dict[str, Any], environ: dict[str, str]) -> None:
    for env_name, dotted in ENV_BINDINGS.items():
        value = environ.get(env_name)
        if value is None or value == "":
            continue
        section, key = dotted.split(".")
        target = data.setdefault(section, {})
        if not isinstance(target, dict):
            raise ConfigError(f"config section {section!r} must be a mapping")
        target[key] = value
