"""Configuration for the weather federation service."""

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class FederationConfig(BaseSettings):
    """ActivityPub identity and inbox policy settings."""

    model_config = SettingsConfigDict(env_prefix="FED_")

    domain: str = Field(
        default="weather.gripe",
        description="Domain that hosts the location actors"
    )
    user_agent: str = Field(
        default="weather.gripe/1.0 (https://weather.gripe)",
        description="User-Agent for outbound federation requests"
    )
    strict_signatures: bool = Field(
        default=False,
        description="Reject inbox posts with missing or invalid HTTP signatures"
    )
    actor_cache_ttl_seconds: int = Field(
        default=3600,
        ge=0,
        description="How long fetched remote actor documents are cached (0 = no cache)"
    )

    @field_validator("domain")
    @classmethod
    def validate_domain(cls, v: str) -> str:
        """Accept a bare host even if given as a URL."""
        for scheme in ("https://", "http://"):
            if v.startswith(scheme):
                v = v[len(scheme):]
        return v.rstrip("/")


class DeliveryConfig(BaseSettings):
    """Fanout delivery and retry settings."""

    model_config = SettingsConfigDict(env_prefix="DELIVERY_")

    batch_size: int = Field(
        default=10,
        ge=1,
        le=100,
        description="Inboxes delivered to concurrently per batch"
    )
    max_retries: int = Field(
        default=3,
        ge=0,
        description="Retries after the initial attempt for transient failures"
    )
    retry_delays: list[float] = Field(
        default_factory=lambda: [1.0, 5.0, 15.0],
        description="Backoff delay in seconds before each retry attempt"
    )
    timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Per-request timeout for inbox POSTs"
    )
    queue_ttl_seconds: int = Field(
        default=3600,
        ge=60,
        description="Lifetime of a persisted retry job"
    )
    use_retry_queue: bool = Field(
        default=True,
        description="Persist transient failures to the store instead of retrying in-process"
    )
    drain_interval_seconds: int = Field(
        default=60,
        ge=0,
        description="Interval of the background queue drain loop (0 = disabled)"
    )

    @field_validator("retry_delays")
    @classmethod
    def validate_retry_delays(cls, v: list[float]) -> list[float]:
        """Require at least one non-negative delay."""
        if not v:
            raise ValueError("retry_delays must not be empty")
        if any(d < 0 for d in v):
            raise ValueError("retry_delays must be non-negative")
        return v

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (0-based), clamped to the schedule."""
        return self.retry_delays[min(attempt, len(self.retry_delays) - 1)]


class StoreConfig(BaseSettings):
    """Key-value store settings."""

    model_config = SettingsConfigDict(env_prefix="STORE_")

    url: str = Field(
        default="sqlite+aiosqlite:///weather_federation.db",
        description="SQLAlchemy database URL, or memory:// for an in-process store"
    )


class ServerConfig(BaseSettings):
    """HTTP server settings."""

    model_config = SettingsConfigDict(env_prefix="SERVER_")

    host: str = Field(
        default="0.0.0.0",
        description="Host address for HTTP server"
    )
    port: int = Field(
        default=8080,
        ge=1,
        le=65535,
        description="Port for HTTP server"
    )


class AppConfig(BaseSettings):
    """Main configuration combining all settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Sub-configs
    federation: FederationConfig = Field(default_factory=FederationConfig)
    delivery: DeliveryConfig = Field(default_factory=DeliveryConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)

    log_level: str = Field(
        default="INFO",
        description="Logging level"
    )

    @classmethod
    def from_yaml(cls, path: str) -> "AppConfig":
        """Load configuration from YAML file."""
        import yaml
        with open(path) as f:
            data = yaml.safe_load(f)
        return cls.model_validate(data or {})


def load_config() -> AppConfig:
    """Load configuration from environment and .env file."""
    return AppConfig()
