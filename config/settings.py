from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ExplorerSettings(BaseSettings):
    """Configuration for the explorer cache and its JSON API."""

    # Upstream indexing service
    ELECTRS_API: str = Field(
        default="http://127.0.0.1:50010",
        description="Base URL of the Electrs indexing service"
    )
    REQUEST_TIMEOUT: float = Field(
        default=10.0,
        gt=0,
        description="Timeout in seconds for a single upstream call"
    )

    # Update Manager
    UPDATE_INTERVAL: float = Field(
        default=10.0,
        gt=0,
        description="Seconds between two refresh cycles"
    )
    FRESHNESS_MULTIPLIER: float = Field(
        default=3.0,
        gt=1,
        description="Cache is stale after this many intervals without a successful cycle"
    )
    DEFAULT_BLOCK_TIME: float = Field(
        default=120.0,
        gt=0,
        description="Average block time used when fewer than two blocks are known"
    )
    DASHBOARD_BLOCKS: int = Field(
        default=15,
        gt=0,
        description="Number of recent blocks kept in the dashboard snapshot"
    )

    # Cache tiers
    LIVE_CACHE_MAX_SIZE: int = Field(default=100, gt=0)
    LIVE_CACHE_TTL: float = Field(default=60.0, gt=0)
    IMMUTABLE_CACHE_MAX_SIZE: int = Field(default=1000, gt=0)
    IMMUTABLE_CACHE_TTL: float = Field(default=3600.0, gt=0)

    # Statistics store
    STATS_DB_URL: str = Field(
        default="sqlite:///data/stats.db",
        description="SQLAlchemy URL of the statistics database"
    )
    STATS_RETENTION_DAYS: int = Field(default=90, gt=0)
    STATS_MAX_DAYS: int = Field(
        default=90,
        gt=0,
        description="Upper bound for the days parameter of the stats API"
    )

    # API
    LOG_LEVEL: str = Field(default="INFO")
    API_HOST: str = Field(default="0.0.0.0")
    API_PORT: int = Field(default=3000)

    @property
    def freshness_threshold(self) -> float:
        """Seconds after the last successful cycle before data counts as stale."""
        return self.UPDATE_INTERVAL * self.FRESHNESS_MULTIPLIER

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True
    )
