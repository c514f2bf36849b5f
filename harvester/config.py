from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Harvester settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database Configuration
    DATABASE_URL: str = "sqlite:///./harvester.db"
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20

    # Logging Configuration
    LOG_LEVEL: str = "INFO"

    # Comma-separated source group ids, e.g. "1203630@g.us,1203631@g.us"
    MONITORED_GROUPS: str = ""

    # Scheduler Configuration (crontab format: minute hour day month weekday)
    CRON_SCHEDULE: str = "*/5 * * * *"
    CLEANUP_SCHEDULE: str = "0 2 * * *"
    TIMEZONE: str = "Asia/Colombo"

    # Number of days to keep messages (<= 0 keeps them forever)
    RETENTION_DAYS: int = 30

    # Scraper Configuration
    MESSAGE_LIMIT: int = 100
    SCRAPE_MEDIA: bool = False
    MEDIA_PATH: str = "./data/media"
    GROUP_DELAY_SECONDS: float = 2.0
    SCRAPE_TIMEOUT_SECONDS: float = 300.0

    @property
    def monitored_groups(self) -> list[str]:
        return [g.strip() for g in self.MONITORED_GROUPS.split(",") if g.strip()]

    @property
    def retention_enabled(self) -> bool:
        return self.RETENTION_DAYS > 0


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every call.
    """
    return Settings()
