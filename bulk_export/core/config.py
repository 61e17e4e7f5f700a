# bulk_export/core/config.py

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from bulk_export.utils.logger import get_logger

logger = get_logger(__name__)


#
# =====================================================
#                    SETTINGS CLASS
# =====================================================
#


class Settings(BaseSettings):
    """
    Application Settings
    """

    model_config = SettingsConfigDict(
        env_file=".env", extra="ignore", case_sensitive=False
    )

    environment: str = "development"

    # Backing store holding the exportable collections
    database_url: str = "sqlite:///./bulk_export.db"

    # Rows requested per keyset page
    export_page_size: int = Field(512, gt=0)

    # Serialized chunks allowed in flight between an export and its response
    export_channel_buffer: int = Field(16, gt=0)

    # Pending progress events kept per subscriber before new ones are dropped
    progress_queue_size: int = Field(100, gt=0)

    # Logging configuration
    log_level: str = "INFO"
    log_json: bool = False

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")


@lru_cache
def get_settings() -> Settings:
    """Settings are read once per process."""
    settings = Settings()
    logger.info(
        "Loaded settings",
        environment=settings.environment,
        export_page_size=settings.export_page_size,
    )
    return settings
