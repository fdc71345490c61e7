"""Configuration management using environment variables and pydantic."""

from typing import List, Literal
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Telegram Configuration
    telegram_bot_token: str = ""

    # Geocoding Configuration (OpenStreetMap Nominatim)
    geocoder_base_url: str = "https://nominatim.openstreetmap.org"
    geocoder_user_agent: str = "TransitTrackerBot/1.0"

    # Transit Data Configuration (transport.rest HAFAS API)
    transit_api_base_url: str = "https://v5.db.transport.rest"
    transit_nearby_results: int = 8
    http_timeout_seconds: float = 15.0

    # Profile storage
    user_data_path: str = "data/users.json"

    # Tracking Configuration
    tracking_interval_choices: str = "1,2,3"
    keyboard_columns: int = 2

    # Logging Configuration
    log_level: str = "INFO"
    log_format: Literal["json", "text"] = "text"
    log_file_path: str = "logs/transit_tracker.log"
    log_max_size_mb: int = 100
    log_backup_count: int = 5

    # Development/Testing
    debug_mode: bool = False
    dry_run: bool = False

    @property
    def interval_choices(self) -> List[int]:
        """Polling intervals (minutes) offered to the user, sorted and de-duplicated."""
        choices = set()
        for part in self.tracking_interval_choices.split(","):
            part = part.strip()
            if part.isdecimal() and int(part) > 0:
                choices.add(int(part))
        return sorted(choices) or [1]


# Global settings instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get or create the global settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
