from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional
import json
import os
import logging
from pathlib import Path

# Set up logging
logger = logging.getLogger(__name__)

# Config file location
CONFIG_DIR = Path(os.environ.get("CONFIG_DIR", "/config"))
CONFIG_FILE = CONFIG_DIR / "settings.json"

DEFAULT_FEED_API_URL = "https://www.googleapis.com/youtube/v3"


class SourceConfig(BaseModel):
    """A tracked external channel."""
    source_id: str
    display_name: str


# Channels tracked by default
DEFAULT_SOURCES = [
    SourceConfig(source_id="UCxxnxya_32jcKj4yN1_kD7A", display_name="Muse Indonesia"),
    SourceConfig(source_id="UC0wNSTMWIL3qaorLx0jie6A", display_name="Ani-One Asia"),
    SourceConfig(source_id="UCGbshtvS9t-8CW11W7TooQg", display_name="Muse Asia"),
]


class CatalogSettings(BaseModel):
    """User-configurable feed and reconciliation settings."""
    feed_api_url: str = DEFAULT_FEED_API_URL
    feed_api_key: str = ""
    sources: list[SourceConfig] = Field(default_factory=lambda: [s.model_copy() for s in DEFAULT_SOURCES])
    # HTTP behaviour of the feed client
    request_timeout: float = 10.0  # Seconds per call
    page_size: int = 50  # Provider maximum for list endpoints
    statistics_batch_size: int = 50  # Provider maximum IDs per statistics call
    fetch_statistics: bool = True  # When False, view counts are recorded as zero
    max_retries: int = 0  # 0 = single attempt per call
    retry_backoff_seconds: float = 1.0  # Base delay, doubled on each retry
    # Reconciliation pacing and schedule
    group_delay_seconds: float = 2.0  # Pause between playlists to go easy on the API quota
    reconciliation_interval_hours: int = 12
    run_on_startup: bool = True
    # Backend log level: DEBUG, INFO, WARNING, ERROR, CRITICAL
    backend_log_level: str = "INFO"

    def is_configured(self) -> bool:
        return bool(self.feed_api_key and self.sources)


class EnvironmentSettings(BaseSettings):
    """Process settings from environment (for container config)."""
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    database_url: str = ""
    youtube_api_key: str = ""
    log_level: str = "INFO"


# In-memory cache of settings
_cached_settings: Optional[CatalogSettings] = None


def get_environment() -> EnvironmentSettings:
    """Read environment settings (and .env) fresh on each call."""
    return EnvironmentSettings()


def ensure_config_dir():
    """Ensure config directory exists."""
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    logger.debug(f"Ensured config directory exists: {CONFIG_DIR}")


def _apply_environment(settings: CatalogSettings) -> CatalogSettings:
    """Fill the API key from the environment when the file does not set one."""
    if not settings.feed_api_key:
        env_key = get_environment().youtube_api_key
        if env_key:
            settings = settings.model_copy(update={"feed_api_key": env_key})
    return settings


def load_settings() -> CatalogSettings:
    """Load settings from file or return defaults."""
    global _cached_settings

    if _cached_settings is not None:
        return _cached_settings

    logger.info(f"Loading settings from {CONFIG_FILE}")

    if CONFIG_FILE.exists():
        try:
            data = json.loads(CONFIG_FILE.read_text())
            _cached_settings = _apply_environment(CatalogSettings(**data))
            logger.info(f"Loaded settings successfully, configured: {_cached_settings.is_configured()}")
            return _cached_settings
        except Exception as e:
            logger.error(f"Failed to load settings from {CONFIG_FILE}: {e}")

    logger.info("Using default settings (no config file found or failed to parse)")
    _cached_settings = _apply_environment(CatalogSettings())
    return _cached_settings


def save_settings(settings: CatalogSettings) -> None:
    """Save settings to file."""
    global _cached_settings

    ensure_config_dir()

    try:
        settings_json = json.dumps(settings.model_dump(), indent=2)
        CONFIG_FILE.write_text(settings_json)
        _cached_settings = settings
        logger.info(f"Settings saved to {CONFIG_FILE}")
    except Exception as e:
        logger.error(f"Failed to save settings to {CONFIG_FILE}: {e}")
        raise


def clear_settings_cache() -> None:
    """Clear the cached settings (forces reload)."""
    global _cached_settings
    _cached_settings = None
    logger.info("Settings cache cleared")


def get_settings() -> CatalogSettings:
    """Get the current catalog settings."""
    return load_settings()


def set_log_level(level: str) -> None:
    """Set the logging level for all loggers dynamically."""
    level_upper = level.upper()

    valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
    if level_upper not in valid_levels:
        logger.warning(f"Invalid log level '{level}', using INFO")
        level_upper = "INFO"

    numeric_level = getattr(logging, level_upper)

    logging.getLogger().setLevel(numeric_level)
    for logger_name in logging.root.manager.loggerDict:
        logging.getLogger(logger_name).setLevel(numeric_level)
    # httpx logs request URLs, which carry the feed API key
    logging.getLogger("httpx").setLevel(max(numeric_level, logging.WARNING))

    logger.info(f"Log level set to {level_upper}")
