"""
Ingest configuration.

Settings come from three layers, lowest priority first: field defaults,
``CONFIG_DIR/settings.json``, and ``INGEST_*`` environment variables (or a
``.env`` file), so a container can pin any tunable without editing the file.
"""
import json
import logging
import os
from pathlib import Path
from typing import Optional

from pydantic import ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

CONFIG_DIR = Path(os.environ.get("CONFIG_DIR", "/config"))
CONFIG_FILE = CONFIG_DIR / "settings.json"
ARTIFACT_DIR = CONFIG_DIR / "job_artifacts"

VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class IngestSettings(BaseSettings):
    """Tunables for feed ingestion and chunked job processing."""
    # Chunk budget used when a caller does not pass one (ms)
    default_budget_ms: int = 8000
    # Stop starting new batches when less than this remains (ms)
    safety_margin_ms: int = 2000
    # Rows written per batch, per job family
    lineup_batch_size: int = 200
    channel_batch_size: int = 1000
    mapping_batch_size: int = 10
    # Sources advertising a length at or below this are fetched in one buffered request
    small_file_threshold_bytes: int = 50 * 1024 * 1024
    # Fail the fetch when no bytes arrive for this long (seconds)
    stall_timeout_seconds: float = 15.0
    connect_timeout_seconds: float = 15.0
    read_timeout_seconds: float = 300.0
    # Total fetch strategies tried before the source is declared corrupted
    max_fetch_attempts: int = 3
    # Largest decompressed document that may be held as one in-memory text
    max_text_bytes: int = 0x7FFFFFFF
    # Estimated document size used for download progress when length is unknown
    unknown_size_estimate_bytes: int = 600 * 1024 * 1024
    # Cached entity lists larger than this are written to an on-disk artifact
    inline_artifact_max_bytes: int = 8 * 1024 * 1024
    # Minimum spacing between download progress writes (ms)
    progress_throttle_ms: int = 500
    # Non-terminal jobs idle for longer than this are treated as abandoned (seconds)
    stale_job_seconds: int = 300
    # Terminal jobs are deleted after this many hours
    job_retention_hours: int = 24
    # How long a worker may hold the fetch lease on a job (seconds)
    fetch_lease_seconds: int = 600
    # Persistence failures tolerated before a job is failed
    max_persistence_retries: int = 3
    # Sweeper check interval (seconds)
    sweep_interval_seconds: int = 60
    user_agent: str = "IPTV-Playlist-Manager/1.0"
    # Backend log level: DEBUG, INFO, WARNING, ERROR, CRITICAL
    backend_log_level: str = "INFO"

    model_config = SettingsConfigDict(env_prefix="INGEST_", env_file=".env", extra="ignore")

    @classmethod
    def settings_customise_sources(
        cls, settings_cls, init_settings, env_settings, dotenv_settings, file_secret_settings
    ):
        # Environment beats the settings file, which arrives as init kwargs
        return env_settings, dotenv_settings, init_settings


_cached_settings: Optional[IngestSettings] = None


def load_settings(path: Path = None) -> IngestSettings:
    """Load settings from the settings file, falling back to defaults."""
    global _cached_settings
    if _cached_settings is not None:
        return _cached_settings

    path = path or CONFIG_FILE
    data = {}
    if path.exists():
        try:
            data = json.loads(path.read_text())
            logger.info("[CONFIG] Loaded ingest settings from %s", path)
        except (OSError, ValueError) as e:
            logger.error("[CONFIG] Ignoring unreadable settings file %s: %s", path, e)
            data = {}

    try:
        _cached_settings = IngestSettings(**data)
    except ValidationError as e:
        logger.error("[CONFIG] Invalid settings in %s, using defaults: %s", path, e)
        _cached_settings = IngestSettings()
    return _cached_settings


def save_settings(settings: IngestSettings, path: Path = None) -> None:
    """Write settings to the settings file and make them current."""
    global _cached_settings
    path = path or CONFIG_FILE
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(settings.model_dump(), indent=2))
    _cached_settings = settings
    logger.info("[CONFIG] Saved ingest settings to %s", path)


def clear_settings_cache() -> None:
    global _cached_settings
    _cached_settings = None


def get_settings() -> IngestSettings:
    return load_settings()


def get_log_level_from_env() -> str:
    """Get log level from environment variable or default to INFO."""
    return os.environ.get("LOG_LEVEL", "INFO").upper()


def set_log_level(level: str) -> str:
    """Apply ``level`` to the root logger and every known logger; returns the level used."""
    level_upper = (level or "").upper()
    if level_upper not in VALID_LOG_LEVELS:
        logger.warning("[CONFIG] Invalid log level '%s', using INFO", level)
        level_upper = "INFO"

    numeric_level = getattr(logging, level_upper)
    logging.getLogger().setLevel(numeric_level)
    for logger_name in list(logging.root.manager.loggerDict):
        logging.getLogger(logger_name).setLevel(numeric_level)

    logger.info("[CONFIG] Log level set to %s", level_upper)
    return level_upper
