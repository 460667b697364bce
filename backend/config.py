from datetime import UTC, datetime
from pathlib import Path

from pydantic_settings import BaseSettings

PROJECT_ROOT = Path(__file__).resolve().parent.parent


def utcnow() -> datetime:
    """Return the current UTC time as a naive datetime.

    Replaces the deprecated ``datetime.utcnow()`` while keeping datetimes
    naive so they stay compatible with SQLite (which doesn't store tz info).
    """
    return datetime.now(UTC).replace(tzinfo=None)


class Settings(BaseSettings):
    app_name: str = "Flashdeck"
    database_url: str = f"sqlite+aiosqlite:///{PROJECT_ROOT / 'data' / 'flashdeck.db'}"
    upload_dir: Path = PROJECT_ROOT / "uploads"
    cors_origins: list[str] = ["http://localhost:5173", "http://localhost:3000"]
    debug: bool = False

    # Scheduling
    default_requested_retention: float = 0.9
    default_maximum_interval: int = 36500
    new_card_probability: float = 0.7
    stats_cache_ttl_seconds: int = 300  # 5 minutes
    legacy_retry_minutes: int = 5
    legacy_follow_up_minutes: int = 30
    legacy_bonus_minutes: int = 5

    # APKG import
    import_batch_size: int = 100
    import_max_archive_bytes: int = 2 * 1024**3  # uncompressed
    import_gc_between_batches: bool = True
    import_session_ttl_seconds: int = 86400

    # Card chat
    anthropic_api_key: str = ""
    anthropic_model: str = "claude-sonnet-4-20250514"
    anthropic_max_retries: int = 3
    anthropic_rate_limit_rpm: int = 50
    llm_input_price_per_million: float = 3.0
    llm_output_price_per_million: float = 15.0

    model_config = {"env_prefix": "FLASHDECK_", "env_file": ".env"}


settings = Settings()
