"""Settings for the nearfeed engine."""

from __future__ import annotations

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _env_field(default, *env_names: str):
    if env_names:
        alias = AliasChoices(*env_names) if len(env_names) > 1 else env_names[0]
        return Field(default=default, validation_alias=alias)
    return Field(default=default)


class Settings(BaseSettings):
    redis_url: str = _env_field("redis://localhost:6379/0", "REDIS_URL")
    # Prefix for every key the document store and offline queue touch
    store_namespace: str = _env_field("nearfeed", "STORE_NAMESPACE")

    # Geohash precision 7 gives cells of roughly 150m
    geohash_precision: int = _env_field(7, "GEOHASH_PRECISION")
    default_search_radius_km: float = _env_field(5.0, "DEFAULT_SEARCH_RADIUS_KM")
    # SearchContext rounding; 4 decimals is about 11m of latitude
    context_coordinate_decimals: int = 4
    context_radius_decimals: int = 2

    history_page_size: int = _env_field(20, "HISTORY_PAGE_SIZE")
    comments_page_size: int = _env_field(20, "COMMENTS_PAGE_SIZE")
    live_candidate_cap: int = _env_field(50, "LIVE_CANDIDATE_CAP")

    poll_interval_seconds: float = _env_field(30.0, "POLL_INTERVAL_SECONDS")
    poll_min_distance_m: float = _env_field(100.0, "POLL_MIN_DISTANCE_M")

    offline_retention_days: int = _env_field(7, "OFFLINE_RETENTION_DAYS")
    offline_storage_key: str = _env_field("nearfeed:offline_notes", "OFFLINE_STORAGE_KEY")

    post_max_length: int = 500
    comment_max_length: int = 280
    post_default_expiry_days: int = 7
    post_min_expiry_days: int = 1
    post_max_expiry_days: int = 30

    # Optimistic WATCH/MULTI retries before a batch gives up
    store_batch_retries: int = _env_field(5, "STORE_BATCH_RETRIES")

    environment: str = _env_field("production", "ENV", "APP_ENV", "ENVIRONMENT")
    obs_log_level: str = _env_field("INFO", "LOG_LEVEL")
    obs_log_sampling_rate_info: float = _env_field(1.0, "LOG_SAMPLING_RATE_INFO")
    service_name: str = _env_field("nearfeed", "SERVICE_NAME")
    git_commit: str = _env_field("unknown", "GIT_COMMIT", "COMMIT_SHA", "SOURCE_VERSION")
    anonymous_display_name: str = "Anonymous"

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        case_sensitive=False,
        env_nested_delimiter="__",
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator("obs_log_level", mode="before")
    def _normalise_level(cls, value):  # type: ignore[override]
        if value in (None, ""):
            return "INFO"
        return str(value).upper()

    @field_validator("geohash_precision")
    def _check_precision(cls, value: int) -> int:
        if not 1 <= value <= 12:
            raise ValueError("geohash_precision must be between 1 and 12")
        return value


settings = Settings()
