# casedispatch/config.py
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Literal


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    app_env: Literal["dev", "staging", "prod"] = "dev"
    log_level: str = "INFO"
    storage_backend: Literal["postgres", "memory"] = "postgres"
    enable_request_logging: bool = True

    # Database
    database_url: str | None = None
    pghost: str = "localhost"
    pgport: int = 5432
    pguser: str = "postgres"
    pgpassword: str = ""
    pgdatabase: str = "postgres"
    pg_pool_min: int = 2
    pg_pool_max: int = 20
    pg_command_timeout: int = 60
    run_migrations_on_startup: bool = True

    # Notifications (core only emits requests; delivery lives elsewhere)
    notifications_enabled: bool = True  # Master switch
    notification_lang: Literal["bg", "en"] = "bg"
    notification_max_attempts: int = 5

    # Provider queue / search
    queue_default_sort: Literal["newest", "oldest", "priority", "status"] = "newest"
    search_page_size_max: int = 100
    smart_match_default_limit: int = 10

    # Matching calibration
    # Weights are normalized by their sum, so they need not add up to 1.0,
    # but keep them stable across a deployment: scores are compared over time.
    match_weight_category: float = 0.25
    match_weight_location: float = 0.20
    match_weight_rating: float = 0.20
    match_weight_availability: float = 0.15
    match_weight_experience: float = 0.10
    match_weight_price: float = 0.05
    match_weight_response_time: float = 0.05

    match_related_category_credit: float = 0.6
    match_rating_prior_mean: float = 2.5       # neutral midpoint of the 0-5 scale
    match_rating_prior_weight: float = 10.0    # reviews needed to outweigh the prior
    match_availability_window_hours: float = 24.0
    match_availability_half_life_hours: float = 72.0
    match_experience_saturation_years: float = 5.0
    match_market_median_hourly_rate: float = 40.0
    match_price_tolerance: float = 0.25        # +-25% of the median when no budget given
    match_response_reference_minutes: float = 120.0

    @property
    def is_production(self) -> bool:
        return self.app_env == "prod"

    @property
    def is_staging(self) -> bool:
        return self.app_env == "staging"

    @property
    def database_dsn(self) -> str:
        if self.database_url:
            return self.database_url

        return (
            f"postgresql://{self.pguser}:{self.pgpassword}"
            f"@{self.pghost}:{self.pgport}/{self.pgdatabase}"
        )

    def validate_required_for_production(self) -> list[str]:
        """Validate that required settings exist for production"""
        if not self.is_production:
            return []

        missing = []
        if self.storage_backend == "postgres" and not self.database_url:
            missing.append("database_url")
        return missing


def warn_on_risky_config(s: "Settings") -> list[str]:
    warnings: list[str] = []

    if s.is_production and s.storage_backend == "memory":
        warnings.append("prod: storage_backend=memory (cases are lost on restart and not shared between workers).")

    if not s.notifications_enabled:
        warnings.append("notifications_enabled=False: customers and providers will not be told about case changes.")

    weights = (
        s.match_weight_category,
        s.match_weight_location,
        s.match_weight_rating,
        s.match_weight_availability,
        s.match_weight_experience,
        s.match_weight_price,
        s.match_weight_response_time,
    )
    if any(w < 0 for w in weights):
        warnings.append("matching: negative factor weight configured.")
    if sum(weights) <= 0:
        warnings.append("matching: all factor weights are zero, every provider scores 0.")

    return warnings


def validate_or_warn(s: "Settings") -> None:
    """
    In prod: enforce required settings (hard fail).
    In non-prod: warn only.
    """
    missing = s.validate_required_for_production()

    if missing:
        raise RuntimeError(f"Missing required settings for production: {', '.join(missing)}")

    from casedispatch.infra.logging_config import get_logger
    logger = get_logger(__name__)
    for msg in warn_on_risky_config(s):
        logger.warning(f"[config] {msg}")


settings = Settings()
