"""Application configuration managed via environment variables."""
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "HabitPilot Backend"
    debug: bool = False
    log_level: str = "INFO"
    database_url: str = "postgresql+psycopg2://habitpilot@localhost:5432/habitpilot"
    opik_enabled: bool = False
    opik_api_key: str | None = None
    opik_project: str = "habitpilot"

    # LLM provider
    openai_api_key: str | None = None
    llm_model: str = "gpt-4o-mini"
    llm_fallback_models: list[str] = ["gpt-4o"]
    llm_timeout_seconds: float = 30.0
    classifier_timeout_seconds: float = 10.0
    handler_timeout_seconds: float = 45.0
    emergency_timeout_seconds: float = 20.0

    # Dispatcher
    low_risk_crisis_ceiling: int = 1
    summarizer_threshold: int = 15
    background_workers: int = 4

    # Job queue
    job_base_delay_seconds: int = 120
    job_jitter_seconds: int = 20
    job_max_attempts: int = 30
    eval_job_max_attempts: int = 5
    job_lock_timeout_seconds: int = 600
    llm_retry_batch_default: int = 20
    llm_retry_batch_max: int = 200
    eval_batch_default: int = 5
    eval_batch_max: int = 50

    # Proactive messaging
    default_timezone: str = "Europe/Paris"
    daily_checkin_time: str = "20:00"
    quiet_window_minutes: int = 20
    proactive_throttle_max_sends: int = 2
    proactive_throttle_window_hours: int = 10
    channel_window_hours: int = 24
    pending_action_ttl_hours: int = 24
    proactive_batch_size: int = 50

    # Scheduler worker
    scheduler_enabled: bool = False
    scheduler_timezone: str = "UTC"
    job_queue_interval_seconds: int = 60
    proactive_interval_seconds: int = 60
    daily_checkin_producer_hour: int = 6
    jobs_run_on_startup: bool = False

    notifications_enabled: bool = False
    notifications_provider: str = "noop"


@lru_cache
def get_settings() -> Settings:
    """Return a cached Settings instance."""
    return Settings()


settings = get_settings()
