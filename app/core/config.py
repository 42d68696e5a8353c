from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # PostgreSQL
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_user: str = "lv_user"
    postgres_password: str = "changeme"
    postgres_db: str = "llm_visibility"

    @property
    def postgres_url(self) -> str:
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def postgres_url_sync(self) -> str:
        """For Alembic migrations (sync driver)."""
        return (
            f"postgresql+psycopg2://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    # Redis (Celery broker + result backend)
    redis_url: str = "redis://localhost:6379/0"

    # Signal analyzer (OpenAI chat completions)
    openai_api_key: str = ""
    analyzer_model: str = "gpt-4o-mini"
    openai_api_url: str = "https://api.openai.com/v1/chat/completions"

    # Monitoring task provider (outbound submissions, inbound completion webhooks)
    task_provider_url: str = "https://api.cloro.dev/v1/monitor"
    task_provider_api_key: str = ""
    task_provider_timeout_seconds: float = 30.0
    task_webhook_url: str = ""  # public URL of POST /api/v1/webhooks/completion

    # Shared secret for cron/batch triggers (Authorization: Bearer <secret>)
    cron_secret: str = "change-this-cron-secret"

    # Completion pipeline
    max_task_retries: int = 3
    enrichment_timeout_seconds: float = 10.0
    completion_budget_seconds: float = 60.0
    domain_cache_ttl_seconds: int = 6 * 3600

    # Batch reconciliation
    reconcile_page_size: int = 1000
    backfill_concurrency: int = 10
    backfill_max_attempts: int = 3
    backfill_retry_base_seconds: float = 5.0
    reconcile_interval_minutes: int = 15

    # Chart snapshots
    chart_stale_hours: int = 24
    chart_precompute_hour: int = 2  # UTC

    # App
    app_env: str = "development"
    app_debug: bool = True
    app_host: str = "0.0.0.0"
    app_port: int = 8000

    # CORS
    allowed_origins: str = "*"  # comma-separated

    # Logging
    log_level: str = "INFO"
    log_json: bool = False  # set True in production for structured JSON logs

    # Sentry
    sentry_dsn: str = ""  # leave empty to disable


settings = Settings()


def validate_settings_for_production() -> None:
    """Validate critical settings. Called on startup in non-test environments."""
    errors: list[str] = []

    if settings.cron_secret in ("change-this-cron-secret", ""):
        if settings.app_env == "production":
            errors.append("CRON_SECRET must be set to a secure random value")
    elif len(settings.cron_secret) < 16:
        errors.append("CRON_SECRET must be at least 16 characters")

    if settings.max_task_retries < 0:
        errors.append("MAX_TASK_RETRIES must be >= 0")

    if settings.reconcile_page_size < 1 or settings.reconcile_page_size > 1000:
        errors.append("RECONCILE_PAGE_SIZE must be between 1 and 1000")

    if settings.app_env == "production":
        if not settings.openai_api_key:
            errors.append("OPENAI_API_KEY must be set in production (signal extraction)")
        if not settings.task_provider_api_key:
            errors.append("TASK_PROVIDER_API_KEY must be set in production (task resubmission)")
        if settings.allowed_origins == "*":
            errors.append("ALLOWED_ORIGINS must not be '*' in production")
        if settings.app_debug:
            errors.append("APP_DEBUG must be false in production")

    if errors:
        raise SystemExit("Configuration errors:\n  - " + "\n  - ".join(errors))
