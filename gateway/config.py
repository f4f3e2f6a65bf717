from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    debug: bool = False
    log_level: str = "INFO"

    # Rate limiting
    rate_limit_enabled: bool = True
    max_reports_per_day: int = 5
    cooldown_seconds: int = 30
    blacklist_violation_threshold: int = 10
    rate_limit_sweep_interval_seconds: float = 3600

    # Circuit breaker
    breaker_timeout_seconds: float = 10.0
    breaker_error_threshold_percentage: float = 50.0
    breaker_reset_timeout_seconds: float = 30.0
    breaker_volume_threshold: int = 5
    breaker_rolling_window_seconds: float = 10.0
    breaker_rolling_buckets: int = 10
    breaker_success_threshold: int = 1

    # Failed message retry queue
    retry_max_attempts: int = 10
    retry_backoff_seconds: float = 30.0
    retry_worker_enabled: bool = True
    retry_worker_interval_seconds: float = 60.0

    # Response cache
    cache_enabled: bool = True
    cache_max_size: int = 500
    cache_ttl_seconds: float = 1800

    # Message batching
    batch_delay_seconds: float = 3.0
    max_batch_size: int = 10

    # Conversation tracking
    context_ttl_seconds: float = 1800
    context_sweep_interval_seconds: float = 300

    # Downstream dependencies
    llm_api_key: str = ""
    llm_base_url: str = "https://api.openai.com/v1"
    llm_models: str = "gpt-4o-mini"
    llm_timeout_seconds: float = 60.0
    channel_service_url: str = ""
    internal_api_key: str = ""

    # Operator surface
    admin_token: str = ""
    alert_bot_token: str = ""
    alert_chat_id: str = ""

    class Config:
        env_file = ".env"
        extra = "ignore"

    @property
    def llm_model_list(self) -> list[str]:
        return [model.strip() for model in self.llm_models.split(",") if model.strip()]


settings = Settings()
