from pydantic import model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # App
    environment: str = "development"
    log_level: str = "INFO"
    log_format: str = "json"  # json | text
    allowed_origins: str = "http://localhost:3000,http://localhost:80,http://localhost"

    # Storage
    store_backend: str = "memory"  # memory | redis
    redis_url: str = "redis://localhost:6379/0"
    redis_namespace: str = "orchestration"

    # Single-algorithm executor service
    executor_url: str = "http://localhost:8100"
    executor_timeout: float = 60.0

    # Pipeline engine
    max_concurrent_pipelines: int = 50
    max_queue_size: int = 1000
    queue_poll_interval: float = 0.1  # seconds
    recent_results_limit: int = 500

    # Monitoring
    metrics_bucket_seconds: int = 10
    metrics_retention_days: int = 30
    max_metrics_per_algorithm: int = 10000
    resource_sample_interval: float = 10.0  # seconds
    response_time_ceiling_ms: float = 5000.0
    alert_cooldown_seconds: float = 60.0

    # A/B testing
    ab_analysis_interval: float = 300.0  # seconds

    # Registry
    deployment_environment: str = "development"
    deployment_smoke_test_timeout: float = 30.0

    model_config = {"env_file": ".env", "extra": "ignore"}

    @model_validator(mode="after")
    def _validate_production(self):
        if self.store_backend not in ("memory", "redis"):
            raise ValueError("STORE_BACKEND must be 'memory' or 'redis'")
        if self.environment == "production":
            if self.store_backend == "memory":
                raise ValueError(
                    "Production requires STORE_BACKEND=redis so registry and "
                    "assignments survive restarts"
                )
        if self.max_concurrent_pipelines < 1:
            raise ValueError("MAX_CONCURRENT_PIPELINES must be at least 1")
        return self


settings = Settings()
