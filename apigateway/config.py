from __future__ import annotations

from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_PROD_ENV_NAMES = {"prod", "production"}
DEFAULT_JWT_SECRET = "change-me-in-production-not-a-real-secret"
_JWT_ALGORITHMS = {"HS256", "HS384", "HS512"}


class Settings(BaseSettings):
    app_name: str = Field(default="API Gateway")
    app_env: str = Field(default="dev")
    app_version: str = Field(default="1.0.0")

    log_level: str = Field(default="INFO")
    log_file: str = Field(default="")
    log_format: str = Field(default="text")

    server_host: str = Field(default="0.0.0.0")
    server_port: int = Field(default=3001)

    user_service_url: str = Field(default="http://localhost:3002")
    user_service_health_url: str = Field(default="")
    product_service_url: str = Field(default="http://localhost:3003")
    product_service_health_url: str = Field(default="")
    order_service_url: str = Field(default="http://localhost:3004")
    order_service_health_url: str = Field(default="")

    allowed_origins: str = Field(default="http://localhost:3000")
    rate_limit_window_seconds: int = Field(default=900)
    rate_limit_max_requests: int = Field(default=1000)
    max_body_bytes: int = Field(default=10 * 1024 * 1024)

    health_check_enabled: bool = Field(default=True)
    health_check_interval_seconds: float = Field(default=30.0)
    health_check_timeout_seconds: float = Field(default=5.0)
    proxy_timeout_seconds: float = Field(default=30.0)
    retry_after_seconds: int = Field(default=30)

    breaker_enabled: bool = Field(default=False)
    breaker_failure_threshold: int = Field(default=5)
    breaker_cooldown_seconds: float = Field(default=30.0)

    metrics_enabled: bool = Field(default=True)

    rest_host: str = Field(default="0.0.0.0")
    rest_port: int = Field(default=3000)
    rest_rate_limit_max_requests: int = Field(default=100)
    jwt_secret: str = Field(default=DEFAULT_JWT_SECRET)
    jwt_algorithm: str = Field(default="HS256")
    jwt_ttl_seconds: int = Field(default=24 * 60 * 60)
    auth_max_failures: int = Field(default=5)
    auth_window_seconds: int = Field(default=900)
    auth_lockout_seconds: int = Field(default=900)
    password_hash_time_cost: int = Field(default=5)
    password_hash_memory_kib: int = Field(default=65536)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @property
    def allowed_origin_list(self) -> list[str]:
        return [item.strip() for item in self.allowed_origins.split(",") if item.strip()]

    @property
    def is_production(self) -> bool:
        return self.app_env.strip().lower() in _PROD_ENV_NAMES

    @model_validator(mode="after")
    def validate_limits(self) -> "Settings":
        issues: list[str] = []
        if self.health_check_interval_seconds <= 0:
            issues.append("HEALTH_CHECK_INTERVAL_SECONDS must be positive.")
        if self.health_check_timeout_seconds <= 0:
            issues.append("HEALTH_CHECK_TIMEOUT_SECONDS must be positive.")
        if self.proxy_timeout_seconds <= 0:
            issues.append("PROXY_TIMEOUT_SECONDS must be positive.")
        if self.rate_limit_window_seconds <= 0:
            issues.append("RATE_LIMIT_WINDOW_SECONDS must be positive.")
        if self.rate_limit_max_requests <= 0:
            issues.append("RATE_LIMIT_MAX_REQUESTS must be positive.")
        if self.max_body_bytes <= 0:
            issues.append("MAX_BODY_BYTES must be positive.")
        if self.breaker_failure_threshold < 1:
            issues.append("BREAKER_FAILURE_THRESHOLD must be at least 1.")
        if self.log_format.strip().lower() not in {"text", "json"}:
            issues.append("LOG_FORMAT must be 'text' or 'json'.")
        if self.is_production and "*" in self.allowed_origin_list:
            issues.append("ALLOWED_ORIGINS must not contain '*' in production.")
        if self.rest_rate_limit_max_requests <= 0:
            issues.append("REST_RATE_LIMIT_MAX_REQUESTS must be positive.")
        if self.jwt_algorithm not in _JWT_ALGORITHMS:
            issues.append("JWT_ALGORITHM must be one of HS256, HS384, HS512.")
        if self.jwt_ttl_seconds <= 0:
            issues.append("JWT_TTL_SECONDS must be positive.")
        if self.is_production and self.jwt_secret == DEFAULT_JWT_SECRET:
            issues.append("JWT_SECRET must be changed in production.")
        if self.auth_max_failures < 1:
            issues.append("AUTH_MAX_FAILURES must be at least 1.")
        if self.password_hash_time_cost < 1:
            issues.append("PASSWORD_HASH_TIME_COST must be at least 1.")
        if self.password_hash_memory_kib < 8:
            issues.append("PASSWORD_HASH_MEMORY_KIB must be at least 8.")
        if issues:
            raise ValueError(" ".join(issues))
        return self


@lru_cache
def get_settings() -> Settings:
    return Settings()
