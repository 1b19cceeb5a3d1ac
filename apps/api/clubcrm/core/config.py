from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Club CRM API"
    app_env: str = "local"
    app_debug: bool = True
    api_port: int = 8000
    database_url: str = "sqlite+pysqlite:///./clubcrm.db"
    redis_url: str = "redis://redis:6379/0"
    jwt_secret: str = "replace-me"
    jwt_algorithm: str = "HS256"
    directory_url: str = ""
    directory_timeout_seconds: float = 10.0
    lead_feed_url: str = ""
    lead_feed_timeout_seconds: float = 20.0
    auto_sync_enabled: bool = False
    auto_sync_interval_hours: int = 12
    auto_sync_check_minutes: int = 30
    metrics_enabled: bool = False
    otel_enabled: bool = False

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", case_sensitive=False)


@lru_cache
def get_settings() -> Settings:
    return Settings()
