"""Configuration settings for the bookvault backend."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment (or ``.env``)."""

    # Supabase. SUPABASE_SECRET_KEY wins over the legacy service role key.
    supabase_url: str
    supabase_secret_key: str | None = None
    supabase_service_role_key: str | None = None

    # Bearer tokens; the ``sub`` claim is the owner id
    jwt_secret_key: str
    jwt_algorithm: str = "HS256"
    jwt_expire_minutes: int = 60 * 24 * 30

    # Requests above the batch cap are rejected with 400
    max_batch_size: int = 100
    max_pull_limit: int = 500
    max_import_records: int = 10_000

    debug: bool = False
    log_level: str = "INFO"
    cors_origins: list[str] = ["http://localhost:3000", "http://127.0.0.1:3000"]

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"


@lru_cache
def get_settings() -> Settings:
    return Settings()
