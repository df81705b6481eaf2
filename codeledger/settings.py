"""Application settings and configuration."""

from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

from .policy import REDEMPTION_REWARD_POINTS


class Settings(BaseSettings):
    """Application configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "codeledger"
    env: str = "development"
    log_level: str = "INFO"
    log_format: Literal["console", "json"] = "console"
    allowed_origins: str = "http://localhost:3000"

    # Storage
    storage_backend: Literal["memory", "mongo"] = "memory"
    mongodb_url: str = "mongodb://localhost:27017"
    database_name: str = "codeledger"
    mongo_timeout_ms: int = 5000
    mongo_transactions: bool = True  # requires a replica set

    # Admin auth
    admin_key: Optional[str] = None  # compared directly in development/test
    admin_key_hash: Optional[str] = None  # sha256 hex digest, used elsewhere

    # Rewards
    redemption_reward_points: int = REDEMPTION_REWARD_POINTS


# Global settings instance
settings = Settings()
