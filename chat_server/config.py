"""Relay server settings, loaded from SECURECHAT_* environment variables."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ServerSettings(BaseSettings):
    """Configuration for the relay server."""

    model_config = SettingsConfigDict(env_prefix="SECURECHAT_", env_file=".env", extra="ignore")

    # JWT secret - override in production
    secret_key: str = Field(default="change-this-secret-in-production")
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 60 * 24

    database_url: str = "sqlite+aiosqlite:///./securechat.db"

    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"
