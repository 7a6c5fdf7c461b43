"""Client settings, loaded from SECURECHAT_* environment variables."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class ClientSettings(BaseSettings):
    """Configuration for the chat client."""

    model_config = SettingsConfigDict(env_prefix="SECURECHAT_", env_file=".env", extra="ignore")

    server_url: str = "http://localhost:8000"
    request_timeout: float = 10.0

    # Local key storage
    storage_dir: str = "client_data"
    key_namespace: str = "securechat"
    kdf_iterations: int = 100000

    poll_interval: float = 2.0
    log_level: str = "WARNING"
