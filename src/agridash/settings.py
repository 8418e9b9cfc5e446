from pathlib import Path
from typing import Annotated, Any, List, Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration."""

    api_base_url: str = "http://localhost:8000"
    request_timeout_seconds: float = 30.0
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    session_store: Literal["memory", "file", "redis"] = "file"
    session_store_path: Path = Path("data/session.json")
    redis_url: str | None = None
    session_key_prefix: str = "agridash:"

    # Share one in-flight refresh between requests that expire together.
    coalesce_refresh: bool = False

    filter_keys: Annotated[List[str], NoDecode] = ["country", "status", "crop_name"]

    mock_api_host: str = "127.0.0.1"
    mock_api_port: int = 8000
    mock_access_token_ttl_seconds: int = 300

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="AGRIDASH_",
        extra="ignore",
    )

    @field_validator("filter_keys", mode="before")
    @classmethod
    def parse_filter_keys(cls, v: Any) -> List[str]:
        """Accept a comma-separated string as well as a list."""
        if isinstance(v, str):
            return [key.strip() for key in v.split(",") if key.strip()]
        return v


def get_settings() -> Settings:
    """Return the application settings singleton (loaded from env / .env)."""
    global _SETTINGS
    try:
        return _SETTINGS
    except NameError:
        _SETTINGS = Settings()
        return _SETTINGS
