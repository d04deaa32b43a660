"""
Configuration module for the Ponzi market-data client.
Loads environment variables and provides settings for the application.
"""

from pathlib import Path
from typing import Optional
from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load .env file from project root
env_path = Path(__file__).parent.parent.parent / ".env"
load_dotenv(dotenv_path=env_path)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # API Keys
    iex_token: Optional[str] = Field(default=None, alias="IEX_TOKEN")

    # Cache storage
    cache_dir: Path = Field(
        default=Path.home() / ".cache" / "ponzi", alias="PONZI_CACHE_DIR"
    )

    # Feature flags
    enable_quote_cache: bool = Field(default=True, alias="ENABLE_QUOTE_CACHE")
    persist_quote_cache: bool = Field(default=True, alias="PERSIST_QUOTE_CACHE")
    enable_chart_cache: bool = Field(default=True, alias="ENABLE_CHART_CACHE")
    dump_api_responses: bool = Field(default=False, alias="DUMP_API_RESPONSES")
    dump_dir: Path = Field(default=Path("."), alias="DUMP_DIR")

    # Remote transport
    remote_url: Optional[str] = Field(default=None, alias="PONZI_REMOTE_URL")
    port: int = Field(default=1337, alias="PORT")

    # HTTP
    request_timeout: float = Field(default=30.0, alias="REQUEST_TIMEOUT")

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")


# Global settings instance
settings = Settings()
