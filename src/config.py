import os
from typing import Literal, Optional, get_args
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from src.domain.exceptions import ConfigurationException
from src.infrastructure.github_client import DEFAULT_API_URL

LogLevel = Literal["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"]
LOG_LEVELS = get_args(LogLevel)


class Settings(BaseModel):
    """Runtime settings, read from the environment (and a .env file if present)."""
    model_config = ConfigDict(frozen=True)

    database_url: str = Field(..., description="SQLAlchemy async URL, e.g. postgresql+asyncpg://...")
    github_token: Optional[str] = None
    github_api_url: str = DEFAULT_API_URL
    db_pool_size: int = Field(25, ge=1)
    db_max_overflow: int = Field(10, ge=0)
    log_level: LogLevel = "INFO"


def _env_int(key: str, default: int) -> int:
    value = os.getenv(key)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigurationException(f"{key} must be an integer, got {value!r}.")


def _log_level() -> str:
    value = (os.getenv("LOG_LEVEL") or "INFO").upper()
    if value not in LOG_LEVELS:
        raise ConfigurationException(f"LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}, got {value!r}.")
    return value


def load_settings() -> Settings:
    # Load environment variables from .env file
    load_dotenv()

    db_url = os.getenv("DATABASE_URL")
    if not db_url:
        raise ConfigurationException("DATABASE_URL is not set in the environment.")

    try:
        return Settings(
            database_url=db_url,
            github_token=os.getenv("GITHUB_TOKEN") or None,
            github_api_url=os.getenv("GITHUB_API_URL") or DEFAULT_API_URL,
            db_pool_size=_env_int("DB_POOL_SIZE", 25),
            db_max_overflow=_env_int("DB_MAX_OVERFLOW", 10),
            log_level=_log_level(),
        )
    except ValidationError as e:
        raise ConfigurationException(f"Invalid settings: {e}") from e
