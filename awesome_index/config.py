from typing import Annotated, Optional, Tuple

from dotenv import load_dotenv
from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict, SettingsError

from awesome_index.domain.exceptions import ConfigurationException, InvalidEntityIdException
from awesome_index.domain.models import EntityId


class Settings(BaseSettings):
    """Runtime configuration, read from the environment (and an optional .env file)."""
    model_config = SettingsConfigDict(frozen=True, env_ignore_empty=True)

    github_token: Optional[str] = None
    database_url: str
    memory_cache_ttl_seconds: float = Field(60, gt=0)
    document_refresh_ttl_seconds: float = Field(30 * 60, gt=0)
    refresh_interval_seconds: float = Field(5, ge=0)
    refresh_max_attempts: int = Field(3, ge=1)
    refresh_retry_base_seconds: float = Field(30, ge=0)
    # Comma separated list of repository URLs or owner/name pairs
    seed_lists: Annotated[Tuple[EntityId, ...], NoDecode] = ()
    log_level: str = "INFO"

    @field_validator("seed_lists", mode="before")
    @classmethod
    def _split_seed_lists(cls, value):
        if not isinstance(value, str):
            return value
        try:
            return tuple(EntityId.parse_ident(item) for item in value.split(",") if item.strip())
        except InvalidEntityIdException as e:
            raise ValueError(f"Invalid SEED_LISTS entry: {e}") from e


def load_settings(env_file: Optional[str] = None) -> Settings:
    """
    Builds Settings from environment variables after loading a .env file, if any.

    Raises:
        ConfigurationException: If DATABASE_URL is missing or a value is invalid.
    """
    load_dotenv(env_file)

    try:
        return Settings()
    except (ValidationError, SettingsError) as e:
        raise ConfigurationException(f"Invalid configuration: {e}") from e
