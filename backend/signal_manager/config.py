from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # DHIS2 instance that owns the program rules
    dhis2_base_url: str = ""
    dhis2_username: str = ""
    dhis2_password: str = ""
    dhis2_timeout: float = 20.0

    # Signal program / stage whose rules drive the form
    program_id: str = "iaN1DovM5em"
    program_stage_id: str = "Nnnqw1XKpZL"

    # Longest rule condition the API will hand to the evaluator
    max_condition_length: int = 2000

    log_level: str = "info"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


@lru_cache()
def get_settings() -> Settings:
    """Return a cached instance of the Settings object."""
    return Settings()
