"""Application settings and configuration."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="REFERRAL_",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "referral-engine"
    env: str = "development"
    log_level: str = "INFO"
    log_format: str = Field(
        default="console",
        description="Log output format (console or json)",
    )

    # Database
    database_url: str = Field(
        default="sqlite:///./referral_engine.db",
        description="Database connection URL",
    )
    database_echo: bool = False

    # Code generation
    referral_code_prefix: str = "REF"
    reward_code_prefix: str = "SAVE"
    promo_code_prefix: str = "PROMO"
    code_length: int = Field(
        default=6,
        description="Number of random characters after the code prefix",
    )
    max_code_attempts: int = Field(
        default=10,
        description="Attempts before giving up on finding an unused code",
    )

    # Leaderboard
    leaderboard_limit: int = 10


# Global settings instance
settings = Settings()
