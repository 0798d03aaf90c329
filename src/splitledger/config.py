"""Configuration management for SplitLedger."""

from decimal import Decimal
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigurationError


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="SPLITLEDGER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Money settings
    currency_exponent: int = 2  # minor units per major unit = 10 ** exponent
    percentage_tolerance: Decimal = Decimal("0.01")

    # CLI defaults
    default_group: str = "default"

    # Database path
    database_path: Path = Path.home() / ".splitledger" / "ledger.db"

    def __init__(self, **kwargs):
        """Initialize settings and create database directory if needed."""
        super().__init__(**kwargs)
        self.database_path.parent.mkdir(parents=True, exist_ok=True)


def load_settings() -> Settings:
    """Load application settings from environment variables."""
    try:
        return Settings()
    except Exception as e:
        raise ConfigurationError(
            f"Failed to load settings. Check your SPLITLEDGER_* environment "
            f"variables or .env file.\n"
            f"Error: {e}"
        ) from e
