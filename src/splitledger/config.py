"""Configuration management for SplitLedger."""

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigurationError


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="SPLITLEDGER_",
        case_sensitive=False,
        extra="ignore",
    )

    # Database path
    database_path: Path = Path.home() / ".splitledger" / "splitledger.db"

    # Currency for new groups (ISO 4217 code)
    default_currency: str = "USD"

    # Ledger policy
    allow_overpayment: bool = False  # Let a settlement flip the debt direction
    reconcile_epsilon: int = 0  # Minor units of drift tolerated by reconcile

    # Concurrency
    lock_timeout_seconds: float = 5.0
    busy_timeout_seconds: float = 5.0
    conflict_max_retries: int = 3
    conflict_backoff_seconds: float = 0.05

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
            f"Failed to load settings. Check the SPLITLEDGER_* environment "
            f"variables or your .env file.\n"
            f"Error: {e}"
        ) from e
