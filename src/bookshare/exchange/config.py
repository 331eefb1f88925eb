"""Configuration management for the exchange engine.

Loads configuration from environment variables and provides defaults.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Load .env file if present
load_dotenv()

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass
class Config:
    """Application configuration."""

    # Database
    db_path: Path

    # Notifications
    notify_debounce_seconds: float

    # Logging
    log_level: str
    log_json: bool

    @classmethod
    def from_env(cls) -> "Config":
        """Load configuration from environment variables."""
        db_path_str = os.environ.get(
            "BOOKSHARE_DB_PATH",
            str(Path.home() / ".bookshare" / "exchange.db"),
        )
        db_path = Path(db_path_str).expanduser()

        return cls(
            db_path=db_path,
            notify_debounce_seconds=float(
                os.environ.get("BOOKSHARE_NOTIFY_DEBOUNCE_SECONDS", "300")
            ),
            log_level=os.environ.get("BOOKSHARE_LOG_LEVEL", "INFO").upper(),
            log_json=os.environ.get("BOOKSHARE_LOG_JSON", "false").lower()
            in ("1", "true", "yes"),
        )

    def validate(self) -> list[str]:
        """Validate configuration, return list of errors."""
        errors = []

        # Check database directory is writable
        if not self.db_path.parent.exists():
            try:
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
            except PermissionError:
                errors.append(f"Cannot create database directory: {self.db_path.parent}")

        if self.notify_debounce_seconds < 0:
            errors.append("BOOKSHARE_NOTIFY_DEBOUNCE_SECONDS must not be negative")

        if self.log_level not in LOG_LEVELS:
            errors.append(f"Unknown log level: {self.log_level}")

        return errors


# Global config instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get or create the global config instance."""
    global _config
    if _config is None:
        _config = Config.from_env()
    return _config


def reset_config() -> None:
    """Reset the global config instance. Used for testing."""
    global _config
    _config = None
