"""
Configuration utilities for the customs tax engine.
"""

import os
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv


class Config:
    """Configuration manager for the customs tax engine."""

    def __init__(self, env_file: Optional[str] = None) -> None:
        """Initialize configuration.

        If an env_file path is provided, load environment variables from it.
        Otherwise, do not auto-load a .env file to keep defaults predictable.
        """
        self.env_file = env_file
        self._load_environment()
        self._config = self._load_config()

    def _load_environment(self) -> None:
        """Load environment variables from explicit .env file if provided."""
        if not self.env_file:
            return
        env_path = Path(self.env_file)
        if env_path.exists():
            load_dotenv(env_path)

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from environment variables."""
        return {
            # Core settings
            "log_level": self._get_str("LOG_LEVEL", default="INFO"),
            # MongoDB settings for rates, classifications, regimes and quotes
            "mongo_url": self._get_str("DB_CONNECTION_URL", default=""),
            "mongo_db": self._get_str("DB_NAME", default="QUOTE_MASTER_DATA"),
            "rates_collection": self._get_str("RATES_COLLECTION", default="country_settings"),
            "classification_collection": self._get_str("CLASSIFICATION_COLLECTION", default="hsn_master"),
            "regime_collection": self._get_str("REGIME_COLLECTION", default="unified_configuration"),
            "quotes_collection": self._get_str("QUOTES_COLLECTION", default="quotes_v2"),
            # Currency conversion settings
            "rate_cache_ttl_seconds": self._get_int("RATE_CACHE_TTL_SECONDS", default=300),
            "lookup_timeout_seconds": self._get_float("LOOKUP_TIMEOUT_SECONDS", default=5.0),
            "rounding_method": self._get_str("ROUNDING_METHOD", default="up"),
            "conversion_decimal_places": self._get_int("CONVERSION_DECIMAL_PLACES", default=0),
            # Batch processing settings
            "batch_concurrency": self._get_int("BATCH_CONCURRENCY", default=50),
            "batch_retry_attempts": self._get_int("BATCH_RETRY_ATTEMPTS", default=2),
            "batch_retry_delay": self._get_float("BATCH_RETRY_DELAY", default=1.0),
        }

    def _get_str(self, key: str, default: str = "") -> str:
        """Get string configuration value."""
        if self.env_file is None:
            return default
        return os.getenv(key, default)

    def _get_int(self, key: str, default: int = 0) -> int:
        """Get integer configuration value."""
        if self.env_file is None:
            return default
        try:
            return int(os.getenv(key, str(default)))
        except ValueError:
            return default

    def _get_float(self, key: str, default: float = 0.0) -> float:
        """Get float configuration value."""
        if self.env_file is None:
            return default
        try:
            return float(os.getenv(key, str(default)))
        except ValueError:
            return default

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value."""
        return self._config.get(key, default)

    def __getitem__(self, key: str) -> Any:
        """Get configuration value using bracket notation."""
        return self._config[key]

    def __contains__(self, key: str) -> bool:
        """Check if configuration key exists."""
        return key in self._config
