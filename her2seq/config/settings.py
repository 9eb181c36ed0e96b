"""
Application settings and configuration.

This module centralizes configuration for her2seq. Values come from
environment variables (optionally loaded from a ``.env`` file) with
defaults suited to running the workflow from a project directory.
"""

import os
from pathlib import Path
from typing import Any, Dict

from dotenv import load_dotenv


class Settings:
    """
    Application settings with environment variable support.

    Every setting can be overridden with a ``HER2SEQ_*`` environment variable,
    which keeps the workflow configurable on clusters and in containers
    without editing code.
    """

    def __init__(self):
        """Initialize application settings."""
        load_dotenv()

        # Base directories
        self.BASE_DIR = Path(__file__).resolve().parent.parent
        self.DATA_DIR = Path(os.environ.get("HER2SEQ_DATA_DIR", "data"))
        self.RESULTS_DIR = Path(os.environ.get("HER2SEQ_RESULTS_DIR", "results"))

        # Logging settings
        self.LOG_LEVEL = os.environ.get("HER2SEQ_LOG_LEVEL", "WARNING").upper()

        # GDC data portal
        self.GDC_API_URL = os.environ.get(
            "HER2SEQ_GDC_API_URL", "https://api.gdc.cancer.gov"
        ).rstrip("/")
        self.GDC_PROJECT = os.environ.get("HER2SEQ_GDC_PROJECT", "TCGA-BRCA")
        self.HTTP_TIMEOUT = int(os.environ.get("HER2SEQ_HTTP_TIMEOUT", "60"))
        self.HTTP_RETRIES = int(os.environ.get("HER2SEQ_HTTP_RETRIES", "3"))

        # Reproducibility
        self.RANDOM_SEED = int(os.environ.get("HER2SEQ_RANDOM_SEED", "42"))

        is_valid, error_msg = self.validate_configuration()
        self._config_error = None if is_valid else error_msg

    @property
    def gdc_cache_dir(self) -> Path:
        """Directory where raw GDC downloads are cached."""
        return self.DATA_DIR / "gdc" / self.GDC_PROJECT

    def get_all_settings(self) -> Dict[str, Any]:
        """
        Get all settings as a dictionary.

        Returns:
            dict: All settings
        """
        settings_dict = {}
        for attr in dir(self):
            if not attr.startswith("_") and not callable(getattr(self, attr)):
                settings_dict[attr] = getattr(self, attr)
        return settings_dict

    def get_setting(self, name: str, default: Any = None) -> Any:
        """
        Get a specific setting.

        Args:
            name: Setting name
            default: Default value if setting doesn't exist

        Returns:
            Value of the setting or default
        """
        return getattr(self, name, default)

    def validate_configuration(self) -> tuple:
        """
        Validate the configured values.

        Returns:
            tuple: (is_valid: bool, error_message: str)
        """
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if self.LOG_LEVEL not in valid_levels:
            return False, (
                f"HER2SEQ_LOG_LEVEL={self.LOG_LEVEL!r} is not one of "
                f"{sorted(valid_levels)}"
            )
        if self.HTTP_TIMEOUT <= 0:
            return False, "HER2SEQ_HTTP_TIMEOUT must be a positive number of seconds"
        if self.HTTP_RETRIES < 0:
            return False, "HER2SEQ_HTTP_RETRIES cannot be negative"
        return True, ""

    @property
    def config_error(self):
        """Validation error found at start-up, if any."""
        return self._config_error


# Create singleton instance
settings = Settings()


def get_settings() -> Settings:
    """
    Get the application settings.

    Returns:
        Settings: Application settings
    """
    return settings
