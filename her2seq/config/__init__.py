"""Configuration for her2seq: environment-driven settings and analysis constants."""

from her2seq.config.settings import Settings, get_settings, settings

__all__ = ["Settings", "get_settings", "settings"]
