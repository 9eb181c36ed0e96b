"""Version information for her2seq."""

__version__ = "0.3.0"
