"""Configuration: settings, modes and bundled config files."""

from .settings import Settings, get_settings

__all__ = ["Settings", "get_settings"]
