"""
Runtime configuration.

Read from the environment (and an optional .env file) by pydantic-settings.
"""

from .settings import Settings, get_settings

__all__ = ["Settings", "get_settings"]
