"""Configuration package for the sportline modeling engine."""

from .settings import Settings, get_settings

__all__ = [
    "Settings",
    "get_settings",
]
