"""Configuration package for the sandbox lifecycle service."""

from .settings import Settings, settings

__all__ = [
    "settings",
    "Settings",
]
