"""Configuration package for event settlement."""
from .settings import get_settings, Settings

__all__ = ["Settings", "get_settings"]
