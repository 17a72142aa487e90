"""Configuration package for hotspot billing."""
from .settings import Settings, get_settings

__all__ = ["Settings", "get_settings"]
