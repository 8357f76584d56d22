"""Configuration package for the sale reconciler."""
from .settings import get_settings, Settings

__all__ = ["Settings", "get_settings"]
