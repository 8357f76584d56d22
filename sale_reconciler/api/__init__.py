"""API package for the sale reconciler."""
from .main import create_app

__all__ = ["create_app"]
