"""Background workers."""
from .expiration_worker import ExpirationScheduler, start_expiration_worker

__all__ = ["ExpirationScheduler", "start_expiration_worker"]
