"""Payment-lifecycle reconciliation for sales: webhooks, stock, expiration."""

__version__ = "1.0.0"
