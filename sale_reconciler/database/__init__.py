"""Database package for the sale reconciler."""
from .connection import close_db, get_engine, get_session_factory, init_db
from .models import AuditEntry, Base, Product, Sale, SaleDetail, WebhookRecord
from .repositories import SqlAlchemyUnitOfWork, unit_of_work_factory

__all__ = [
    "AuditEntry",
    "Base",
    "Product",
    "Sale",
    "SaleDetail",
    "WebhookRecord",
    "SqlAlchemyUnitOfWork",
    "unit_of_work_factory",
    "close_db",
    "get_engine",
    "get_session_factory",
    "init_db",
]
