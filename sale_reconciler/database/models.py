"""SQLAlchemy database models for the sale payment lifecycle."""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from ..core.domain import utcnow

# BIGSERIAL on PostgreSQL, INTEGER PRIMARY KEY (rowid alias) on SQLite
Identifier = BigInteger().with_variant(Integer, "sqlite")
JsonDocument = JSON().with_variant(JSONB, "postgresql")


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Product(Base):
    """
    Products table.

    Only the stock counter is written by this service, always through a
    conditional decrement.
    """

    __tablename__ = "products"

    id: Mapped[int] = mapped_column(Identifier, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    stock: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = (CheckConstraint("stock >= 0", name="non_negative_stock"),)

    def __repr__(self) -> str:
        return f"<Product(id={self.id}, stock={self.stock})>"


class Sale(Base):
    """
    Sales table.

    ``status`` only changes through guarded updates on the expected prior
    value.
    """

    __tablename__ = "sales"

    id: Mapped[int] = mapped_column(Identifier, primary_key=True, autoincrement=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pendiente")
    total: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    payment_method: Mapped[str | None] = mapped_column(String(50), nullable=True)
    fulfillment_type: Mapped[str] = mapped_column(String(20), nullable=False, default="envio")
    customer_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    customer_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    shipment_ref: Mapped[str | None] = mapped_column(String(100), nullable=True)
    tracking_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    details: Mapped[List["SaleDetail"]] = relationship(
        back_populates="sale", lazy="selectin", order_by="SaleDetail.id"
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pendiente', 'aprobado', 'cancelado', 'vencido')",
            name="valid_sale_status",
        ),
        CheckConstraint(
            "fulfillment_type IN ('envio', 'retiro')", name="valid_fulfillment_type"
        ),
        Index("idx_sales_status_created", "status", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<Sale(id={self.id}, status={self.status}, total={self.total})>"


class SaleDetail(Base):
    """Sale lines. Immutable once written."""

    __tablename__ = "sale_details"

    id: Mapped[int] = mapped_column(Identifier, primary_key=True, autoincrement=True)
    sale_id: Mapped[int] = mapped_column(
        ForeignKey("sales.id", ondelete="CASCADE"), nullable=False, index=True
    )
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id"), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    discount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    product_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    sale: Mapped[Sale] = relationship(back_populates="details")

    __table_args__ = (
        CheckConstraint("quantity > 0", name="positive_quantity"),
        CheckConstraint("unit_price >= 0", name="non_negative_unit_price"),
        CheckConstraint("discount >= 0", name="non_negative_discount"),
    )


class WebhookRecord(Base):
    """
    Inbound payment notifications.

    One row per call, rejected calls included. Rows are never deleted.
    ``gateway_event_id`` is indexed but not unique: gateways redeliver and
    duplicate processing is absorbed by the sale transition.
    """

    __tablename__ = "webhook_records"

    id: Mapped[int] = mapped_column(Identifier, primary_key=True, autoincrement=True)
    gateway_event_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    resource_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    topic: Mapped[str | None] = mapped_column(String(100), nullable=True)
    signature_valid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    processing_status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    payload: Mapped[Dict[str, Any] | None] = mapped_column(JsonDocument, nullable=True)
    sale_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True, index=True)
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "processing_status IN ('pending', 'processed', 'failed')",
            name="valid_processing_status",
        ),
        Index("idx_webhook_records_status_received", "processing_status", "received_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<WebhookRecord(id={self.id}, resource_id={self.resource_id}, "
            f"status={self.processing_status})>"
        )


class AuditEntry(Base):
    """Append-only audit trail."""

    __tablename__ = "audit_entries"

    id: Mapped[int] = mapped_column(Identifier, primary_key=True, autoincrement=True)
    actor: Mapped[str] = mapped_column(String(255), nullable=False)
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    initiator: Mapped[str] = mapped_column(String(20), nullable=False)
    sale_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True, index=True)
    before: Mapped[Dict[str, Any] | None] = mapped_column(JsonDocument, nullable=True)
    after: Mapped[Dict[str, Any] | None] = mapped_column(JsonDocument, nullable=True)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )

    __table_args__ = (Index("idx_audit_entries_action", "action"),)
