"""
SQLAlchemy models for persistence.
"""
from sqlalchemy import Column, String, Integer, DateTime, ForeignKey, Boolean, Index, UniqueConstraint, Text, JSON, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
import uuid
from entitlement_sync.db import Base

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def _uuid_str() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WebhookLog(Base):
    """
    Append-only record of every inbound webhook request and its processing outcome.

    Rows are written before any processing runs and updated exactly once with the
    outcome. Nothing in this service deletes them.
    """
    __tablename__ = "webhook_logs"

    id = Column(String, primary_key=True, default=_uuid_str)
    source = Column(String, nullable=False, server_default="unknown")  # adapter name, e.g. 'cartpanda'
    event_type = Column(String, nullable=False)  # e.g. 'order.paid'
    payload = Column(JSONType, nullable=False)  # raw request body as received
    processed = Column(Boolean, nullable=False, default=False, server_default='false')
    processed_at = Column(DateTime(timezone=True), nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, server_default=text('CURRENT_TIMESTAMP'))
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False, server_default=text('CURRENT_TIMESTAMP'))

    __table_args__ = (
        Index('idx_webhook_logs_processed', 'processed'),
        Index('idx_webhook_logs_created_at', 'created_at'),
    )


class UserAccount(Base):
    """
    User directory entry. Owned by the auth system; read-only for this service.
    """
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=_uuid_str)
    email = Column(String, nullable=False, unique=True)
    full_name = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, server_default=text('CURRENT_TIMESTAMP'))


class Product(Base):
    """
    Internal product (course, community access, bundle).
    """
    __tablename__ = "products"

    id = Column(String, primary_key=True, default=_uuid_str)
    name = Column(String, nullable=False)
    slug = Column(String, nullable=True, unique=True)
    is_active = Column(Boolean, nullable=False, default=True, server_default='true')
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, server_default=text('CURRENT_TIMESTAMP'))

    mappings = relationship("ProductMapping", back_populates="product", cascade="all, delete-orphan")


class ProductMapping(Base):
    """
    Maps a payment platform's product identifier to an internal product.

    Many external identifiers (across platforms or SKUs) may point at the same product;
    within one source an external identifier maps to at most one product.
    """
    __tablename__ = "product_mappings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    source = Column(String, nullable=False)  # adapter name, e.g. 'cartpanda'
    external_product_id = Column(String, nullable=False)
    product_id = Column(String, ForeignKey("products.id", ondelete="CASCADE"), nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, server_default=text('CURRENT_TIMESTAMP'))

    product = relationship("Product", back_populates="mappings")

    __table_args__ = (
        UniqueConstraint('source', 'external_product_id', name='uq_product_mappings_source_external_id'),
        Index('idx_product_mappings_product_id', 'product_id'),
    )


class UserProduct(Base):
    """
    Entitlement: user U owns product P.

    progress and completed_items belong to the learning subsystem; this service only
    initializes them on grant.
    """
    __tablename__ = "user_products"

    id = Column(String, primary_key=True, default=_uuid_str)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    product_id = Column(String, ForeignKey("products.id", ondelete="CASCADE"), nullable=False)
    order_id = Column(String, nullable=True)  # NULL for manually granted entitlements
    purchased_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    progress = Column(Integer, nullable=False, default=0, server_default='0')
    completed_items = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, server_default=text('CURRENT_TIMESTAMP'))
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False, server_default=text('CURRENT_TIMESTAMP'))

    __table_args__ = (
        # The database-level guard that makes grants idempotent under concurrent deliveries
        UniqueConstraint('user_id', 'product_id', name='uq_user_products_user_product'),
        Index('idx_user_products_order_product', 'order_id', 'product_id'),
    )


class Notification(Base):
    """
    In-app inbox notification.
    """
    __tablename__ = "notifications"

    id = Column(String, primary_key=True, default=_uuid_str)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    title = Column(String, nullable=False)
    message = Column(Text, nullable=True)
    type = Column(String, nullable=True)  # e.g. 'new_product'
    is_read = Column(Boolean, nullable=False, default=False, server_default='false')
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, server_default=text('CURRENT_TIMESTAMP'))

    __table_args__ = (
        Index('idx_notifications_user_id', 'user_id'),
    )
