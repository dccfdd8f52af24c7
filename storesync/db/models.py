"""SQLAlchemy models for the local shop mirror.

Every leaf table is scoped by tenant_id and deduplicated on
(tenant_id, shopify_*_id). Rows are created on first sight and only updated
afterwards.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, String, DateTime, ForeignKey, Numeric, JSON, UniqueConstraint, Index
from sqlalchemy.orm import relationship, declarative_base

Base = declarative_base()


def _uuid() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Tenant(Base):
    __tablename__ = "tenants"

    id = Column(String(36), primary_key=True, default=_uuid)
    shop = Column(String, unique=True, nullable=False)
    access_token = Column(String, nullable=True)
    webhook_secret = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    def __repr__(self):
        return f"<Tenant {self.shop}>"


class Customer(Base):
    __tablename__ = "customers"
    __table_args__ = (UniqueConstraint("tenant_id", "shopify_customer_id", name="uq_customer_tenant_remote"),)

    id = Column(String(36), primary_key=True, default=_uuid)
    tenant_id = Column(String(36), ForeignKey("tenants.id", ondelete="RESTRICT"), nullable=False)
    shopify_customer_id = Column(String, nullable=False)
    email = Column(String, nullable=True)
    first_name = Column(String, nullable=True)
    last_name = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=True)

    orders = relationship("Order", back_populates="customer", passive_deletes=True)


class Product(Base):
    __tablename__ = "products"
    __table_args__ = (UniqueConstraint("tenant_id", "shopify_product_id", name="uq_product_tenant_remote"),)

    id = Column(String(36), primary_key=True, default=_uuid)
    tenant_id = Column(String(36), ForeignKey("tenants.id", ondelete="RESTRICT"), nullable=False)
    shopify_product_id = Column(String, nullable=False)
    title = Column(String, nullable=False)
    sku = Column(String, nullable=True)
    price = Column(Numeric(12, 2), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=True)


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (
        UniqueConstraint("tenant_id", "shopify_order_id", name="uq_order_tenant_remote"),
        Index("ix_orders_tenant_remote_customer", "tenant_id", "shopify_customer_id"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    tenant_id = Column(String(36), ForeignKey("tenants.id", ondelete="RESTRICT"), nullable=False)
    shopify_order_id = Column(String, nullable=False)
    order_number = Column(String, nullable=True)
    total_price = Column(Numeric(12, 2), nullable=False)
    currency = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=True)
    # Remote customer id as seen on the order; lets a later customer upsert relink it
    shopify_customer_id = Column(String, nullable=True)
    customer_id = Column(String(36), ForeignKey("customers.id", ondelete="SET NULL"), nullable=True)

    customer = relationship("Customer", back_populates="orders")


class WebhookEvent(Base):
    __tablename__ = "webhook_events"

    id = Column(String(36), primary_key=True, default=_uuid)
    tenant_id = Column(String(36), ForeignKey("tenants.id", ondelete="RESTRICT"), nullable=False)
    topic = Column(String, nullable=False)
    payload = Column(JSON, nullable=True)
    received_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
