"""
Storage collaborator for the sync engine and webhook dispatcher.
Each upsert runs in its own transaction keyed by (tenant_id, remote id).
"""

from collections import defaultdict
from contextlib import contextmanager
from datetime import date, datetime, time, timezone
from decimal import Decimal
from typing import Optional, List, Dict, Any

from sqlalchemy import create_engine, func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from .models import Base, Tenant, Customer, Product, Order, WebhookEvent
from ..utils.logger import debug

CUSTOMER_FIELDS = ("email", "first_name", "last_name", "created_at", "updated_at")


class Store:
    """SQLAlchemy backed store for tenants and their mirrored records."""

    def __init__(self, database_url: str = "sqlite:///storesync.db", engine=None,
                 supports_raw_event_log: bool = True):
        if engine is None:
            kwargs = {}
            if database_url.startswith("sqlite"):
                kwargs["connect_args"] = {"check_same_thread": False}
                if ":memory:" in database_url or database_url == "sqlite://":
                    kwargs["poolclass"] = StaticPool
            engine = create_engine(database_url, **kwargs)
        self.engine = engine
        self.supports_raw_event_log = supports_raw_event_log
        self._session = sessionmaker(bind=engine, expire_on_commit=False)
        Base.metadata.create_all(engine)

    @contextmanager
    def session_scope(self):
        session = self._session()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # ==================== Tenants ====================

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self.session_scope() as s:
            return s.get(Tenant, tenant_id)

    def get_tenant_by_shop(self, shop: str) -> Optional[Tenant]:
        with self.session_scope() as s:
            return s.query(Tenant).filter(Tenant.shop == shop).one_or_none()

    def list_tenants(self) -> List[Tenant]:
        with self.session_scope() as s:
            return s.query(Tenant).order_by(Tenant.created_at).all()

    def upsert_tenant(self, shop: str, access_token: Optional[str] = None,
                      webhook_secret: Optional[str] = None) -> Tenant:
        with self.session_scope() as s:
            tenant = s.query(Tenant).filter(Tenant.shop == shop).one_or_none()
            if tenant is None:
                tenant = Tenant(shop=shop)
                s.add(tenant)
            tenant.access_token = access_token
            if webhook_secret is not None:
                tenant.webhook_secret = webhook_secret
            s.flush()
            return tenant

    # ==================== Upserts ====================

    def _upsert(self, model, key_attr: str, tenant_id: str, remote_id: str, fields: Dict[str, Any]) -> str:
        """
        Insert or update one row by natural key and return its local id.
        Losing an insert race to a concurrent writer surfaces as an
        IntegrityError; the second attempt then finds the row and updates it.
        """
        key_col = getattr(model, key_attr)
        for attempt in (1, 2):
            try:
                with self.session_scope() as s:
                    row = (s.query(model)
                           .filter(model.tenant_id == tenant_id, key_col == remote_id)
                           .one_or_none())
                    if row is None:
                        row = model(tenant_id=tenant_id, **{key_attr: remote_id})
                        s.add(row)
                    for k, v in fields.items():
                        setattr(row, k, v)
                    s.flush()
                    return row.id
            except IntegrityError:
                if attempt == 2:
                    raise
                debug(f"[store] {model.__tablename__} {tenant_id}/{remote_id} insert race, retrying as update")

    def upsert_customer(self, tenant_id: str, shopify_customer_id: str, fields: Dict[str, Any]) -> str:
        return self._upsert(Customer, "shopify_customer_id", tenant_id, shopify_customer_id, fields)

    def upsert_product(self, tenant_id: str, shopify_product_id: str, fields: Dict[str, Any]) -> str:
        return self._upsert(Product, "shopify_product_id", tenant_id, shopify_product_id, fields)

    def upsert_order(self, tenant_id: str, shopify_order_id: str, fields: Dict[str, Any]) -> str:
        return self._upsert(Order, "shopify_order_id", tenant_id, shopify_order_id, fields)

    # ==================== Lookups ====================

    def find_customer_id(self, tenant_id: str, shopify_customer_id: str) -> Optional[str]:
        with self.session_scope() as s:
            row = (s.query(Customer.id)
                   .filter(Customer.tenant_id == tenant_id,
                           Customer.shopify_customer_id == shopify_customer_id)
                   .one_or_none())
            return row[0] if row else None

    def get_customer(self, tenant_id: str, shopify_customer_id: str) -> Optional[Customer]:
        with self.session_scope() as s:
            return (s.query(Customer)
                    .filter(Customer.tenant_id == tenant_id,
                            Customer.shopify_customer_id == shopify_customer_id)
                    .one_or_none())

    def get_product(self, tenant_id: str, shopify_product_id: str) -> Optional[Product]:
        with self.session_scope() as s:
            return (s.query(Product)
                    .filter(Product.tenant_id == tenant_id,
                            Product.shopify_product_id == shopify_product_id)
                    .one_or_none())

    def get_order(self, tenant_id: str, shopify_order_id: str) -> Optional[Order]:
        with self.session_scope() as s:
            return (s.query(Order)
                    .filter(Order.tenant_id == tenant_id,
                            Order.shopify_order_id == shopify_order_id)
                    .one_or_none())

    def count(self, model, tenant_id: str) -> int:
        with self.session_scope() as s:
            return s.query(func.count(model.id)).filter(model.tenant_id == tenant_id).scalar()

    def relink_orders(self, tenant_id: str, shopify_customer_id: str, customer_id: str) -> int:
        """Attach this tenant's unlinked orders for a remote customer to its local row."""
        with self.session_scope() as s:
            return (s.query(Order)
                    .filter(Order.tenant_id == tenant_id,
                            Order.shopify_customer_id == shopify_customer_id,
                            Order.customer_id.is_(None))
                    .update({Order.customer_id: customer_id}, synchronize_session=False))

    # ==================== Backfill ====================

    def customers_missing_fields(self, tenant_id: str, limit: int) -> List[Dict[str, Any]]:
        with self.session_scope() as s:
            rows = (s.query(Customer)
                    .filter(Customer.tenant_id == tenant_id,
                            or_(Customer.email.is_(None), Customer.first_name.is_(None)))
                    .order_by(Customer.id)
                    .limit(limit)
                    .all())
            return [
                {
                    "id": r.id,
                    "shopify_customer_id": r.shopify_customer_id,
                    "email": r.email,
                    "first_name": r.first_name,
                    "last_name": r.last_name,
                }
                for r in rows
            ]

    def update_customer(self, customer_id: str, fields: Dict[str, Any]) -> None:
        unknown = set(fields) - set(CUSTOMER_FIELDS)
        if unknown:
            raise ValueError(f"not customer fields: {sorted(unknown)}")
        with self.session_scope() as s:
            row = s.get(Customer, customer_id)
            if row is None:
                return
            for k, v in fields.items():
                setattr(row, k, v)

    # ==================== Raw event log ====================

    def record_event(self, tenant_id: str, topic: str, payload: Any) -> Optional[str]:
        if not self.supports_raw_event_log:
            return None
        with self.session_scope() as s:
            ev = WebhookEvent(tenant_id=tenant_id, topic=topic, payload=payload)
            s.add(ev)
            s.flush()
            return ev.id

    def list_events(self, tenant_id: str) -> List[WebhookEvent]:
        with self.session_scope() as s:
            return (s.query(WebhookEvent)
                    .filter(WebhookEvent.tenant_id == tenant_id)
                    .order_by(WebhookEvent.received_at)
                    .all())

    # ==================== Metrics ====================

    def metrics_summary(self, tenant_id: str) -> Dict[str, Any]:
        with self.session_scope() as s:
            customers = s.query(func.count(Customer.id)).filter(Customer.tenant_id == tenant_id).scalar()
            orders = s.query(func.count(Order.id)).filter(Order.tenant_id == tenant_id).scalar()
            revenue = s.query(func.sum(Order.total_price)).filter(Order.tenant_id == tenant_id).scalar()
        return {
            "totalCustomers": customers or 0,
            "totalOrders": orders or 0,
            "totalRevenue": float(revenue or 0),
        }

    def top_customers(self, tenant_id: str, limit: int = 5) -> List[Dict[str, Any]]:
        with self.session_scope() as s:
            spend = func.sum(Order.total_price).label("total_spend")
            rows = (s.query(Customer, spend)
                    .join(Order, Order.customer_id == Customer.id)
                    .filter(Order.tenant_id == tenant_id, Customer.tenant_id == tenant_id)
                    .group_by(Customer.id)
                    .order_by(spend.desc())
                    .limit(limit)
                    .all())
        return [
            {
                "id": c.id,
                "firstName": c.first_name,
                "lastName": c.last_name,
                "email": c.email,
                "shopifyCustomerId": c.shopify_customer_id,
                "totalSpend": float(total or 0),
            }
            for c, total in rows
        ]

    def revenue_by_date(self, tenant_id: str, start: Optional[date] = None,
                        end: Optional[date] = None) -> Dict[str, float]:
        with self.session_scope() as s:
            q = s.query(Order.created_at, Order.total_price).filter(
                Order.tenant_id == tenant_id, Order.created_at.isnot(None))
            if start:
                q = q.filter(Order.created_at >= datetime.combine(start, time.min, tzinfo=timezone.utc))
            if end:
                q = q.filter(Order.created_at <= datetime.combine(end, time.max, tzinfo=timezone.utc))
            rows = q.order_by(Order.created_at).all()

        grouped: Dict[str, Decimal] = defaultdict(Decimal)
        for created_at, total in rows:
            grouped[created_at.date().isoformat()] += Decimal(total or 0)
        return {d: float(v) for d, v in grouped.items()}
