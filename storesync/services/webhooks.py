# storesync/services/webhooks.py
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Optional, List

from ..db.store import Store
from ..utils.logger import info, warn, error
from .reconcile import apply_customer, apply_product, apply_order

CUSTOMER_TOPICS = ("customers/create", "customers/update")
PRODUCT_TOPICS = ("products/create", "products/update")


@dataclass
class DispatchResult:
    topic: str
    action: str
    ok: bool = True
    error: Optional[str] = None
    record_id: Optional[str] = None
    at: float = field(default_factory=time.time)


class AuditLog:
    """Bounded in-memory record of what the dispatcher did with each webhook."""

    def __init__(self, maxlen: int = 500):
        self._items: deque = deque(maxlen=maxlen)
        self._lock = threading.Lock()

    def record(self, shop: str, result: DispatchResult) -> None:
        with self._lock:
            self._items.append((shop, result))
        if result.ok:
            info(f"[webhook {shop}] {result.topic} -> {result.action} {result.record_id or ''}".rstrip())
        else:
            error(f"[webhook {shop}] {result.topic} failed: {result.error}")

    def entries(self) -> List[tuple]:
        with self._lock:
            return list(self._items)

    def failures(self) -> List[tuple]:
        return [(shop, r) for shop, r in self.entries() if not r.ok]


def dispatch(store: Store, tenant_id: str, topic: str, payload: dict) -> DispatchResult:
    """
    Apply the change carried by one authenticated webhook.

    Errors are returned, not raised: Shopify retries any non-2xx delivery, and
    the next full sync repairs a dropped update anyway.
    """
    topic = topic or ""
    payload = payload if isinstance(payload, dict) else {}
    try:
        if topic.startswith("orders/"):
            customer_id = None
            customer = payload.get("customer") or {}
            if customer.get("id") is not None:
                customer_id = apply_customer(store, tenant_id, customer)
            order_id = apply_order(store, tenant_id, payload, customer_id=customer_id)
            return DispatchResult(topic, "order", record_id=order_id)

        if topic in CUSTOMER_TOPICS:
            return DispatchResult(topic, "customer", record_id=apply_customer(store, tenant_id, payload))

        if topic in PRODUCT_TOPICS:
            return DispatchResult(topic, "product", record_id=apply_product(store, tenant_id, payload))

        if store.supports_raw_event_log:
            return DispatchResult(topic, "event_logged", record_id=store.record_event(tenant_id, topic, payload))
        return DispatchResult(topic, "ignored")
    except Exception as e:
        warn(f"[webhook] {topic} for tenant {tenant_id} not applied: {e}")
        return DispatchResult(topic, "failed", ok=False, error=str(e))
