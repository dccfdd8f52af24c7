# storesync/services/reconcile.py
"""
Map one Shopify REST record onto the store's upsert for that entity.

The full sync and the webhook dispatcher both go through these functions, so
a record applied by either path lands in the same shape. Names, email,
currency and timestamps are only written when Shopify sent the key; an absent
value never clears a stored one.
"""
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Optional

from ..db.store import Store

UNTITLED = "Untitled"
ZERO_PRICE = "0.00"
PERSON_KEYS = ("email", "first_name", "last_name")


class ReconcileError(Exception):
    pass


def parse_datetime(value) -> Optional[datetime]:
    """Parse Shopify ISO-8601 text into an aware UTC datetime."""
    if not value:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)

def _money(value) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ReconcileError(f"invalid amount {value!r}") from e

def remote_id(record: dict) -> str:
    rid = (record or {}).get("id")
    if rid is None or rid == "":
        raise ReconcileError("record has no id")
    return str(rid)

def _put_timestamp(fields: dict, key: str, raw) -> None:
    dt = parse_datetime(raw)
    if dt is not None:
        fields[key] = dt

# =========================================================
# Pure mappings
# =========================================================

def customer_fields(record: dict) -> dict:
    # order webhooks often embed only {"id": ...}
    fields = {k: record[k] for k in PERSON_KEYS if k in record}
    _put_timestamp(fields, "created_at", record.get("created_at"))
    _put_timestamp(fields, "updated_at", record.get("updated_at"))
    return fields

def product_fields(record: dict) -> dict:
    variants = record.get("variants") or []
    first = variants[0] if variants else {}
    fields = {
        "title": record.get("title") or UNTITLED,
        "sku": first.get("sku") or None,
        "price": _money(first.get("price") or ZERO_PRICE),
    }
    _put_timestamp(fields, "created_at", record.get("created_at"))
    return fields

def order_fields(record: dict) -> dict:
    fields = {
        "total_price": _money(record.get("total_price") or ZERO_PRICE),
    }
    if "currency" in record:
        fields["currency"] = record["currency"]
    if record.get("order_number") is not None:
        fields["order_number"] = str(record["order_number"])
    _put_timestamp(fields, "created_at", record.get("created_at"))
    customer = record.get("customer") or {}
    if customer.get("id") is not None:
        fields["shopify_customer_id"] = str(customer["id"])
    return fields

# =========================================================
# Upserts
# =========================================================

def apply_customer(store: Store, tenant_id: str, record: dict) -> str:
    rid = remote_id(record)
    customer_id = store.upsert_customer(tenant_id, rid, customer_fields(record))
    store.relink_orders(tenant_id, rid, customer_id)
    return customer_id

def apply_product(store: Store, tenant_id: str, record: dict) -> str:
    return store.upsert_product(tenant_id, remote_id(record), product_fields(record))

def apply_order(store: Store, tenant_id: str, record: dict, customer_id: Optional[str] = None) -> str:
    """
    Upsert an order, linking it to the local customer when one exists in the
    same tenant. An unresolved customer leaves any existing link untouched.
    """
    rid = remote_id(record)
    fields = order_fields(record)
    if customer_id is None and fields.get("shopify_customer_id"):
        customer_id = store.find_customer_id(tenant_id, fields["shopify_customer_id"])
    if customer_id is not None:
        fields["customer_id"] = customer_id
    return store.upsert_order(tenant_id, rid, fields)
