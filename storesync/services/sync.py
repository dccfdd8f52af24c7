# storesync/services/sync.py
from contextlib import contextmanager
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
import threading
from typing import Callable, List, Optional

from ..clients.shopify import ShopifyClient, ShopifyAPIError
from ..config import Settings
from ..db.store import Store
from ..utils.logger import debug, info, warn, error
from .reconcile import apply_customer, apply_product, apply_order, parse_datetime

# =========================================================
# Errors & results
# =========================================================

class SyncError(Exception):
    pass

class TenantNotFound(SyncError):
    pass

class TenantMissingCredentials(SyncError):
    pass

class SyncInProgress(SyncError):
    pass


@dataclass
class SyncStats:
    products: int = 0
    customers: int = 0
    orders: int = 0
    backfilled: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return asdict(self)

# =========================================================
# Per-tenant lease
# =========================================================

_locks: dict[str, threading.Lock] = {}
_locks_guard = threading.Lock()

def _lock_for(tenant_id: str) -> threading.Lock:
    with _locks_guard:
        if tenant_id not in _locks:
            _locks[tenant_id] = threading.Lock()
        return _locks[tenant_id]

@contextmanager
def _lease(tenant):
    lock = _lock_for(tenant.id)
    if not lock.acquire(blocking=False):
        raise SyncInProgress(f"sync already running for {tenant.shop}")
    try:
        yield
    finally:
        lock.release()

# =========================================================
# Helpers
# =========================================================

def _load_tenant(store: Store, tenant_id: str):
    tenant = store.get_tenant(tenant_id)
    if tenant is None:
        raise TenantNotFound("tenant not found")
    if not tenant.shop or not tenant.access_token:
        raise TenantMissingCredentials("tenant missing accessToken or shop")
    return tenant

def _apply_collection(label: str, tag: str, fetch: Callable[[], list], apply: Callable[[dict], str],
                      stats: SyncStats) -> int:
    """
    Pull a whole collection and apply every record. A failed pull is recorded
    and returns 0; a failed record is logged and skipped.
    """
    try:
        records = fetch()
    except ShopifyAPIError as e:
        error(f"[{tag}] {label} pull failed: {e}")
        stats.errors.append(f"{label}: {e}")
        return 0

    done = 0
    for rec in records:
        try:
            apply(rec)
            done += 1
        except Exception as e:
            stats.failed += 1
            warn(f"[{tag}] {label} upsert failed for {(rec or {}).get('id')}: {e}")
    info(f"[{tag}] {label}: {done}/{len(records)} upserted")
    return done

def backfill_customers(store: Store, client: ShopifyClient, tenant_id: str, limit: int, tag: str = "sync") -> int:
    """Fetch customers one by one to fill in a missing email or first name."""
    missing = store.customers_missing_fields(tenant_id, limit)
    if not missing:
        return 0
    debug(f"[{tag}] backfill: {len(missing)} customers missing email or first name")

    backfilled = 0
    for row in missing:
        rid = row["shopify_customer_id"]
        try:
            remote = client.fetch_customer(rid)
            if not remote:
                continue
            changes = {}
            for key in ("email", "first_name", "last_name"):
                val = remote.get(key)
                if val and val != row[key]:
                    changes[key] = val
            if not changes:
                continue
            changes["updated_at"] = parse_datetime(remote.get("updated_at")) or datetime.now(timezone.utc)
            store.update_customer(row["id"], changes)
            backfilled += 1
        except Exception as e:
            warn(f"[{tag}] backfill failed for {rid}: {e}")
    return backfilled

# =========================================================
# Entry points
# =========================================================

def full_sync(store: Store, tenant_id: str, settings: Optional[Settings] = None,
              client_factory: Callable[..., ShopifyClient] = ShopifyClient) -> SyncStats:
    """
    Pull products, customers and orders for one tenant, upsert everything,
    then backfill customers still missing an email or first name.

    Orders come after customers so their customer links resolve in the same
    pass. Raises TenantNotFound / TenantMissingCredentials before any remote
    call, and SyncInProgress if this tenant is already syncing.
    """
    settings = settings or Settings()
    tenant = _load_tenant(store, tenant_id)

    with _lease(tenant):
        tag = f"sync {tenant.shop}"
        client = client_factory(tenant.shop, tenant.access_token, settings)
        stats = SyncStats()
        info(f"[{tag}] full sync start")

        stats.products = _apply_collection(
            "products", tag, client.fetch_all_products,
            lambda rec: apply_product(store, tenant_id, rec), stats)
        stats.customers = _apply_collection(
            "customers", tag, client.fetch_all_customers,
            lambda rec: apply_customer(store, tenant_id, rec), stats)
        stats.orders = _apply_collection(
            "orders", tag, client.fetch_all_orders,
            lambda rec: apply_order(store, tenant_id, rec), stats)

        try:
            stats.backfilled = backfill_customers(store, client, tenant_id, settings.backfill_limit, tag)
        except Exception as e:
            error(f"[{tag}] backfill aborted: {e}")
            stats.errors.append(f"backfill: {e}")

        info(f"[{tag}] done products={stats.products} customers={stats.customers} "
             f"orders={stats.orders} backfilled={stats.backfilled} failed={stats.failed}")
        return stats

def sync_customers(store: Store, tenant_id: str, settings: Optional[Settings] = None,
                   client_factory: Callable[..., ShopifyClient] = ShopifyClient) -> SyncStats:
    settings = settings or Settings()
    tenant = _load_tenant(store, tenant_id)
    with _lease(tenant):
        tag = f"sync {tenant.shop}"
        client = client_factory(tenant.shop, tenant.access_token, settings)
        stats = SyncStats()
        stats.customers = _apply_collection(
            "customers", tag, client.fetch_all_customers,
            lambda rec: apply_customer(store, tenant_id, rec), stats)
        return stats
