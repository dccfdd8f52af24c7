from datetime import datetime
from decimal import Decimal

import pytest

from storesync.db.models import Customer, Product, Order
from storesync.services import sync as sync_module
from storesync.services.reconcile import apply_customer, apply_order
from storesync.services.scheduler import SyncScheduler
from storesync.services.sync import (
    SyncInProgress,
    TenantMissingCredentials,
    TenantNotFound,
    full_sync,
    sync_customers,
)

from .helpers import make_response, paged


def _products(start: int, count: int) -> list:
    return [
        {"id": i, "title": f"Product {i}", "variants": [{"sku": f"SKU-{i}", "price": "9.99"}]}
        for i in range(start, start + count)
    ]


def _empty(shopify, *paths):
    for path in paths:
        shopify.add("GET", path, make_response({path: []}))


def _sync(store, tenant, settings, shopify):
    return full_sync(store, tenant.id, settings, client_factory=shopify.client_factory)


def test_full_sync_501_products_over_three_pages(store, tenant, settings, shopify):
    pages = [_products(1, 250), _products(251, 250), _products(501, 1)]
    shopify.add("GET", "products", *paged("products", "products", pages))
    _empty(shopify, "customers", "orders")

    stats = _sync(store, tenant, settings, shopify)

    assert stats.products == 501
    assert store.count(Product, tenant.id) == 501
    assert len(shopify.requests_for("GET", "products")) == 3
    assert store.get_product(tenant.id, "501").sku == "SKU-501"


def test_full_sync_terminates_on_header_not_page_size(store, tenant, settings, shopify):
    pages = [_products(1, 250), _products(251, 250)]
    shopify.add("GET", "products", *paged("products", "products", pages))
    _empty(shopify, "customers", "orders")

    stats = _sync(store, tenant, settings, shopify)

    assert stats.products == 500
    assert len(shopify.requests_for("GET", "products")) == 2


def test_full_sync_is_idempotent(store, tenant, settings, shopify):
    for _ in range(2):
        shopify.add("GET", "products", make_response({"products": _products(1, 3)}))
        shopify.add("GET", "customers", make_response({"customers": [
            {"id": 1, "email": "a@example.com", "first_name": "A"}]}))
        shopify.add("GET", "orders", make_response({"orders": [
            {"id": 10, "total_price": "5.00", "customer": {"id": 1}}]}))

    first = _sync(store, tenant, settings, shopify)
    second = _sync(store, tenant, settings, shopify)

    assert first.as_dict() == second.as_dict()
    assert (store.count(Product, tenant.id), store.count(Customer, tenant.id),
            store.count(Order, tenant.id)) == (3, 1, 1)


def test_orders_link_to_customers_synced_in_same_pass(store, tenant, settings, shopify):
    _empty(shopify, "products")
    shopify.add("GET", "customers", make_response({"customers": [
        {"id": 77, "email": "c@example.com", "first_name": "C"}]}))
    shopify.add("GET", "orders", make_response({"orders": [
        {"id": 1, "order_number": 1001, "total_price": "12.00", "customer": {"id": 77}},
        {"id": 2, "order_number": 1002, "total_price": "8.00", "customer": {"id": 99}},
        {"id": 3, "order_number": 1003},
    ]}))

    stats = _sync(store, tenant, settings, shopify)

    assert stats.orders == 3
    assert store.get_order(tenant.id, "1").customer_id == store.find_customer_id(tenant.id, "77")
    assert store.get_order(tenant.id, "2").customer_id is None
    unlinked = store.get_order(tenant.id, "3")
    assert unlinked.customer_id is None
    assert unlinked.total_price == Decimal("0.00")


def test_order_pull_requests_any_status(store, tenant, settings, shopify):
    _empty(shopify, "products", "customers", "orders")
    _sync(store, tenant, settings, shopify)
    assert shopify.requests_for("GET", "orders")[0][2]["status"] == "any"


def test_backfill_targets_only_incomplete_customers(store, tenant, settings, shopify):
    _empty(shopify, "products", "orders")
    shopify.add("GET", "customers", make_response({"customers": [
        {"id": 1, "email": None, "first_name": "Nomail"},
        {"id": 2, "email": "full@example.com", "first_name": "Full"},
        {"id": 3, "email": "noname@example.com", "first_name": None},
        {"id": 4, "email": None, "first_name": None},
    ]}))
    shopify.add("GET", "customers/1", make_response({"customer": {
        "id": 1, "email": "found@example.com", "first_name": "Nomail", "updated_at": "2024-06-01T00:00:00Z"}}))
    shopify.add("GET", "customers/3", make_response({"customer": {"id": 3, "email": "noname@example.com"}}))
    # customers/4 is unrouted: the fake answers 404

    stats = _sync(store, tenant, settings, shopify)

    fetched = sorted(c[1] for c in shopify.calls if c[1].startswith("customers/"))
    assert fetched == ["customers/1", "customers/3", "customers/4"]
    assert stats.backfilled == 1
    assert stats.errors == []
    row = store.get_customer(tenant.id, "1")
    assert row.email == "found@example.com"
    assert row.updated_at.replace(tzinfo=None) == datetime(2024, 6, 1)
    assert store.get_customer(tenant.id, "4").email is None


def test_backfill_respects_limit(store, tenant, settings, shopify):
    for i in range(5):
        apply_customer(store, tenant.id, {"id": i})
    _empty(shopify, "products", "customers", "orders")
    settings.backfill_limit = 2

    _sync(store, tenant, settings, shopify)

    assert len([c for c in shopify.calls if c[1].startswith("customers/")]) == 2


def test_failed_collection_does_not_stop_the_others(store, tenant, settings, shopify):
    shopify.add("GET", "products", make_response({"errors": "Internal"}, status=500))
    shopify.add("GET", "customers", make_response({"customers": [
        {"id": 1, "email": "a@example.com", "first_name": "A"}]}))
    _empty(shopify, "orders")

    stats = _sync(store, tenant, settings, shopify)

    assert stats.products == 0
    assert stats.customers == 1
    assert len(stats.errors) == 1 and stats.errors[0].startswith("products:")


def test_failed_record_is_skipped(store, tenant, settings, shopify):
    shopify.add("GET", "products", make_response({"products": [
        {"id": 1, "title": "Good"},
        {"id": 2, "title": "Bad", "variants": [{"price": "n/a"}]},
        {"title": "No id"},
        {"id": 4, "title": "Also good"},
    ]}))
    _empty(shopify, "customers", "orders")

    stats = _sync(store, tenant, settings, shopify)

    assert stats.products == 2
    assert stats.failed == 2
    assert store.count(Product, tenant.id) == 2


def test_sync_for_one_tenant_leaves_others_alone(store, tenant, settings, shopify):
    other = store.upsert_tenant("other.myshopify.com", "shpat_other")
    apply_customer(store, other.id, {"id": 100, "email": "other@example.com", "first_name": "O"})
    _empty(shopify, "products", "orders")
    shopify.add("GET", "customers", make_response({"customers": [
        {"id": 100, "email": "mine@example.com", "first_name": "M"}]}))

    _sync(store, tenant, settings, shopify)

    assert store.get_customer(other.id, "100").email == "other@example.com"
    assert store.get_customer(tenant.id, "100").email == "mine@example.com"
    assert store.count(Customer, other.id) == 1


def test_unknown_tenant_fails_fast(store, settings, shopify):
    with pytest.raises(TenantNotFound):
        full_sync(store, "missing", settings, client_factory=shopify.client_factory)
    assert shopify.calls == []


def test_tenant_without_token_fails_fast(store, settings, shopify):
    t = store.upsert_tenant("notoken.myshopify.com", None)
    with pytest.raises(TenantMissingCredentials):
        full_sync(store, t.id, settings, client_factory=shopify.client_factory)
    assert shopify.calls == []


def test_overlapping_sync_is_refused(store, tenant, settings, shopify):
    lock = sync_module._lock_for(tenant.id)
    lock.acquire()
    try:
        with pytest.raises(SyncInProgress):
            _sync(store, tenant, settings, shopify)
    finally:
        lock.release()


def test_customers_only_sync_refused_while_tenant_is_syncing(store, tenant, settings, shopify, client):
    lock = sync_module._lock_for(tenant.id)
    lock.acquire()
    try:
        with pytest.raises(SyncInProgress):
            sync_customers(store, tenant.id, settings, client_factory=shopify.client_factory)
        assert client.post(f"/api/{tenant.id}/sync-customers").status_code == 409
    finally:
        lock.release()
    assert shopify.calls == []


def test_sync_customers_only(store, tenant, settings, shopify):
    shopify.add("GET", "customers", make_response({"customers": [{"id": 1}, {"id": 2}]}))

    stats = sync_customers(store, tenant.id, settings, client_factory=shopify.client_factory)

    assert stats.customers == 2
    assert [c[1] for c in shopify.calls] == ["customers"]


def test_scheduler_pass_continues_after_failing_tenant(store, tenant, settings):
    broken = store.upsert_tenant("broken.myshopify.com", None)
    seen = []

    def fake_sync(store_, tenant_id, settings_):
        seen.append(tenant_id)
        return full_sync(store_, tenant_id, settings_, client_factory=lambda *a: _NoopClient())

    results = SyncScheduler(store, settings, sync_fn=fake_sync).run_once()

    assert set(seen) == {tenant.id, broken.id}
    assert list(results) == [tenant.shop]


class _NoopClient:
    def fetch_all_products(self):
        return []

    def fetch_all_customers(self):
        return []

    def fetch_all_orders(self):
        return []

    def fetch_customer(self, customer_id):
        return None

# =========================================================
# HTTP trigger & metrics
# =========================================================

def test_sync_endpoint_returns_counts(client, tenant, shopify):
    shopify.add("GET", "products", make_response({"products": _products(1, 2)}))
    shopify.add("GET", "customers", make_response({"customers": [
        {"id": 1, "email": "a@example.com", "first_name": "A"}]}))
    shopify.add("GET", "orders", make_response({"orders": [{"id": 5, "total_price": "3.00"}]}))

    resp = client.post(f"/api/{tenant.id}/sync")

    assert resp.status_code == 200
    body = resp.get_json()
    assert body["status"] == "ok"
    assert (body["products"], body["customers"], body["orders"], body["backfilled"]) == (2, 1, 1, 0)


def test_sync_endpoint_unknown_tenant(client):
    resp = client.post("/api/nope/sync")
    assert resp.status_code == 404
    assert resp.get_json() == {"error": "tenant not found"}


def test_metrics_endpoints(client, store, tenant):
    a = apply_customer(store, tenant.id, {"id": 1, "email": "a@example.com", "first_name": "A"})
    apply_customer(store, tenant.id, {"id": 2, "email": "b@example.com", "first_name": "B"})
    apply_order(store, tenant.id, {"id": 10, "total_price": "50.00", "customer": {"id": 1},
                                   "created_at": "2024-01-05T10:00:00Z"})
    apply_order(store, tenant.id, {"id": 11, "total_price": "25.00", "customer": {"id": 2},
                                   "created_at": "2024-01-05T18:00:00Z"})
    apply_order(store, tenant.id, {"id": 12, "total_price": "10.00", "customer": {"id": 1},
                                   "created_at": "2024-02-01T09:00:00Z"})

    summary = client.get(f"/api/{tenant.id}/metrics/summary").get_json()
    assert summary == {"totalCustomers": 2, "totalOrders": 3, "totalRevenue": 85.0}

    top = client.get(f"/api/{tenant.id}/customers/top?limit=1").get_json()
    assert [(c["id"], c["totalSpend"]) for c in top] == [(a, 60.0)]

    by_date = client.get(f"/api/{tenant.id}/orders/by-date?start=2024-01-01&end=2024-01-31").get_json()
    assert by_date == {"2024-01-05": 75.0}

    assert client.get(f"/api/{tenant.id}/orders/by-date?start=jan").status_code == 400
