import pytest

from storesync import create_app
from storesync.config import Settings
from storesync.db.store import Store

from .helpers import FakeShopify, SHOP


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite://",
        default_webhook_secret="whsec_default",
        admin_api_key="admin-key",
        base_url="https://sync.example.com",
        max_retries=1,
    )


@pytest.fixture
def store():
    return Store("sqlite://")


@pytest.fixture
def tenant(store):
    return store.upsert_tenant(SHOP, "shpat_token", "whsec_tenant")


@pytest.fixture
def shopify():
    return FakeShopify()


@pytest.fixture
def app(settings, store, shopify):
    app = create_app(settings=settings, store=store, client_factory=shopify.client_factory)
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()
