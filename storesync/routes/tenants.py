# storesync/routes/tenants.py
import hmac
from flask import Blueprint, request, current_app, jsonify

from ..clients.shopify import ShopifyAPIError
from ..utils.logger import info, warn

bp = Blueprint("tenants", __name__)

WEBHOOK_PATH = "/api/webhooks/shopify"


def _is_admin() -> bool:
    expected = current_app.config["STORESYNC_SETTINGS"].admin_api_key
    supplied = request.headers.get("X-Api-Key", "")
    if not expected or not supplied:
        return False
    return hmac.compare_digest(expected.encode(), supplied.encode())

def _tenant_json(t) -> dict:
    return {"id": t.id, "shop": t.shop, "createdAt": t.created_at.isoformat() if t.created_at else None}

def _register(tenant, base_url: str):
    """Point this tenant's webhook topics at base_url; returns (body, status)."""
    if not base_url:
        return {"error": "callbackUrl or BASE_URL required"}, 400
    if not (tenant.shop and tenant.access_token):
        return {"error": f"missing domain/token for {tenant.shop or 'unknown'}"}, 400

    factory = current_app.config["STORESYNC_CLIENT_FACTORY"]
    client = factory(tenant.shop, tenant.access_token, current_app.config["STORESYNC_SETTINGS"])
    try:
        results = client.register_webhooks(base_url.rstrip("/") + WEBHOOK_PATH)
    except ShopifyAPIError as e:
        return {"error": f"failed to read existing webhooks: {e}"}, 502
    return {"results": [{"topic": t, "outcome": o} for t, o in results]}, 200


@bp.get("")
def list_tenants():
    store = current_app.config["STORESYNC_STORE"]
    return jsonify([_tenant_json(t) for t in store.list_tenants()])


@bp.post("/onboard")
def onboard():
    if not _is_admin():
        return jsonify({"error": "forbidden"}), 403

    body = request.get_json(silent=True) or {}
    shop = body.get("shop")
    access_token = body.get("accessToken")
    if not shop or not access_token:
        return jsonify({"error": "shop and accessToken required"}), 400

    store = current_app.config["STORESYNC_STORE"]
    tenant = store.upsert_tenant(shop, access_token, body.get("webhookSecret"))
    info(f"[tenants] onboarded {shop}")

    out = _tenant_json(tenant)
    callback_url = body.get("callbackUrl")
    if callback_url:
        registration, status = _register(tenant, callback_url)
        if status != 200:
            warn(f"[tenants] webhook registration failed for {shop}: {registration}")
        out["webhooks"] = registration
    return jsonify(out)


@bp.post("/<tenant_id>/webhooks")
def register_webhooks(tenant_id):
    if not _is_admin():
        return jsonify({"error": "forbidden"}), 403

    store = current_app.config["STORESYNC_STORE"]
    tenant = store.get_tenant(tenant_id)
    if tenant is None:
        return jsonify({"error": "tenant not found"}), 404

    body = request.get_json(silent=True) or {}
    base_url = body.get("callbackUrl") or current_app.config["STORESYNC_SETTINGS"].base_url
    out, status = _register(tenant, base_url)
    return jsonify(out), status
