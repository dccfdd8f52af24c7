# storesync/routes/webhooks.py
import json
import threading
import time
from flask import Blueprint, request, current_app

from ..utils.security import verify_webhook_hmac, resolve_webhook_secret
from ..utils.logger import debug, warn
from ..services.webhooks import DispatchResult, dispatch

bp = Blueprint("webhooks", __name__)

# In-memory idempotency (best-effort)
_SEEN_IDS: dict[str, float] = {}
_SEEN_TTL = 60 * 10  # 10 minutes
_SEEN_LOCK = threading.Lock()

def _seen(webhook_id: str) -> bool:
    if not webhook_id:
        return False
    now = time.time()
    with _SEEN_LOCK:
        for k, ts in list(_SEEN_IDS.items()):
            if now - ts > _SEEN_TTL:
                _SEEN_IDS.pop(k, None)
        if webhook_id in _SEEN_IDS:
            return True
        _SEEN_IDS[webhook_id] = now
        return False


@bp.post("/shopify")
def shopify():
    store = current_app.config["STORESYNC_STORE"]
    settings = current_app.config["STORESYNC_SETTINGS"]
    audit = current_app.config["STORESYNC_AUDIT"]

    shop = request.headers.get("X-Shopify-Shop-Domain", "")
    their_hmac = request.headers.get("X-Shopify-Hmac-Sha256", "")
    topic = request.headers.get("X-Shopify-Topic", "")
    webhook_id = request.headers.get("X-Shopify-Webhook-Id", "")

    if not shop:
        return "missing shop header", 400
    raw = request.get_data(cache=True)
    if not raw:
        warn(f"[webhook {shop}] empty body, cannot verify")
        return "missing raw body", 400

    tenant = store.get_tenant_by_shop(shop)
    if tenant is None:
        warn(f"[webhook {shop}] unknown shop")
        return "unknown shop", 401

    if not verify_webhook_hmac(raw, their_hmac, resolve_webhook_secret(tenant, settings)):
        warn(f"[webhook {shop}] invalid hmac")
        return "invalid hmac", 401

    if _seen(webhook_id):
        debug(f"[webhook {shop}] duplicate delivery {webhook_id}, skipped")
        return "ok", 200

    try:
        payload = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        audit.record(shop, DispatchResult(topic, "failed", ok=False, error=f"body is not JSON: {e}"))
        return "ok", 200

    audit.record(shop, dispatch(store, tenant.id, topic, payload))
    return "ok", 200
