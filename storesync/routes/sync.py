# storesync/routes/sync.py
from datetime import date
from flask import Blueprint, request, current_app, jsonify
from sqlalchemy.exc import SQLAlchemyError

from ..services.sync import (
    full_sync,
    sync_customers,
    TenantNotFound,
    TenantMissingCredentials,
    SyncInProgress,
)
from ..utils.logger import error

bp = Blueprint("sync", __name__)

_ERROR_STATUS = {
    TenantNotFound: 404,
    TenantMissingCredentials: 400,
    SyncInProgress: 409,
}


def _run(fn, tenant_id):
    try:
        stats = fn(
            current_app.config["STORESYNC_STORE"],
            tenant_id,
            current_app.config["STORESYNC_SETTINGS"],
            client_factory=current_app.config["STORESYNC_CLIENT_FACTORY"],
        )
    except (TenantNotFound, TenantMissingCredentials, SyncInProgress) as e:
        return jsonify({"error": str(e)}), _ERROR_STATUS[type(e)]
    except Exception as e:
        error(f"[sync {tenant_id}] {e}")
        return jsonify({"error": str(e) or "sync failed"}), 500
    return jsonify({"status": "ok", **stats.as_dict()}), 200

@bp.errorhandler(SQLAlchemyError)
def _storage_error(e):
    error(f"[api] storage error: {e}")
    return jsonify({"error": "storage error"}), 500

def _parse_day(value):
    if not value:
        return None
    return date.fromisoformat(value)


@bp.post("/<tenant_id>/sync")
def sync(tenant_id):
    return _run(full_sync, tenant_id)


@bp.post("/<tenant_id>/sync-customers")
def sync_customers_only(tenant_id):
    return _run(sync_customers, tenant_id)


@bp.get("/<tenant_id>/metrics/summary")
def metrics_summary(tenant_id):
    store = current_app.config["STORESYNC_STORE"]
    return jsonify(store.metrics_summary(tenant_id))


@bp.get("/<tenant_id>/customers/top")
def top_customers(tenant_id):
    store = current_app.config["STORESYNC_STORE"]
    limit = request.args.get("limit", default=5, type=int)
    return jsonify(store.top_customers(tenant_id, limit))


@bp.get("/<tenant_id>/orders/by-date")
def orders_by_date(tenant_id):
    store = current_app.config["STORESYNC_STORE"]
    try:
        start = _parse_day(request.args.get("start"))
        end = _parse_day(request.args.get("end"))
    except ValueError:
        return jsonify({"error": "start/end must be YYYY-MM-DD"}), 400
    return jsonify(store.revenue_by_date(tenant_id, start, end))
