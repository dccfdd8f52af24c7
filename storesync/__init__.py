import sys
import logging
from flask import Flask
from dotenv import load_dotenv

from .config import Settings


def create_app(settings=None, store=None, client_factory=None):
    load_dotenv()
    settings = settings or Settings.from_env()
    app = Flask(__name__)

    # =========================================================
    # Logging: gunicorn's handlers when running under it, plus stdout
    # =========================================================
    from .utils.logger import logger

    gunicorn_error = logging.getLogger("gunicorn.error")
    app.logger.handlers = gunicorn_error.handlers
    app.logger.setLevel(logging.INFO)

    if not any(getattr(h, "_storesync", False) for h in logger.handlers):
        sh = logging.StreamHandler(sys.stdout)
        sh.setFormatter(logging.Formatter("[%(asctime)s][%(levelname)s] %(message)s", "%H:%M:%S"))
        sh._storesync = True
        logger.addHandler(sh)
        for h in gunicorn_error.handlers:
            logger.addHandler(h)

    # =========================================================
    # Storage, collaborators
    # =========================================================
    from .db.store import Store
    from .clients.shopify import ShopifyClient
    from .services.webhooks import AuditLog

    if store is None:
        store = Store(settings.database_url, supports_raw_event_log=settings.raw_event_log)

    app.config["STORESYNC_SETTINGS"] = settings
    app.config["STORESYNC_STORE"] = store
    app.config["STORESYNC_AUDIT"] = AuditLog()
    app.config["STORESYNC_CLIENT_FACTORY"] = client_factory or ShopifyClient

    # =========================================================
    # Blueprints
    # =========================================================
    from .routes.webhooks import bp as webhooks_bp
    from .routes.tenants import bp as tenants_bp
    from .routes.sync import bp as sync_bp

    app.register_blueprint(webhooks_bp, url_prefix="/api/webhooks")
    app.register_blueprint(tenants_bp, url_prefix="/api/tenants")
    app.register_blueprint(sync_bp, url_prefix="/api")

    # =========================================================
    # Scheduler
    # =========================================================
    if settings.scheduler_enabled:
        from .services.scheduler import SyncScheduler
        scheduler = SyncScheduler(store, settings)
        scheduler.start()
        app.config["STORESYNC_SCHEDULER"] = scheduler

    # =========================================================
    # Health check
    # =========================================================
    @app.get("/health")
    def health():
        app.logger.info("Health check endpoint called")
        return {"ok": True}, 200

    return app
