"""
Periodic full sync.
Runs full_sync for every tenant, one after another, on a fixed interval.
"""

import threading
from datetime import datetime, timedelta
from typing import Optional

from ..config import Settings
from ..db.store import Store
from ..utils.logger import info, error
from .sync import full_sync, SyncError


class SyncScheduler:
    def __init__(self, store: Store, settings: Optional[Settings] = None, sync_fn=full_sync):
        self.store = store
        self.settings = settings or Settings()
        self.sync_fn = sync_fn
        self.stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def _get_next_run(self) -> datetime:
        return datetime.now() + timedelta(minutes=self.settings.sync_interval_minutes)

    def run_once(self) -> dict:
        """Sync every tenant; a failing tenant is logged and skipped."""
        results = {}
        for tenant in self.store.list_tenants():
            if self.stop_event.is_set():
                break
            try:
                stats = self.sync_fn(self.store, tenant.id, self.settings)
                results[tenant.shop] = stats
                info(f"[scheduler] synced {tenant.shop}")
            except SyncError as e:
                error(f"[scheduler] sync skipped for {tenant.shop}: {e}")
            except Exception as e:
                error(f"[scheduler] sync failed for {tenant.shop}: {e}")
        return results

    def run(self):
        """Scheduler loop; blocks until stop() is called."""
        info(f"[scheduler] every {self.settings.sync_interval_minutes} min")
        while not self.stop_event.is_set():
            next_run = self._get_next_run()
            info(f"[scheduler] next sync at {next_run.strftime('%Y-%m-%d %H:%M:%S')}")
            wait = max(0.0, (next_run - datetime.now()).total_seconds())
            if self.stop_event.wait(wait):
                break
            self.run_once()

    def start(self) -> threading.Thread:
        if self._thread and self._thread.is_alive():
            return self._thread
        self._thread = threading.Thread(target=self.run, name="storesync-scheduler", daemon=True)
        self._thread.start()
        return self._thread

    def stop(self):
        info("[scheduler] stopping")
        self.stop_event.set()
