# storesync/clients/shopify.py
import re
from typing import Optional, List, Tuple

import requests
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from ..config import Settings, API_VERSION
from ..utils.logger import debug, info, warn

WEBHOOK_TOPICS = [
    "orders/create",
    "orders/updated",
    "customers/create",
    "customers/update",
    "products/create",
    "products/update",
]

TRANSIENT_STATUSES = (429, 502, 503, 504)
MAX_RETRY_AFTER = 60.0

_NEXT_LINK = re.compile(r'<[^>]*[?&]page_info=([^&>]+)[^>]*>;\s*rel="?next"?', re.IGNORECASE)


def admin_base(domain: str, api_version: str = API_VERSION) -> str:
    return f"https://{domain}/admin/api/{api_version}"

def rest_headers(token: str) -> dict:
    return {
        "Content-Type": "application/json",
        "Accept": "application/json",
        "X-Shopify-Access-Token": token,
    }

def next_page_info(link_header: Optional[str]) -> Optional[str]:
    """Return the page_info cursor of the rel="next" entry in a Link header."""
    if not link_header:
        return None
    for part in link_header.split(","):
        m = _NEXT_LINK.search(part.strip())
        if m:
            return m.group(1)
    return None


class ShopifyAPIError(Exception):
    def __init__(self, path: str, status_code: int, body: str = ""):
        self.path = path
        self.status_code = status_code
        self.body = body
        super().__init__(f"Shopify {path} {status_code}: {body}")


class TransientAPIError(ShopifyAPIError):
    def __init__(self, path: str, status_code: int, body: str = "", retry_after: Optional[float] = None):
        self.retry_after = retry_after
        super().__init__(path, status_code, body)


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Seconds from a Retry-After header; Shopify sends e.g. "2.0"."""
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return min(max(seconds, 0.0), MAX_RETRY_AFTER)


class wait_retry_after:
    """tenacity wait: honour the server's Retry-After, else fall back."""

    def __init__(self, fallback):
        self.fallback = fallback

    def __call__(self, retry_state) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        delay = getattr(exc, "retry_after", None)
        if delay is not None:
            return delay
        return self.fallback(retry_state)


class ShopifyClient:
    """Admin REST client for one shop."""

    def __init__(self, shop: str, access_token: str, settings: Optional[Settings] = None, session=None):
        self.shop = shop
        self.settings = settings or Settings()
        self.base_url = admin_base(shop, self.settings.api_version)
        self.session = session or requests.Session()
        self.session.headers.update(rest_headers(access_token))

        # tenacity decorators are built per instance so max_retries comes from settings
        self._get_with_retry = retry(
            reraise=True,
            stop=stop_after_attempt(max(1, self.settings.max_retries)),
            wait=wait_retry_after(wait_exponential(multiplier=0.5, min=0.5, max=6)),
            retry=retry_if_exception_type(TransientAPIError),
        )(self._get_once)

    def _get_once(self, path: str, params: Optional[dict] = None) -> requests.Response:
        r = self.session.get(f"{self.base_url}/{path}.json", params=params or {},
                             timeout=self.settings.request_timeout)
        if r.status_code in TRANSIENT_STATUSES:
            warn(f"[shopify {self.shop}] {path} {r.status_code}, retrying")
            raise TransientAPIError(path, r.status_code, r.text,
                                    retry_after=parse_retry_after(r.headers.get("Retry-After")))
        return r

    def get(self, path: str, params: Optional[dict] = None) -> Tuple[dict, dict]:
        r = self._get_with_retry(path, params)
        if not r.ok:
            raise ShopifyAPIError(path, r.status_code, r.text)
        return r.json(), r.headers

    # =========================================================
    # Collections
    # =========================================================

    def paginate_all(self, path: str, root_key: str, extra_params: Optional[dict] = None) -> List[dict]:
        """
        Follow the Link header until there is no rel="next" entry.
        Shopify only accepts limit alongside page_info, so filters go on the
        first request only.
        """
        out: List[dict] = []
        page_info = None
        pages = 0
        while True:
            params = {"limit": self.settings.page_size}
            if page_info:
                params["page_info"] = page_info
            else:
                params.update(extra_params or {})
            body, headers = self.get(path, params)
            pages += 1
            out.extend(body.get(root_key) or [])
            page_info = next_page_info(headers.get("Link"))
            if not page_info:
                break
        debug(f"[shopify {self.shop}] {path}: {len(out)} records over {pages} pages")
        return out

    def fetch_all_products(self) -> List[dict]:
        return self.paginate_all("products", "products")

    def fetch_all_customers(self) -> List[dict]:
        return self.paginate_all("customers", "customers")

    def fetch_all_orders(self) -> List[dict]:
        return self.paginate_all("orders", "orders", {"status": self.settings.order_status_filter})

    def fetch_customer(self, customer_id: str) -> Optional[dict]:
        try:
            body, _ = self.get(f"customers/{customer_id}")
        except ShopifyAPIError as e:
            if e.status_code == 404:
                return None
            raise
        return body.get("customer")

    # =========================================================
    # Webhook registration
    # =========================================================

    def register_webhooks(self, address: str, topics: Optional[List[str]] = None) -> List[Tuple[str, str]]:
        """
        Make sure every topic points at `address`. An existing subscription
        with another address is moved rather than duplicated.
        """
        topics = topics or WEBHOOK_TOPICS
        timeout = self.settings.request_timeout
        existing = self.paginate_all("webhooks", "webhooks")

        out = []
        for topic in topics:
            found = [w for w in existing if w.get("topic") == topic]

            if found:
                if any(w.get("address") == address for w in found):
                    out.append((topic, "OK"))
                    continue

                wid = found[0].get("id")
                try:
                    upd = self.session.put(
                        f"{self.base_url}/webhooks/{wid}.json",
                        json={"webhook": {"id": wid, "address": address, "format": "json"}},
                        timeout=timeout,
                    )
                    if upd.status_code in (200, 201):
                        out.append((topic, "UPDATED"))
                    else:
                        out.append((topic, f"FAIL {upd.status_code} {upd.text}"))
                except requests.RequestException as e:
                    out.append((topic, f"FAIL exception {e}"))
                continue

            try:
                crt = self.session.post(
                    f"{self.base_url}/webhooks.json",
                    json={"webhook": {"topic": topic, "address": address, "format": "json"}},
                    timeout=timeout,
                )
                if crt.status_code in (201, 202):
                    out.append((topic, "CREATED"))
                else:
                    out.append((topic, f"FAIL {crt.status_code} {crt.text}"))
            except requests.RequestException as e:
                out.append((topic, f"FAIL exception {e}"))

        info(f"[shopify {self.shop}] webhooks: " + "; ".join(f"{o} {t}" for t, o in out))
        return out
