import json
from urllib.parse import urlsplit

from requests import Response

from storesync.clients.shopify import ShopifyClient

SHOP = "acme.myshopify.com"


def make_response(body=None, status: int = 200, headers: dict | None = None) -> Response:
    resp = Response()
    resp.status_code = status
    resp._content = json.dumps(body if body is not None else {}).encode("utf-8")
    resp.encoding = "utf-8"
    if headers:
        resp.headers.update(headers)
    return resp


def next_link(path: str, page_info: str, shop: str = SHOP) -> str:
    return f'<https://{shop}/admin/api/2025-04/{path}.json?limit=250&page_info={page_info}>; rel="next"'


def prev_link(path: str, page_info: str, shop: str = SHOP) -> str:
    return f'<https://{shop}/admin/api/2025-04/{path}.json?limit=250&page_info={page_info}>; rel="previous"'


class FakeShopify:
    """
    Stand-in for requests.Session. Responses are queued per (method, path),
    where path is the part after /admin/api/<version>/ without ".json".
    Unrouted GETs answer 404.
    """

    def __init__(self):
        self.headers = {}
        self.calls = []
        self._routes = {}

    def add(self, method: str, path: str, *responses: Response) -> "FakeShopify":
        self._routes.setdefault((method, path), []).extend(responses)
        return self

    def _path(self, url: str) -> str:
        parts = urlsplit(url).path.split("/")
        # ['', 'admin', 'api', '<version>', ...]
        return "/".join(parts[4:]).removesuffix(".json")

    def _answer(self, method, url, params=None, json=None):
        path = self._path(url)
        self.calls.append((method, path, dict(params or {}), json))
        queue = self._routes.get((method, path))
        if not queue:
            return make_response({"errors": "Not Found"}, status=404)
        return queue.pop(0)

    def get(self, url, params=None, timeout=None, **kwargs):
        return self._answer("GET", url, params=params)

    def post(self, url, json=None, timeout=None, **kwargs):
        return self._answer("POST", url, json=json)

    def put(self, url, json=None, timeout=None, **kwargs):
        return self._answer("PUT", url, json=json)

    def requests_for(self, method: str, path: str):
        return [c for c in self.calls if c[0] == method and c[1] == path]

    def client_factory(self, shop, token, settings=None):
        return ShopifyClient(shop, token, settings, session=self)


def paged(path: str, root_key: str, pages: list) -> list:
    """Build responses for a list of record pages, linking all but the last."""
    out = []
    for i, records in enumerate(pages):
        headers = {}
        links = []
        if i > 0:
            links.append(prev_link(path, f"prev{i}"))
        if i < len(pages) - 1:
            links.append(next_link(path, f"cursor{i + 1}"))
        if links:
            headers["Link"] = ", ".join(links)
        out.append(make_response({root_key: records}, headers=headers))
    return out
