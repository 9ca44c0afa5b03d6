# tests/conftest.py
import sys
import os

ROOT_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
sys.path.insert(0, ROOT_DIR)

import base64
import json
import threading
from typing import Dict, List, Optional

import pytest
import requests

from shop_tracker.scraper import Region

BASE_URL = "https://shop.example.com"


def signed_blob_url(blob_id: int, filename: str = "image.png") -> str:
    """Build an ActiveStorage-style redirect URL carrying `blob_id`."""
    envelope = json.dumps({"_rails": {"data": blob_id, "pur": "blob_id"}}).encode()
    signed = base64.urlsafe_b64encode(envelope).decode().rstrip("=") + "--0123abcd"
    return f"{BASE_URL}/rails/active_storage/blobs/redirect/{signed}/{filename}"


def make_response(status: int = 200, body: bytes | str = b"", url: str = BASE_URL, method: str = "GET",
                  headers: Optional[Dict[str, str]] = None) -> requests.Response:
    resp = requests.Response()
    resp.status_code = status
    resp._content = body.encode() if isinstance(body, str) else body
    resp.url = url
    resp.headers.update(headers or {})
    resp.request = requests.Request(method, url).prepare()
    return resp


def render_card(item_id, title="Sticker", description="A sticker", price="10 🐚",
                image_url=None, drop=()) -> str:
    """Render one shop item card; `drop` names parts to leave out."""
    image_url = image_url or signed_blob_url(item_id * 100)
    parts = []
    if "title" not in drop:
        parts.append(f"<h4>{title}</h4>")
    if "description" not in drop:
        parts.append(f'<div class="shop-item-card__description"><p>{description}</p></div>')
    if "price" not in drop:
        parts.append(f'<span class="shop-item-card__price">{price}</span>')
    if "image" not in drop:
        parts.append(f'<div class="shop-item-card__image"><img src="{image_url}"></div>')
    id_attr = "" if "id" in drop else f' data-shop-id="{item_id}"'
    return f'<div class="shop-item-card"{id_attr}>{"".join(parts)}</div>'


def render_shop_page(cards: List[str], selected_label: str = "United States", csrf: str = "tok123") -> str:
    return f"""
    <html>
      <head><meta name="csrf-token" content="{csrf}"></head>
      <body>
        <button class="dropdown__button">
          <span class="dropdown__selected"><span class="dropdown__char-span">{selected_label}</span></span>
        </button>
        {"".join(cards)}
      </body>
    </html>
    """


class FakeShopSession:
    """Stands in for the shop's requests.Session.

    `catalog` maps region -> list of card kwargs; the page served by
    GET /shop reflects the last region selected with PATCH.
    """

    def __init__(self, catalog: Dict[Region, List[dict]], ignore_region_for: Optional[Region] = None):
        self.catalog = catalog
        self.region: Optional[Region] = None
        self.ignore_region_for = ignore_region_for
        self.calls: List[tuple] = []
        self.headers: Dict[str, str] = {}

    def _page(self) -> str:
        region = self.region or Region.UNITED_STATES
        cards = [render_card(**kw) for kw in self.catalog.get(region, [])]
        return render_shop_page(cards, selected_label=region.label)

    def get(self, url, **kwargs):
        self.calls.append(("GET", url, kwargs))
        return make_response(200, self._page(), url)

    def patch(self, url, **kwargs):
        self.calls.append(("PATCH", url, kwargs))
        region = Region.from_code(kwargs["data"]["region"])
        if region != self.ignore_region_for:
            self.region = region
        return make_response(200, "", url, "PATCH")

    def close(self):
        pass


class FakeUploader:
    """Counts uploads; optionally blocks until released or fails."""

    def __init__(self, fail_times: int = 0, block: bool = False):
        self.calls: List[str] = []
        self.fail_times = fail_times
        self.started = threading.Event()
        self.release = threading.Event()
        if not block:
            self.release.set()
        self._lock = threading.Lock()

    def upload(self, source_url: str) -> str:
        with self._lock:
            self.calls.append(source_url)
            n = len(self.calls)
        self.started.set()
        self.release.wait(timeout=10)
        if n <= self.fail_times:
            raise RuntimeError(f"upload {n} failed")
        return "https://cdn.example.com/" + source_url.rsplit("/", 1)[-1]


@pytest.fixture
def shop_session_factory():
    return FakeShopSession


@pytest.fixture
def uploader_factory():
    return FakeUploader
