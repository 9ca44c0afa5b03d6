from __future__ import annotations

import base64
import binascii
import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence
from urllib.parse import unquote, urljoin, urlparse

import requests
from bs4 import BeautifulSoup
from bs4.element import Tag

from .config import BASE_URL
from .errors import ExtractionError, InvalidPrice, MissingField, RegionConsistencyError
from .utils import checked_request, retryable_request

logger = logging.getLogger(__name__)


class Region(Enum):
    """Shop regions, in the order they are scraped.

    The order matters: the first region listing an item supplies its
    title, description and image.
    """

    UNITED_STATES = "US"
    EUROPE = "EU"
    UNITED_KINGDOM = "UK"
    INDIA = "IN"
    CANADA = "CA"
    AUSTRALIA = "AU"
    GLOBAL = "XX"

    @property
    def code(self) -> str:
        return self.value

    @property
    def label(self) -> str:
        return _REGION_LABELS[self]

    @classmethod
    def from_code(cls, code: str) -> "Region":
        return cls(code)

    def __str__(self) -> str:
        return self.label


_REGION_LABELS = {
    Region.UNITED_STATES: "United States",
    Region.EUROPE: "EU",
    Region.UNITED_KINGDOM: "United Kingdom",
    Region.INDIA: "India",
    Region.CANADA: "Canada",
    Region.AUSTRALIA: "Australia",
    Region.GLOBAL: "Rest of World",
}


@dataclass(frozen=True)
class ShopItem:
    id: int
    title: str
    description: str
    image_url: str
    prices: Dict[Region, int]
    image_id: int = field(default=0, compare=False)

    def __post_init__(self) -> None:
        if not self.prices:
            raise ValueError(f"shop item {self.id} has no regional price")
        if not all(isinstance(r, Region) for r in self.prices):
            raise ValueError(f"shop item {self.id} has prices for unknown regions")

    def buy_link(self, base_url: str = BASE_URL) -> str:
        return f"{base_url.rstrip('/')}/shop/order?shop_item_id={self.id}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "image_url": self.image_url,
            "image_id": self.image_id,
            # region order, not insertion order, so snapshots are stable
            "prices": {r.code: self.prices[r] for r in Region if r in self.prices},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ShopItem":
        return cls(
            id=int(data["id"]),
            title=str(data["title"]),
            description=str(data.get("description") or ""),
            image_url=str(data["image_url"]),
            prices={Region.from_code(code): int(p) for code, p in data["prices"].items()},
            image_id=int(data.get("image_id") or 0),
        )


@dataclass(frozen=True)
class RawShopItem:
    """One item card as seen under a single region."""
    id: int
    title: str
    description: str
    price: int
    image_url: str
    image_id: int
    region: Region


# ---- Item extraction ---------------------------------------------------------

_CARD_SELECTOR = ".shop-item-card"
_TITLE_SELECTOR = "h4"
_DESCRIPTION_SELECTOR = "div.shop-item-card__description > p"
_PRICE_SELECTOR = "span.shop-item-card__price"
_IMAGE_SELECTOR = "div.shop-item-card__image > img"
_ID_ATTR = "data-shop-id"
_SELECTED_REGION_SELECTOR = (
    "button.dropdown__button > span.dropdown__selected > span.dropdown__char-span"
)
_CSRF_SELECTOR = 'meta[name="csrf-token"]'


def _select_one(element: Tag, selector: str) -> Tag:
    el = element.select_one(selector)
    if el is None:
        raise MissingField(selector)
    return el


def parse_price(text: str) -> int:
    """Keep only the digits of a price label ("1,200 🐚" -> 1200)."""
    digits = re.sub(r"[^0-9]", "", text or "")
    if not digits:
        raise InvalidPrice(text)
    return int(digits)


def _b64decode(data: str) -> bytes:
    data = data.replace("-", "+").replace("_", "/")
    return base64.b64decode(data + "=" * (-len(data) % 4), validate=True)


def _unmarshal_int(raw: bytes) -> Optional[int]:
    """Decode a Ruby Marshal dump of a single non-negative Integer."""
    if raw[:3] != b"\x04\x08i" or len(raw) < 4:
        return None
    c = raw[3]
    if c == 0:
        return 0
    if 5 <= c < 128:
        return c - 5
    if 1 <= c <= 4 and len(raw) >= 4 + c:
        return int.from_bytes(raw[4:4 + c], "little")
    return None


def _decode_signed_blob_id(segment: str) -> Optional[int]:
    payload = segment.rsplit("--", 1)[0]
    try:
        envelope = json.loads(_b64decode(payload))
    except (binascii.Error, ValueError):
        return None
    rails = envelope.get("_rails") if isinstance(envelope, dict) else None
    if not isinstance(rails, dict) or rails.get("pur") != "blob_id":
        return None
    if isinstance(rails.get("data"), int):
        return rails["data"]
    message = rails.get("message")
    if isinstance(message, str):
        try:
            return _unmarshal_int(_b64decode(message))
        except (binascii.Error, ValueError):
            return None
    return None


def blob_id_from_url(url: str) -> int:
    """Return the storage blob id behind an ActiveStorage image URL.

    Image URLs are signed and rotate between page loads, so the blob id
    embedded in the signed path segment is the stable image identity.
    """
    for segment in urlparse(url).path.split("/"):
        segment = unquote(segment)
        if "--" not in segment:
            continue
        blob_id = _decode_signed_blob_id(segment)
        if blob_id is not None:
            return blob_id
    raise ExtractionError(f"couldn't find a blob id in image url {url}")


def parse_shop_item(
    card: Tag,
    region: Region,
    blob_id_lookup: Callable[[str], int] = blob_id_from_url,
    base_url: str = BASE_URL,
) -> RawShopItem:
    title = _select_one(card, _TITLE_SELECTOR).get_text(strip=True)
    description = _select_one(card, _DESCRIPTION_SELECTOR).get_text(strip=True)
    price = parse_price(_select_one(card, _PRICE_SELECTOR).get_text(strip=True))

    src = _select_one(card, _IMAGE_SELECTOR).get("src")
    if not src:
        raise MissingField(f"{_IMAGE_SELECTOR}[src]")
    image_url = urljoin(base_url.rstrip("/") + "/", src)

    raw_id = card.get(_ID_ATTR)
    if raw_id is None:
        raise MissingField(f"{_CARD_SELECTOR}[{_ID_ATTR}]")
    try:
        item_id = int(str(raw_id).strip())
    except ValueError as e:
        raise ExtractionError(f"item id {raw_id!r} is not an integer") from e

    return RawShopItem(
        id=item_id,
        title=title,
        description=description,
        price=price,
        image_url=image_url,
        image_id=blob_id_lookup(image_url),
        region=region,
    )


def parse_shop_items(
    html: str,
    region: Region,
    blob_id_lookup: Callable[[str], int] = blob_id_from_url,
    base_url: str = BASE_URL,
) -> List[RawShopItem]:
    """Parse every item card on a shop page rendered for `region`."""
    soup = BeautifulSoup(html, "html.parser")
    return [
        parse_shop_item(card, region, blob_id_lookup, base_url)
        for card in soup.select(_CARD_SELECTOR)
    ]


def read_selected_region(html: str) -> str:
    soup = BeautifulSoup(html, "html.parser")
    return _select_one(soup, _SELECTED_REGION_SELECTOR).get_text(strip=True)


def read_csrf_token(html: str) -> str:
    soup = BeautifulSoup(html, "html.parser")
    token = _select_one(soup, _CSRF_SELECTOR).get("content")
    if not token:
        raise MissingField(f"{_CSRF_SELECTOR}[content]")
    return token


# ---- Page fetching -----------------------------------------------------------

@retryable_request
def _get(session: requests.Session, url: str, **kwargs: Any) -> requests.Response:
    """Thin wrapper around session.get with retry policy from utils.retryable_request."""
    return session.get(url, **kwargs)


@checked_request
def _patch(session: requests.Session, url: str, **kwargs: Any) -> requests.Response:
    return session.patch(url, **kwargs)


class ShopClient:
    """Authenticated access to the shop pages.

    Region selection is stored server-side in the session, so one client
    must never scrape two regions at the same time.
    """

    def __init__(self, session: requests.Session, base_url: str = BASE_URL) -> None:
        self.session = session
        self.base_url = base_url.rstrip("/")

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    def fetch_shop_page(self) -> str:
        return _get(self.session, self._url("shop")).text

    def get_csrf_token(self) -> str:
        return read_csrf_token(self.fetch_shop_page())

    def set_region(self, region: Region, csrf_token: str) -> None:
        _patch(
            self.session,
            self._url("shop/update_region"),
            headers={"X-CSRF-Token": csrf_token},
            data={"region": region.code},
        )

    def scrape_region(
        self,
        region: Region,
        csrf_token: str,
        blob_id_lookup: Callable[[str], int] = blob_id_from_url,
    ) -> List[RawShopItem]:
        """Select `region`, reload the shop and parse its cards.

        Selecting a region and reading the page are two separate requests,
        so the page is checked to really show `region` before parsing.
        """
        self.set_region(region, csrf_token)
        html = self.fetch_shop_page()

        selected = read_selected_region(html)
        if selected != region.label:
            raise RegionConsistencyError(region.label, selected)

        items = parse_shop_items(html, region, blob_id_lookup, self.base_url)
        logger.info("Region %s: %d items", region.code, len(items))
        return items


# ---- Region merge ------------------------------------------------------------

def merge_regions(
    regions: Sequence[Region],
    scrape_region: Callable[[Region], Iterable[RawShopItem]],
) -> List[ShopItem]:
    """Scrape every region in order and fold the results into one item per id.

    Non-price fields come from the first region that lists an item; later
    regions only add their price.  Any failure propagates, so a partial
    merge is never returned.
    """
    first_seen: Dict[int, RawShopItem] = {}
    prices: Dict[int, Dict[Region, int]] = {}

    for region in regions:
        for raw in scrape_region(region):
            if raw.id not in first_seen:
                first_seen[raw.id] = raw
                prices[raw.id] = {}
            prices[raw.id][region] = raw.price

    return [
        ShopItem(
            id=item_id,
            title=raw.title,
            description=raw.description,
            image_url=raw.image_url,
            prices=prices[item_id],
            image_id=raw.image_id,
        )
        for item_id, raw in sorted(first_seen.items())
    ]


def scrape(
    client: ShopClient,
    blob_id_lookup: Callable[[str], int] = blob_id_from_url,
    regions: Sequence[Region] = tuple(Region),
) -> List[ShopItem]:
    """Scrape the whole shop under every region and merge the listings."""
    csrf_token = client.get_csrf_token()
    items = merge_regions(
        regions,
        lambda region: client.scrape_region(region, csrf_token, blob_id_lookup),
    )
    logger.info("Merged %d items across %d regions", len(items), len(regions))
    return items


__all__ = [
    "Region",
    "ShopItem",
    "RawShopItem",
    "ShopClient",
    "blob_id_from_url",
    "parse_price",
    "parse_shop_item",
    "parse_shop_items",
    "read_selected_region",
    "read_csrf_token",
    "merge_regions",
    "scrape",
]
