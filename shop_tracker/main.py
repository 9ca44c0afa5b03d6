from __future__ import annotations

import logging
import sys
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

import requests

from . import cdn, config, notifier, scraper
from .diff import ItemDiff, compute_diff
from .storage import SnapshotStore
from .utils import get_http_session

logger = logging.getLogger(__name__)


def setup_logging() -> None:
    level = getattr(logging, config.LOG_LEVEL.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


@dataclass
class Services:
    """Everything one cycle talks to, wired once per process."""
    client: scraper.ShopClient
    cache: cdn.UploadCache
    snapshots: SnapshotStore
    session: requests.Session
    webhook_url: Optional[str] = None
    upload_workers: int = config.UPLOAD_WORKERS
    blob_id_lookup: Callable[[str], int] = scraper.blob_id_from_url

    def close(self) -> None:
        self.cache.store.close()
        self.client.session.close()
        self.session.close()


def build_services() -> Services:
    shop_session = get_http_session(config.SHOP_COOKIE, config.USER_AGENT)
    # CDN and webhook calls must not carry the shop cookie.
    session = get_http_session(user_agent=config.USER_AGENT)
    uploader = cdn.CdnUploader(
        session,
        upload_url=config.CDN_UPLOAD_URL,
        token=config.CDN_TOKEN,
        download_session=shop_session,
    )
    return Services(
        client=scraper.ShopClient(shop_session, config.BASE_URL),
        cache=cdn.UploadCache(cdn.CdnCacheDB.in_storage(config.STORAGE_PATH), uploader),
        snapshots=SnapshotStore(config.STORAGE_PATH),
        session=session,
        webhook_url=config.WEBHOOK_URL,
        upload_workers=config.UPLOAD_WORKERS,
    )


def run_cycle(services: Services) -> Optional[ItemDiff]:
    """Scrape, mirror images, diff against the latest snapshot and notify.

    Returns the diff, or None on the first run (nothing to compare with).
    Any failure propagates before the snapshot is touched.
    """
    items: List[scraper.ShopItem] = scraper.scrape(services.client, services.blob_id_lookup)

    items = cdn.resolve_images(items, services.cache, services.upload_workers)
    services.cache.flush()
    logger.info("Resolved %d images through the CDN cache", len(items))

    previous = services.snapshots.load_latest()
    if previous is None:
        logger.info("No previous snapshot; storing %d items without notifying.", len(items))
        services.snapshots.write_new(items)
        return None

    diff = compute_diff(previous, items)
    if diff.is_empty:
        logger.info("No shop changes detected this cycle.")
        return diff

    logger.info("Shop changed: %s", diff.summary())
    notifier.send_webhook_notifications(
        diff,
        services.session,
        webhook_url=services.webhook_url,
        base_url=services.client.base_url,
    )
    services.snapshots.write_new(items)
    return diff


def main() -> None:
    """Run one cycle, or loop every SCRAPE_INTERVAL_MINUTES; exit 1 on failure."""
    config.validate()
    setup_logging()

    services = build_services()
    try:
        while True:
            run_cycle(services)
            if not config.SCRAPE_INTERVAL_MINUTES:
                break
            logger.info("Sleeping for %d minutes before next cycle.", config.SCRAPE_INTERVAL_MINUTES)
            time.sleep(config.SCRAPE_INTERVAL_MINUTES * 60)
    except Exception:
        logger.exception("Scrape cycle failed; snapshot left untouched.")
        sys.exit(1)
    finally:
        services.close()


if __name__ == "__main__":
    main()
