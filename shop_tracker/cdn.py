"""CDN mirroring with a persistent, content-keyed upload cache.

Shop image URLs are signed and rotate, so images are keyed by their blob
id.  Two layers keep uploads down to one per image:

* `CdnCacheDB` (sqlite, on disk) remembers uploads across runs;
* `UploadCache` holds one Future per in-flight blob id so concurrent
  workers asking for the same image share a single upload.
"""

from __future__ import annotations

import logging
import os
import sqlite3
import threading
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import replace
from pathlib import Path, PurePosixPath
from typing import Dict, Iterable, List, Optional
from urllib.parse import unquote, urlparse

import requests

from . import config
from .errors import PersistenceError, TransportError, UnknownExtension
from .scraper import ShopItem
from .utils import checked_request, retryable_request

logger = logging.getLogger(__name__)

CDN_CACHE_PATH = "cdn-cache.sqlite3"


class CdnCacheDB:
    """blob id -> mirrored URL, stored in sqlite.

    Every insert is committed at once in WAL mode with
    `synchronous=NORMAL`, so an upload survives a cycle that fails later;
    `flush()` checkpoints the WAL and fsyncs the database once per cycle.
    The connection is shared by the worker threads behind a lock.
    """

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = Path(db_path)
        self._lock = threading.Lock()
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False, isolation_level="DEFERRED")
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA synchronous=NORMAL")
            self._conn.execute("""
              CREATE TABLE IF NOT EXISTS cdn_cache (
                blob_id TEXT PRIMARY KEY,
                url TEXT NOT NULL
              )
            """)
            self._conn.commit()
        except (sqlite3.Error, OSError) as e:
            raise PersistenceError(f"failed to open cdn cache at {self.db_path}: {e}") from e

    @classmethod
    def in_storage(cls, storage_path: str | Path) -> "CdnCacheDB":
        return cls(Path(storage_path) / CDN_CACHE_PATH)

    @staticmethod
    def _key(blob_id: int) -> str:
        return str(blob_id)

    def get(self, blob_id: int) -> Optional[str]:
        with self._lock:
            try:
                cur = self._conn.execute(
                    "SELECT url FROM cdn_cache WHERE blob_id = ? LIMIT 1",
                    (self._key(blob_id),),
                )
                row = cur.fetchone()
            except sqlite3.Error as e:
                raise PersistenceError(f"cdn cache read failed: {e}") from e
        return row[0] if row else None

    def insert(self, blob_id: int, url: str) -> None:
        """Record an upload. An existing entry is never overwritten."""
        with self._lock:
            try:
                self._conn.execute(
                    "INSERT OR IGNORE INTO cdn_cache (blob_id, url) VALUES (?, ?)",
                    (self._key(blob_id), url),
                )
                self._conn.commit()
            except sqlite3.Error as e:
                raise PersistenceError(f"cdn cache write failed: {e}") from e

    def __len__(self) -> int:
        with self._lock:
            try:
                return self._conn.execute("SELECT COUNT(*) FROM cdn_cache").fetchone()[0]
            except sqlite3.Error as e:
                raise PersistenceError(f"cdn cache read failed: {e}") from e

    def flush(self) -> None:
        """Checkpoint the WAL into the database file and fsync it."""
        with self._lock:
            try:
                self._conn.commit()
                self._conn.execute("PRAGMA wal_checkpoint(FULL)")
                fd = os.open(self.db_path, os.O_RDONLY)
                try:
                    os.fsync(fd)
                finally:
                    os.close(fd)
            except (sqlite3.Error, OSError) as e:
                raise PersistenceError(f"cdn cache flush failed: {e}") from e

    def close(self) -> None:
        with self._lock:
            try:
                self._conn.commit()
            finally:
                self._conn.close()


def ext_from_url(url: str) -> Optional[str]:
    filename = PurePosixPath(unquote(urlparse(url).path)).name
    suffix = PurePosixPath(filename).suffix
    return suffix[1:] if len(suffix) > 1 else None


@retryable_request
def _get(session: requests.Session, url: str, **kwargs) -> requests.Response:
    return session.get(url, **kwargs)


@checked_request
def _post(session: requests.Session, url: str, **kwargs) -> requests.Response:
    return session.post(url, **kwargs)


class CdnUploader:
    """Downloads a source image and re-uploads it to the CDN.

    `download_session` fetches source images (it may carry the shop
    cookie); `session` talks to the CDN.
    """

    def __init__(
        self,
        session: requests.Session,
        upload_url: str = config.CDN_UPLOAD_URL,
        token: str = config.CDN_TOKEN,
        download_session: Optional[requests.Session] = None,
    ) -> None:
        self.session = session
        self.download_session = download_session or session
        self.upload_url = upload_url
        self.token = token

    def upload(self, source_url: str) -> str:
        ext = ext_from_url(source_url)
        if not ext:
            raise UnknownExtension(source_url)

        # Image hosts may redirect to signed storage URLs.
        data = _get(self.download_session, source_url, allow_redirects=True).content

        resp = _post(
            self.session,
            self.upload_url,
            headers={"Authorization": f"Bearer {self.token}"},
            files={"file": (f"image.{ext}", data)},
        )
        try:
            url = resp.json()["url"]
        except (ValueError, KeyError, TypeError) as e:
            raise TransportError(f"unexpected CDN response: {resp.text[:200]!r}") from e
        if not isinstance(url, str) or not url:
            raise TransportError(f"unexpected CDN url {url!r}")
        return url


class UploadCache:
    """Resolves blob ids to CDN URLs, uploading each image at most once."""

    def __init__(self, store: CdnCacheDB, uploader: CdnUploader) -> None:
        self.store = store
        self.uploader = uploader
        self._inflight: Dict[int, Future] = {}
        self._inflight_lock = threading.Lock()

    def resolve(self, blob_id: int, source_url: str) -> str:
        cached = self.store.get(blob_id)
        if cached is not None:
            return cached

        with self._inflight_lock:
            future = self._inflight.get(blob_id)
            owner = future is None
            if owner:
                future = Future()
                self._inflight[blob_id] = future

        if not owner:
            # Same outcome as the owner, success or failure.
            return future.result()

        logger.debug("Didn't find %s (blob ID: %s) - uploading to CDN.", source_url, blob_id)
        try:
            url = self.uploader.upload(source_url)
            self.store.insert(blob_id, url)
        except BaseException as e:
            # Let a later call try again.
            with self._inflight_lock:
                self._inflight.pop(blob_id, None)
            future.set_exception(e)
            raise
        future.set_result(url)
        return url

    def flush(self) -> None:
        self.store.flush()


def resolve_images(items: Iterable[ShopItem], cache: UploadCache, max_workers: int = config.UPLOAD_WORKERS) -> List[ShopItem]:
    """Return copies of `items` whose image_url points at the CDN.

    On the first failing resolve, queued work is cancelled and the error is
    re-raised once the running workers have stopped.
    """
    items = list(items)
    if not items:
        return []
    urls: List[Optional[str]] = [None] * len(items)
    pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="cdn")
    try:
        futures = {
            pool.submit(cache.resolve, item.image_id, item.image_url): n
            for n, item in enumerate(items)
        }
        for future in as_completed(futures):
            urls[futures[future]] = future.result()
    except BaseException:
        pool.shutdown(wait=True, cancel_futures=True)
        raise
    pool.shutdown(wait=True)
    return [replace(item, image_url=url) for item, url in zip(items, urls)]


__all__ = [
    "CDN_CACHE_PATH",
    "CdnCacheDB",
    "CdnUploader",
    "UploadCache",
    "ext_from_url",
    "resolve_images",
]
