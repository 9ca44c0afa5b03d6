# tests/test_cdn.py
import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from conftest import make_response
from shop_tracker.cdn import (CdnCacheDB, CdnUploader, UploadCache,
                              ext_from_url, resolve_images)
from shop_tracker.errors import PersistenceError, TransportError, UnknownExtension
from shop_tracker.scraper import Region, ShopItem


class FakeCdnSession:
    def __init__(self, status=200, body='{"url": "https://cdn.example.com/abc.png"}'):
        self.status = status
        self.body = body
        self.calls = []

    def get(self, url, **kwargs):
        self.calls.append(("GET", url, kwargs))
        return make_response(200, b"\x89PNG...", url)

    def post(self, url, **kwargs):
        self.calls.append(("POST", url, kwargs))
        return make_response(self.status, self.body, url, "POST")


@pytest.fixture
def store(tmp_path):
    db = CdnCacheDB.in_storage(tmp_path)
    yield db
    db.close()


@pytest.mark.parametrize("url, ext", [
    ("https://x.example/a/b/cat.png", "png"),
    ("https://x.example/a/b/cat.tar.gz?sig=1", "gz"),
    ("https://x.example/a/my%20pic.JPEG#frag", "JPEG"),
    ("https://x.example/a/b/noext", None),
    ("https://x.example/", None),
    ("https://x.example/a/trailing.", None),
])
def test_ext_from_url(url, ext):
    assert ext_from_url(url) == ext


def test_uploader_posts_multipart_with_bearer_token():
    session = FakeCdnSession()
    uploader = CdnUploader(session, upload_url="https://cdn.example.com/api/file", token="s3cret")

    url = uploader.upload("https://shop.example.com/files/sticker.webp")

    assert url == "https://cdn.example.com/abc.png"
    assert session.calls[0][:2] == ("GET", "https://shop.example.com/files/sticker.webp")
    method, post_url, kwargs = session.calls[1]
    assert (method, post_url) == ("POST", "https://cdn.example.com/api/file")
    assert kwargs["headers"] == {"Authorization": "Bearer s3cret"}
    assert kwargs["files"] == {"file": ("image.webp", b"\x89PNG...")}


def test_uploader_downloads_through_its_download_session():
    cdn_session, shop_session = FakeCdnSession(), FakeCdnSession()
    uploader = CdnUploader(cdn_session, download_session=shop_session)
    uploader.upload("https://shop.example.com/a.png")
    assert [c[0] for c in shop_session.calls] == ["GET"]
    assert [c[0] for c in cdn_session.calls] == ["POST"]


def test_uploader_rejects_url_without_extension():
    session = FakeCdnSession()
    with pytest.raises(UnknownExtension):
        CdnUploader(session).upload("https://shop.example.com/blob/12345")
    assert session.calls == []


@pytest.mark.parametrize("status, body", [
    (500, "oops"),
    (401, '{"error": "unauthorized"}'),
    (200, "not json"),
    (200, '{"nope": 1}'),
])
def test_uploader_failures_are_transport_errors(status, body):
    with pytest.raises(TransportError):
        CdnUploader(FakeCdnSession(status, body)).upload("https://shop.example.com/a.png")


def test_store_never_overwrites(store):
    store.insert(1, "https://cdn/first.png")
    store.insert(1, "https://cdn/second.png")
    assert store.get(1) == "https://cdn/first.png"
    assert store.get(2) is None
    assert len(store) == 1


def test_resolve_uploads_on_miss_then_hits_store(store, uploader_factory):
    uploader = uploader_factory()
    cache = UploadCache(store, uploader)

    first = cache.resolve(10, "https://shop.example.com/a.png")
    second = cache.resolve(10, "https://shop.example.com/rotated-signature/a.png")

    assert first == second == "https://cdn.example.com/a.png"
    assert len(uploader.calls) == 1
    assert store.get(10) == first


def test_concurrent_resolves_upload_once(store, uploader_factory):
    uploader = uploader_factory(block=True)
    cache = UploadCache(store, uploader)
    n = 16

    with ThreadPoolExecutor(max_workers=n) as pool:
        futures = [pool.submit(cache.resolve, 42, "https://shop.example.com/x.png") for _ in range(n)]
        assert uploader.started.wait(timeout=5)
        time.sleep(0.2)  # let the other workers reach the in-flight wait
        uploader.release.set()
        results = [f.result(timeout=10) for f in futures]

    assert len(uploader.calls) == 1
    assert set(results) == {"https://cdn.example.com/x.png"}


def test_waiters_share_the_failure_and_later_calls_retry(store, uploader_factory):
    uploader = uploader_factory(fail_times=1, block=True)
    cache = UploadCache(store, uploader)

    with ThreadPoolExecutor(max_workers=4) as pool:
        futures = [pool.submit(cache.resolve, 7, "https://shop.example.com/y.png") for _ in range(4)]
        assert uploader.started.wait(timeout=5)
        time.sleep(0.2)
        uploader.release.set()
        errors = [f.exception(timeout=10) for f in futures]

    assert len(uploader.calls) == 1
    assert all(isinstance(e, RuntimeError) for e in errors)
    assert store.get(7) is None

    assert cache.resolve(7, "https://shop.example.com/y.png") == "https://cdn.example.com/y.png"
    assert len(uploader.calls) == 2


def test_fresh_cache_over_same_store_makes_no_remote_calls(tmp_path, uploader_factory):
    store = CdnCacheDB.in_storage(tmp_path)
    url = UploadCache(store, uploader_factory()).resolve(5, "https://shop.example.com/z.gif")
    store.flush()
    store.close()

    class NoUploads:
        def upload(self, source_url):
            raise AssertionError("unexpected upload")

    reopened = CdnCacheDB.in_storage(tmp_path)
    try:
        assert UploadCache(reopened, NoUploads()).resolve(5, "https://shop.example.com/other.gif") == url
    finally:
        reopened.close()


def test_uploads_survive_close_without_flush(tmp_path, uploader_factory):
    store = CdnCacheDB.in_storage(tmp_path)
    UploadCache(store, uploader_factory()).resolve(5, "https://shop.example.com/z.gif")

    other = CdnCacheDB.in_storage(tmp_path)
    try:
        assert other.get(5) == "https://cdn.example.com/z.gif"
    finally:
        other.close()

    store.close()
    reopened = CdnCacheDB.in_storage(tmp_path)
    try:
        assert reopened.get(5) == "https://cdn.example.com/z.gif"
    finally:
        reopened.close()


def test_store_read_errors_are_persistence_errors(tmp_path):
    store = CdnCacheDB.in_storage(tmp_path)
    store.close()
    with pytest.raises(PersistenceError):
        len(store)
    with pytest.raises(PersistenceError):
        store.get(1)


def test_resolve_images_swaps_urls_in_parallel(store, uploader_factory):
    uploader = uploader_factory()
    cache = UploadCache(store, uploader)
    items = [
        ShopItem(i, f"item {i}", "", f"https://shop.example.com/{i % 2}.png", {Region.UNITED_STATES: i}, image_id=i % 2)
        for i in range(1, 7)
    ]

    resolved = resolve_images(items, cache, max_workers=4)

    assert [i.id for i in resolved] == [1, 2, 3, 4, 5, 6]
    assert {i.image_url for i in resolved} == {"https://cdn.example.com/0.png", "https://cdn.example.com/1.png"}
    assert resolved[0].prices == items[0].prices
    assert len(uploader.calls) == 2


def test_resolve_images_propagates_failures(store, uploader_factory):
    cache = UploadCache(store, uploader_factory(fail_times=99))
    items = [ShopItem(1, "a", "", "https://shop.example.com/a.png", {Region.GLOBAL: 1}, image_id=1)]
    with pytest.raises(RuntimeError):
        resolve_images(items, cache)


def test_resolve_images_stops_queued_uploads_after_a_failure(store):
    class FirstImageFails:
        def __init__(self):
            self.calls = []

        def upload(self, source_url):
            self.calls.append(source_url)
            if source_url.endswith("/0.png"):
                raise UnknownExtension(source_url)
            return "https://cdn.example.com/" + source_url.rsplit("/", 1)[-1]

    uploader = FirstImageFails()
    cache = UploadCache(store, uploader)
    items = [
        ShopItem(i, f"item {i}", "", f"https://shop.example.com/{i}.png", {Region.UNITED_STATES: 1}, image_id=i)
        for i in range(20)
    ]

    with pytest.raises(UnknownExtension):
        resolve_images(items, cache, max_workers=1)

    # the single worker may already have picked up the next item
    assert len(uploader.calls) <= 2
    assert len(store) == len(uploader.calls) - 1
