"""Snapshot persistence.

Each successful cycle writes a new `snap_<timestamp>.json` and only then
repoints `latest-snapshot.ptr` at it.  A crash between the two steps
leaves an unreferenced snapshot file behind and the old pointer intact.
"""

from __future__ import annotations

import datetime as _dt
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Iterable, List, Optional

from .errors import PersistenceError
from .scraper import ShopItem

logger = logging.getLogger(__name__)

LATEST_SNAPSHOT_POINTER_PATH = "latest-snapshot.ptr"
SNAPSHOT_NAME_FORMAT = "snap_%Y-%m-%d-%H-%M-%S"


def _atomic_write(path: Path, text: str) -> None:
    """Write `text` to a temp file in the same directory, fsync, then rename over `path`."""
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


class SnapshotStore:
    def __init__(self, storage_path: str | Path) -> None:
        self.storage_path = Path(storage_path)

    @property
    def pointer_path(self) -> Path:
        return self.storage_path / LATEST_SNAPSHOT_POINTER_PATH

    def latest_name(self) -> Optional[str]:
        try:
            name = self.pointer_path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise PersistenceError(f"failed to read {self.pointer_path}: {e}") from e
        return name or None

    def load_latest(self) -> Optional[List[ShopItem]]:
        """Return the latest snapshot, or None on the first run."""
        name = self.latest_name()
        if name is None:
            return None
        path = self.storage_path / name
        try:
            with path.open(encoding="utf-8") as f:
                data = json.load(f)
            return [ShopItem.from_dict(d) for d in data]
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise PersistenceError(f"failed to load snapshot {path}: {e}") from e

    def _new_name(self, now: _dt.datetime) -> str:
        stem = now.strftime(SNAPSHOT_NAME_FORMAT)
        name, n = f"{stem}.json", 1
        while (self.storage_path / name).exists():
            name, n = f"{stem}-{n}.json", n + 1
        return name

    def write_new(self, items: Iterable[ShopItem], now: Optional[_dt.datetime] = None) -> str:
        """Persist `items` as a new snapshot and make it the latest one.

        Returns the snapshot file name.
        """
        now = now or _dt.datetime.now(_dt.timezone.utc)
        payload = json.dumps(
            [item.to_dict() for item in sorted(items, key=lambda it: it.id)],
            indent=2,
            ensure_ascii=False,
        )
        try:
            self.storage_path.mkdir(parents=True, exist_ok=True)
            name = self._new_name(now)
            _atomic_write(self.storage_path / name, payload)
            _atomic_write(self.pointer_path, name)
        except OSError as e:
            raise PersistenceError(f"failed to write snapshot to {self.storage_path}: {e}") from e
        logger.info("Wrote snapshot %s", name)
        return name


__all__ = ["LATEST_SNAPSHOT_POINTER_PATH", "SnapshotStore"]
