"""Change detection between two snapshots."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, List, Tuple

from .scraper import ShopItem


@dataclass
class ItemDiff:
    new_items: List[ShopItem] = field(default_factory=list)
    deleted_items: List[ShopItem] = field(default_factory=list)
    updated_items: List[Tuple[ShopItem, ShopItem]] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.new_items or self.deleted_items or self.updated_items)

    def summary(self) -> str:
        return (
            f"{len(self.new_items)} new, {len(self.updated_items)} updated, "
            f"{len(self.deleted_items)} removed"
        )


def compute_diff(old_items: Iterable[ShopItem], new_items: Iterable[ShopItem]) -> ItemDiff:
    """Classify items by id as new, deleted or updated (old, new).

    Updated means any field differs, including a single region's price or
    a region appearing or disappearing.  Results are ordered by id.
    """
    old_map = {item.id: item for item in old_items}
    new_map = {item.id: item for item in new_items}

    return ItemDiff(
        new_items=[new_map[i] for i in sorted(new_map.keys() - old_map.keys())],
        deleted_items=[old_map[i] for i in sorted(old_map.keys() - new_map.keys())],
        updated_items=[
            (old_map[i], new_map[i])
            for i in sorted(old_map.keys() & new_map.keys())
            if old_map[i] != new_map[i]
        ],
    )


__all__ = ["ItemDiff", "compute_diff"]
