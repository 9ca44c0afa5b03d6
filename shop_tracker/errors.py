"""Exception hierarchy.

Every failure aborts the current cycle; nothing here is meant to be caught
below `main`.
"""

from __future__ import annotations


class ShopTrackerError(Exception):
    """Base class for all tracker failures."""


class ExtractionError(ShopTrackerError):
    """A required page element is missing or unparsable."""


class MissingField(ExtractionError):
    def __init__(self, selector: str) -> None:
        super().__init__(f"missing element: {selector}")
        self.selector = selector


class InvalidPrice(ExtractionError):
    def __init__(self, text: str) -> None:
        super().__init__(f"no digits in price text {text!r}")
        self.text = text


class RegionConsistencyError(ShopTrackerError):
    """The shop page does not show the region we just selected."""

    def __init__(self, expected: str, actual: str) -> None:
        super().__init__(f"selected region is {actual!r}, expected {expected!r}")
        self.expected = expected
        self.actual = actual


class TransportError(ShopTrackerError):
    """Network failure or non-success status from any remote endpoint."""


class UnknownExtension(TransportError):
    def __init__(self, url: str) -> None:
        super().__init__(f"couldn't get a file extension from {url}")
        self.url = url


class PersistenceError(ShopTrackerError):
    """Snapshot or cache store could not be opened, read, written or flushed."""


__all__ = [
    "ShopTrackerError",
    "ExtractionError",
    "MissingField",
    "InvalidPrice",
    "RegionConsistencyError",
    "TransportError",
    "UnknownExtension",
    "PersistenceError",
]
