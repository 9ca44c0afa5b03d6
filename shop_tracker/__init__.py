"""
Shop tracker package.

This package contains modules for scraping the storefront under every
region, mirroring item images to the CDN, persisting snapshots, diffing
them and notifying a Slack webhook.  See DESIGN.md for details.
"""

__all__ = [
    "cdn",
    "config",
    "diff",
    "errors",
    "main",
    "notifier",
    "scraper",
    "storage",
    "utils",
]
