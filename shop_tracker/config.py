"""Configuration loader.

Reads environment variables and `.env` to configure the tracker.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Load variables from a .env file if present (project root).
load_dotenv(dotenv_path=Path(__file__).resolve().parents[1] / ".env")


def _get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def _parse_int(value: Optional[str], default: int) -> int:
    try:
        return int(value) if value is not None else default
    except ValueError:
        return default


def _parse_float(value: Optional[str], default: float) -> float:
    try:
        return float(value) if value is not None else default
    except ValueError:
        return default


# ---- Shop session ------------------------------------------------------------

# Raw `Cookie` header of a logged-in browser session. Required.
SHOP_COOKIE: Optional[str] = _get_env("SHOP_COOKIE")

USER_AGENT: str = _get_env(
    "USER_AGENT",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/143.0.0.0 Safari/537.36",
)

# Storefront root. Should not include a trailing slash.
BASE_URL: str = (_get_env("BASE_URL", "https://flavortown.hackclub.com") or "").rstrip("/")

# ---- Storage -----------------------------------------------------------------

# Directory holding snapshots, the latest pointer and the CDN cache database.
STORAGE_PATH: Path = Path(_get_env("STORAGE_PATH", "data"))

# ---- CDN mirror --------------------------------------------------------------

CDN_UPLOAD_URL: str = _get_env("CDN_UPLOAD_URL", "https://cdn.hackclub.com/api/file")
CDN_TOKEN: str = _get_env("CDN_TOKEN", "beans")

# Number of worker threads resolving images against the cache.
UPLOAD_WORKERS: int = max(1, _parse_int(_get_env("UPLOAD_WORKERS"), 8))

# ---- HTTP --------------------------------------------------------------------

HTTP_TIMEOUT: float = _parse_float(_get_env("HTTP_TIMEOUT"), 30.0)

# Attempts for idempotent GETs only; mutating calls are never retried.
HTTP_RETRIES: int = max(1, _parse_int(_get_env("HTTP_RETRIES"), 3))

# ---- Notifications -----------------------------------------------------------

# Slack-compatible incoming webhook. Required.
WEBHOOK_URL: Optional[str] = _get_env("WEBHOOK_URL")

# Optional links shown in the footer of every notification.
REPO_URL: str = _get_env("REPO_URL", "") or ""
CHANNEL_URL: str = _get_env("CHANNEL_URL", "") or ""

# ---- Loop --------------------------------------------------------------------

# 0 runs a single cycle and exits (cron style).
SCRAPE_INTERVAL_MINUTES: int = max(0, _parse_int(_get_env("SCRAPE_INTERVAL_MINUTES"), 0))

# Logging level: DEBUG, INFO, WARNING, ERROR.
LOG_LEVEL: str = _get_env("LOG_LEVEL", "INFO")


# ---- Validation --------------------------------------------------------------

def validate() -> None:
    """Validate required configuration parameters."""
    missing = [name for name, value in (("SHOP_COOKIE", SHOP_COOKIE), ("WEBHOOK_URL", WEBHOOK_URL)) if not value]
    if missing:
        raise RuntimeError(
            f"{', '.join(missing)} must be set. See .env.example for details."
        )


__all__ = [
    "SHOP_COOKIE",
    "USER_AGENT",
    "BASE_URL",
    "STORAGE_PATH",
    "CDN_UPLOAD_URL",
    "CDN_TOKEN",
    "UPLOAD_WORKERS",
    "HTTP_TIMEOUT",
    "HTTP_RETRIES",
    "WEBHOOK_URL",
    "REPO_URL",
    "CHANNEL_URL",
    "SCRAPE_INTERVAL_MINUTES",
    "LOG_LEVEL",
    "validate",
]
