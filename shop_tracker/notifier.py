"""Slack webhook notifier.

Renders an `ItemDiff` as Slack block-kit blocks and posts them to a
Slack-compatible incoming webhook in a single message.
"""
from __future__ import annotations

import logging
from typing import Dict, List, Mapping, Optional

import requests

from . import config
from .diff import ItemDiff
from .scraper import Region, ShopItem
from .utils import checked_request

logger = logging.getLogger(__name__)

EMOJI_SHELLS = ":shells:"
EMOJI_TROLLEY = ":tw_shopping_trolley:"
EMOJI_NEW = ":new:"
EMOJI_TRASH = ":win10-trash:"
EMOJI_STAR = ":star:"
EMOJI_ROBOT = ":robot_face:"

Block = Dict[str, object]


@checked_request
def _post(session: requests.Session, url: str, **kwargs) -> requests.Response:
    return session.post(url, **kwargs)


def format_prices(prices: Mapping[Region, int]) -> str:
    entries = [(r, prices[r]) for r in Region if r in prices]
    if len(entries) == 1:
        region, price = entries[0]
        return f"{price} ({region.label})"
    if len(entries) == len(Region) and len({p for _, p in entries}) == 1:
        return f"{entries[0][1]} ({Region.GLOBAL.label})"
    return ", ".join(f"{r.label} {p}" for r, p in entries)


def escape_markdown(text: str) -> str:
    out = []
    for c in text:
        if c in "_*~`":
            out.append("\\")
        out.append(c)
    return "".join(out)


def _header(text: str) -> Block:
    # Slack caps header text at 150 characters.
    return {"type": "header", "text": {"type": "plain_text", "text": text[:150], "emoji": True}}


def _section(markdown: str) -> Block:
    return {"type": "section", "text": {"type": "mrkdwn", "text": markdown or " "}}


def _image(url: str, alt: str) -> Block:
    return {"type": "image", "image_url": url, "alt_text": alt}


def _divider() -> Block:
    return {"type": "divider"}


def item_header(emoji: str, item: ShopItem) -> str:
    return f"{emoji} {item.title} ({EMOJI_SHELLS} {format_prices(item.prices)})"


def item_description(desc: str) -> str:
    return f"_{escape_markdown(desc)}_\n" if desc else ""


def buy_button(url: str) -> str:
    return f"<{url}|*{EMOJI_TROLLEY} Buy*>"


def render_new_item(item: ShopItem, base_url: str = config.BASE_URL) -> List[Block]:
    text = f"{item_description(item.description)}*Stock:* Unlimited\n\n{buy_button(item.buy_link(base_url))}"
    return [
        _header(item_header(EMOJI_NEW, item)),
        _section(text),
        _image(item.image_url, f"Image for {item.title}"),
    ]


def render_deleted_item(item: ShopItem) -> List[Block]:
    return [
        _header(item_header(EMOJI_TRASH, item)),
        _section(item_description(item.description)),
        _image(item.image_url, f"Image for {item.title}"),
    ]


def _changed(old: str, new: str) -> str:
    return new if old == new else f"{old} → {new}"


def render_updated_item(old: ShopItem, new: ShopItem, base_url: str = config.BASE_URL) -> List[Block]:
    title = _changed(old.title, new.title)
    price = _changed(format_prices(old.prices), format_prices(new.prices))

    if old.description == new.description:
        description = item_description(new.description)
    else:
        old_desc = escape_markdown(old.description) if old.description else "_no description_"
        new_desc = escape_markdown(new.description) if new.description else "_no description_"
        description = f"{old_desc} → {new_desc}\n"

    text = f"{description}*Stock:* Unlimited\n\n{buy_button(new.buy_link(base_url))}"
    blocks = [_header(f"{title} ({EMOJI_SHELLS} {price})"), _section(text)]
    if old.image_url != new.image_url:
        blocks.append(_image(old.image_url, f"Old image for {new.title}"))
    blocks.append(_image(new.image_url, f"New image for {new.title}"))
    return blocks


def render_footer(repo_url: str = config.REPO_URL, channel_url: str = config.CHANNEL_URL) -> List[Block]:
    parts = ["pinging <!channel>"]
    if repo_url:
        parts.append(f"<{repo_url}|{EMOJI_STAR} star the repo!>")
    if channel_url:
        parts.append(f"<{channel_url}|{EMOJI_ROBOT} discord/slackbot ysws>")
    return [{"type": "context", "elements": [{"type": "mrkdwn", "text": " · ".join(parts)}]}]


def render_blocks(diff: ItemDiff, base_url: str = config.BASE_URL) -> List[Block]:
    """New items first, then updates, then removals, separated by dividers."""
    groups: List[List[Block]] = []
    groups.extend(render_new_item(item, base_url) for item in diff.new_items)
    groups.extend(render_updated_item(old, new, base_url) for old, new in diff.updated_items)
    groups.extend(render_deleted_item(item) for item in diff.deleted_items)

    blocks: List[Block] = []
    for i, group in enumerate(groups):
        if i:
            blocks.append(_divider())
        blocks.extend(group)
    blocks.extend(render_footer())
    return blocks


def build_payload(diff: ItemDiff, base_url: str = config.BASE_URL) -> dict:
    return {"text": f"Shop update: {diff.summary()}", "blocks": render_blocks(diff, base_url)}


def send_webhook_notifications(
    diff: ItemDiff,
    session: requests.Session,
    webhook_url: Optional[str] = None,
    base_url: str = config.BASE_URL,
) -> None:
    if webhook_url is None:
        webhook_url = config.WEBHOOK_URL
    if not webhook_url:
        raise RuntimeError("WEBHOOK_URL is not configured. Cannot send notification.")

    for item in diff.new_items:
        logger.info("Sending notification for new item: %s", item.title)
    for _, item in diff.updated_items:
        logger.info("Sending notification for updated item: %s", item.title)
    for item in diff.deleted_items:
        logger.info("Sending notification for deleted item: %s", item.title)

    _post(session, webhook_url, json=build_payload(diff, base_url))
    logger.info("Successfully sent webhook notifications")


__all__ = [
    "format_prices",
    "escape_markdown",
    "render_blocks",
    "build_payload",
    "send_webhook_notifications",
]
