"""
Delivery client: turns items into chat messages and sends them one at a time.
"""
from __future__ import annotations

import logging
import re
import threading
import time
from typing import Callable, Optional
from urllib.parse import quote

from feedrelay.errors import PermanentDeliveryError, TransientDeliveryError
from feedrelay.models import Item
from feedrelay.telegram_client import SendStatus, TelegramClient
from feedrelay.utils.helpers import retry_with_backoff

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 1000

# ---------------------------
# MarkdownV2 escaping helpers
# ---------------------------

def mdv2_escape(text: str) -> str:
    if text is None:
        return ""
    # Escape Telegram MarkdownV2 special chars
    return re.sub(r"([_\*\[\]\(\)~`>#+\-=|{}\.!\\])", r"\\\1", str(text))


def mdv2_escape_url(url: str) -> str:
    # Inside (...) only ')' and '\' must be escaped
    safe_url = quote(str(url), safe=":/?&=#+%.-_~;,@!$'*")
    return safe_url.replace("\\", "\\\\").replace(")", "\\)")


def fmt_link(title: str, url: str) -> str:
    return f"[{mdv2_escape(title)}]({mdv2_escape_url(url)})"


def format_message(item: Item, feed_name: Optional[str] = None, markdown: bool = True) -> str:
    """
    Render an item as a chat message. Same item in, same text out.

    Args:
        item: Item to render
        feed_name: Optional feed display name shown as a header line
        markdown: Render Telegram MarkdownV2 instead of plain text

    Returns:
        Message text
    """
    title = item.title or item.link or item.guid
    if len(title) > MAX_TITLE_LENGTH:
        title = title[:MAX_TITLE_LENGTH - 3] + "..."

    lines = []
    if markdown:
        if feed_name:
            lines.append(f"*{mdv2_escape(feed_name)}*")
        lines.append(fmt_link(title, item.link) if item.link else mdv2_escape(title))
    else:
        if feed_name:
            lines.append(feed_name)
        lines.append(title)
        if item.link and item.link != title:
            lines.append(item.link)
    return "\n".join(lines)


class DeliveryClient:
    """
    Sends one message per item to the destination.

    Sends are serialized process-wide and spaced by at least
    ``min_interval`` seconds, whichever feed the item came from.
    """

    def __init__(self, chat_client: TelegramClient, min_interval: float = 1.0,
                 max_retries: int = 3, backoff_seconds: float = 1.0,
                 max_retry_after: float = 60.0,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic):
        self.chat_client = chat_client
        self.min_interval = min_interval
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self.max_retry_after = max_retry_after
        self.markdown = (getattr(chat_client, "parse_mode", "") or "").lower() == "markdownv2"
        self._sleep = sleep
        self._clock = clock
        self._lock = threading.Lock()
        self._last_sent: Optional[float] = None

    def deliver(self, destination: str, item: Item, feed_name: Optional[str] = None,
                time_budget: Optional[float] = None) -> None:
        """
        Deliver one item.

        Args:
            destination: Chat/channel identifier
            item: Item to send
            feed_name: Feed display name for the message header
            time_budget: Seconds this call may spend waiting between attempts

        Raises:
            TransientDeliveryError: Still failing after the retry budget, or the next
                                    wait would exceed max_retry_after or time_budget
            PermanentDeliveryError: The destination rejected the message
        """
        text = format_message(item, feed_name, markdown=self.markdown)

        with self._lock:
            give_up_at = self._clock() + time_budget if time_budget is not None else None

            def too_long(error, delay):
                if delay > self.max_retry_after:
                    return True
                return give_up_at is not None and self._clock() + delay > give_up_at

            retry_with_backoff(
                func=lambda: self._send_once(destination, text),
                max_retries=self.max_retries,
                initial_delay=self.backoff_seconds,
                retry_on=(TransientDeliveryError,),
                delay_hint=lambda e: e.retry_after,
                give_up=too_long,
                sleep=self._sleep,
            )
        logger.info(f"Delivered '{item.guid}' of feed '{item.feed_id}' to {destination}")

    def _send_once(self, destination: str, text: str) -> None:
        self._pace()
        try:
            result = self.chat_client.send_message(destination, text)
        finally:
            self._last_sent = self._clock()

        if result.ok:
            return
        if result.status == SendStatus.REJECTED:
            raise PermanentDeliveryError(result.description or "message rejected")
        if result.status == SendStatus.RATE_LIMITED:
            raise TransientDeliveryError(f"rate limited: {result.description}", retry_after=result.retry_after)
        raise TransientDeliveryError(f"network error: {result.description}")

    def _pace(self) -> None:
        if self._last_sent is None:
            return
        wait = self.min_interval - (self._clock() - self._last_sent)
        if wait > 0:
            logger.debug(f"Pacing delivery for {wait:.2f}s")
            self._sleep(wait)
