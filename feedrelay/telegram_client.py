"""
Telegram Bot API transport.

Knows how to call sendMessage and how to read the answer; it does not
retry, pace or format anything.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import requests

logger = logging.getLogger(__name__)


class SendStatus(str, Enum):
    OK = "ok"
    RATE_LIMITED = "rate_limited"
    REJECTED = "rejected"
    NETWORK_ERROR = "network_error"


@dataclass(frozen=True)
class SendResult:
    status: SendStatus
    description: str = ""
    retry_after: Optional[float] = None

    @property
    def ok(self) -> bool:
        return self.status == SendStatus.OK


class TelegramClient:
    def __init__(self, bot_token: str, api_base: str = "https://api.telegram.org",
                 timeout: float = 15, parse_mode: str = "MarkdownV2",
                 disable_web_page_preview: bool = False,
                 session: Optional[requests.Session] = None):
        if not bot_token:
            raise ValueError("Telegram bot token is not configured")
        self.url = f"{api_base.rstrip('/')}/bot{bot_token}/sendMessage"
        self.timeout = timeout
        self.parse_mode = parse_mode
        self.disable_web_page_preview = disable_web_page_preview
        self.session = session or requests.Session()

    def send_message(self, chat_id: str, text: str) -> SendResult:
        payload = {
            "chat_id": chat_id,
            "text": text,
            "disable_web_page_preview": self.disable_web_page_preview,
        }
        if self.parse_mode:
            payload["parse_mode"] = self.parse_mode

        try:
            r = self.session.post(self.url, json=payload, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            return SendResult(SendStatus.NETWORK_ERROR, description=str(e))

        body = _json_or_empty(r)
        description = body.get("description") or r.text[:200]

        if r.ok and body.get("ok", True):
            return SendResult(SendStatus.OK)

        if r.status_code == 429:
            return SendResult(SendStatus.RATE_LIMITED, description=description,
                              retry_after=_retry_after(r, body))

        if r.status_code >= 500:
            return SendResult(SendStatus.NETWORK_ERROR, description=f"HTTP {r.status_code}: {description}")

        return SendResult(SendStatus.REJECTED, description=f"HTTP {r.status_code}: {description}")


def _json_or_empty(r: requests.Response) -> dict:
    try:
        data = r.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _retry_after(r: requests.Response, body: dict) -> Optional[float]:
    value = (body.get("parameters") or {}).get("retry_after") or r.headers.get("Retry-After")
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None
