from __future__ import annotations

import logging
from typing import Any

import requests

from config import Config
from engine.results import NotificationAttempt
from utils import ApiError, iso_utc_now

log = logging.getLogger(__name__)


class TelegramGateway:
    """
    Best-effort Telegram Bot API sender.

    `payload` carries `chatId`, `text` and `kind`. Without a bot token or a chat id
    the attempt is returned undelivered; transport and API errors raise ApiError.
    """

    channel = "telegram"

    def __init__(self, cfg: Config, *, session: requests.Session | None = None):
        self.token = str(cfg.TELEGRAM_BOT_TOKEN or "").strip()
        self.api_base = str(cfg.TELEGRAM_API_BASE or "https://api.telegram.org").rstrip("/")
        self.timeout = float(cfg.NOTIFY_TIMEOUT_SECONDS or 10.0)
        self.http = session or requests.Session()

    def _attempt(self, recipient: str, kind: str, delivered: bool, error: str = "") -> NotificationAttempt:
        return NotificationAttempt(
            recipient=str(recipient or ""),
            kind=str(kind or ""),
            channel=self.channel,
            delivered=delivered,
            at=iso_utc_now(),
            error=error,
        )

    def notify(self, recipient: str, payload: dict[str, Any]) -> NotificationAttempt:
        kind = str((payload or {}).get("kind") or "")
        chat_id = str((payload or {}).get("chatId") or "").strip()
        text = str((payload or {}).get("text") or "").strip()

        if not self.token:
            log.info("telegram disabled; skipping recipient=%s kind=%s", recipient, kind)
            return self._attempt(recipient, kind, False, "TELEGRAM_BOT_TOKEN not configured")
        if not chat_id:
            return self._attempt(recipient, kind, False, "No Telegram chat id for recipient")

        url = f"{self.api_base}/bot{self.token}/sendMessage"
        try:
            resp = self.http.post(url, json={"chat_id": chat_id, "text": text}, timeout=self.timeout)
        except Exception as e:
            raise ApiError("INTERNAL", f"Failed to call Telegram: {e}")

        parsed = None
        try:
            parsed = resp.json()
        except Exception:
            parsed = None

        if resp.status_code >= 400 or (isinstance(parsed, dict) and parsed.get("ok") is False):
            desc = ""
            if isinstance(parsed, dict):
                desc = str(parsed.get("description") or "").strip()
            snippet = desc or str(resp.text or "").strip()[:300]
            raise ApiError("INTERNAL", f"Telegram send failed (HTTP {resp.status_code}): {snippet or 'no response body'}")

        return self._attempt(recipient, kind, True)
