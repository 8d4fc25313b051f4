"""
Telegram Adapter.

Delivers trading alerts via the Telegram Bot API. Delivery is
best-effort: every failure is logged and reported as False, never raised.
"""

from __future__ import annotations

from html import escape as _html_escape

import aiohttp

from trading_bot.config.settings import TelegramSettings
from trading_bot.observability.logging import get_logger
from trading_bot.ports.notification import NotificationPort

logger = get_logger(__name__)

API_BASE_URL = "https://api.telegram.org"
ALERT_PREFIX = "<b>ALERT</b>\n"

_ALLOWED_HTML_TAGS: tuple[str, ...] = (
    "<b>", "</b>",
    "<i>", "</i>",
    "<code>", "</code>",
    "<pre>", "</pre>",
)


def _sanitize_html_message(message: str) -> str:
    """
    Escape everything except a small tag whitelist.

    Exception text and symbols with '<' or '&' would otherwise break
    Telegram's HTML parse_mode.
    """
    escaped = _html_escape(message, quote=False)
    for tag in _ALLOWED_HTML_TAGS:
        escaped = escaped.replace(_html_escape(tag, quote=False), tag)
    return escaped


def _strip_allowed_tags(message: str) -> str:
    for tag in _ALLOWED_HTML_TAGS:
        message = message.replace(tag, "")
    return message


def _looks_like_html_parse_error(response_text: str) -> bool:
    return "can't parse entities" in response_text.lower()


class TelegramAdapter(NotificationPort):
    """Telegram implementation of NotificationPort."""

    def __init__(self, settings: TelegramSettings, session: aiohttp.ClientSession | None = None):
        self.settings = settings
        self._session = session
        self._owns_session = session is None
        self._base_url = f"{API_BASE_URL}/bot{settings.bot_token}"

    @property
    def is_configured(self) -> bool:
        return bool(self.settings.enabled and self.settings.bot_token and self.settings.chat_id)

    async def start(self) -> None:
        """Open the HTTP session and verify the token."""
        if not self.is_configured:
            logger.info("Telegram notifications disabled")
            return

        session = self._get_session()
        try:
            async with session.get(f"{self._base_url}/getMe") as resp:
                if resp.status == 200:
                    data = await resp.json()
                    bot_name = data.get("result", {}).get("username", "Unknown")
                    logger.info(f"Telegram connected as @{bot_name}")
                else:
                    logger.error(f"Telegram auth failed: {resp.status}")
        except (aiohttp.ClientError, TimeoutError) as e:
            logger.warning(f"Telegram connection check failed: {e}")

    async def stop(self) -> None:
        """Close the HTTP session if this adapter created it."""
        if self._session and self._owns_session:
            await self._session.close()
        if self._owns_session:
            self._session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def send_message(self, message: str) -> bool:
        """Send a message; falls back to plain text when Telegram rejects the HTML."""
        if not self.is_configured:
            return False

        session = self._get_session()
        payload = {
            "chat_id": self.settings.chat_id,
            "text": _sanitize_html_message(message),
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
        }

        try:
            async with session.post(f"{self._base_url}/sendMessage", json=payload) as resp:
                if resp.status == 200:
                    return True
                text = await resp.text()

            if resp.status == 400 and _looks_like_html_parse_error(text):
                logger.warning("Telegram HTML parse failed (400). Retrying as plain text.")
                return await self._send_plain(session, _strip_allowed_tags(message))

            logger.error(f"Telegram send failed ({resp.status}): {text}")
            return False

        except (aiohttp.ClientError, TimeoutError) as e:
            logger.error(f"Telegram error: {e}")
            return False

    async def _send_plain(self, session: aiohttp.ClientSession, message: str) -> bool:
        payload = {
            "chat_id": self.settings.chat_id,
            "text": message,
            "disable_web_page_preview": True,
        }
        async with session.post(f"{self._base_url}/sendMessage", json=payload) as resp:
            if resp.status == 200:
                return True
            text = await resp.text()
            logger.error(f"Telegram send failed ({resp.status}): {text}")
            return False

    async def send_alert(self, message: str) -> bool:
        """Send a trading alert."""
        return await self.send_message(f"{ALERT_PREFIX}{message}")
