"""Bot API client — async HTTP wrapper for the outbound calls the economy needs.

Covers sending messages (acknowledgements, the Play button), answering
pre-checkout queries and creating invoice links. All tests mock the HTTP
layer — never call the real Bot API.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

import aiohttp

if TYPE_CHECKING:
    from .config import BotConfig


class BotClient:
    """Async client for the chat platform's Bot API."""

    def __init__(self, config: BotConfig, logger: logging.Logger) -> None:
        self._config = config
        self._logger = logger
        self._session: aiohttp.ClientSession | None = None

    async def start(self) -> None:
        """Create the HTTP session."""
        self._session = aiohttp.ClientSession(
            base_url=self._config.api_base,
            timeout=aiohttp.ClientTimeout(total=self._config.timeout_seconds),
        )

    async def stop(self) -> None:
        """Close the HTTP session."""
        if self._session:
            await self._session.close()
            self._session = None

    async def _call(self, method: str, payload: dict[str, Any]) -> Any | None:
        """POST a Bot API method. Returns ``result`` or None on any failure."""
        if not self._session:
            self._logger.warning("Bot API call %s skipped: client not started", method)
            return None

        try:
            async with self._session.post(
                f"/bot{self._config.token}/{method}", json=payload,
            ) as resp:
                data = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            self._logger.error("Bot API %s failed: %s", method, e)
            return None

        if not isinstance(data, dict) or not data.get("ok"):
            self._logger.error("Bot API %s error: %s", method, data)
            return None
        return data.get("result", True)

    # ══════════════════════════════════════════════════════════
    #  Messages
    # ══════════════════════════════════════════════════════════

    async def send_message(
        self, chat_id: int, text: str, reply_markup: dict[str, Any] | None = None,
    ) -> bool:
        payload: dict[str, Any] = {"chat_id": chat_id, "text": text}
        if reply_markup:
            payload["reply_markup"] = reply_markup
        return await self._call("sendMessage", payload) is not None

    async def send_play_button(self, chat_id: int, name: str = "") -> bool:
        """Greeting with an inline button that opens the mini-app."""
        text = self._config.play_text.format(name=name or self._config.default_name)
        markup = {
            "inline_keyboard": [
                [{"text": self._config.play_button_label, "web_app": {"url": self._config.app_url}}],
            ],
        }
        return await self.send_message(chat_id, text, markup)

    # ══════════════════════════════════════════════════════════
    #  Payments
    # ══════════════════════════════════════════════════════════

    async def answer_pre_checkout_query(
        self, query_id: str, ok: bool, error_message: str | None = None,
    ) -> bool:
        payload: dict[str, Any] = {"pre_checkout_query_id": query_id, "ok": ok}
        if not ok and error_message:
            payload["error_message"] = error_message
        return await self._call("answerPreCheckoutQuery", payload) is not None

    async def create_invoice_link(self, invoice: dict[str, Any]) -> str | None:
        """Create an invoice link for the mini-app to open. None on failure."""
        result = await self._call("createInvoiceLink", invoice)
        return result if isinstance(result, str) else None
