"""Bot update handler — maps pushed Bot API updates onto the economy.

The webhook endpoint hands each decoded update to handle_update() and then
acknowledges the delivery unconditionally; an acknowledged update says
nothing about whether the economy mutation succeeded.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .bot_client import BotClient
    from .config import GameConfig
    from .ledger import AccountLedger
    from .payment_reconciler import PaymentReconciler
    from .referral_engine import ReferralEngine


class UpdateHandler:
    """Handles /start, pre-checkout queries and successful payments."""

    def __init__(
        self,
        config: GameConfig,
        ledger: AccountLedger,
        referrals: ReferralEngine,
        payments: PaymentReconciler,
        bot_client: BotClient,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._ledger = ledger
        self._referrals = referrals
        self._payments = payments
        self._bot = bot_client
        self._logger = logger or logging.getLogger("roffle.updates")
        self.updates_processed = 0

    def update_config(self, new_config: GameConfig) -> None:
        """Hot-swap the config reference."""
        self._config = new_config

    async def handle_update(self, update: dict[str, Any]) -> None:
        """Process one update. Never raises."""
        self.updates_processed += 1
        try:
            if "pre_checkout_query" in update:
                await self._on_pre_checkout(update["pre_checkout_query"])
            elif "message" in update:
                message = update["message"]
                if message.get("successful_payment"):
                    await self._on_successful_payment(message)
                else:
                    await self._on_message(message)
            elif "my_chat_member" in update:
                member = update["my_chat_member"]
                chat_id = (member.get("chat") or {}).get("id")
                if chat_id:
                    await self._bot.send_play_button(chat_id, (member.get("from") or {}).get("first_name", ""))
        except Exception:
            self._logger.exception("Update handler error for update %s", update.get("update_id"))

    # ══════════════════════════════════════════════════════════
    #  Messages
    # ══════════════════════════════════════════════════════════

    async def _on_message(self, message: dict[str, Any]) -> None:
        sender = message.get("from") or {}
        chat_id = (message.get("chat") or {}).get("id")
        text = message.get("text") or ""

        if text.startswith("/start") and sender.get("id"):
            try:
                await self._on_start(sender, text)
            except Exception:
                self._logger.exception("/start handling failed for %s", sender["id"])

        if chat_id:
            await self._bot.send_play_button(chat_id, sender.get("first_name", ""))

    async def _on_start(self, sender: dict[str, Any], text: str) -> None:
        """Profile sync and optional referral claim; the greeting goes out regardless."""
        await self._ledger.sync_profile(
            sender["id"],
            username=sender.get("username"),
            display_name=sender.get("first_name"),
        )
        parts = text.split()
        if len(parts) > 1:
            result = await self._referrals.handle_referral(parts[1], sender["id"])
            self._logger.debug("Referral claim by %s: %s", sender["id"], result.to_dict())

    # ══════════════════════════════════════════════════════════
    #  Payments
    # ══════════════════════════════════════════════════════════

    async def _on_pre_checkout(self, query: dict[str, Any]) -> None:
        """Answer the query exactly once, even if validation blows up."""
        approved = False
        try:
            result = self._payments.validate_pre_checkout(
                query.get("total_amount"),
                query.get("invoice_payload"),
                query.get("currency"),
            )
            approved = bool(result.get("approved"))
        finally:
            await self._bot.answer_pre_checkout_query(
                query.get("id", ""),
                approved,
                None if approved else self._config.payments.precheckout_error_message,
            )

    async def _on_successful_payment(self, message: dict[str, Any]) -> None:
        payment = message["successful_payment"]
        result = await self._payments.apply_confirmed_payment(
            payment.get("invoice_payload"),
            payment.get("total_amount"),
            payment.get("telegram_payment_charge_id", ""),
            payment.get("currency"),
        )
        if not result.ok:
            self._logger.warning(
                "Confirmed payment %s not granted: %s",
                payment.get("telegram_payment_charge_id"), result.to_dict(),
            )
