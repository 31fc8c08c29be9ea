"""Tests for UpdateHandler — /start, pre-checkout and successful payments."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

from roffle_economy.ledger import AccountLedger
from roffle_economy.referral_engine import encode_referral_code
from roffle_economy.update_handler import UpdateHandler

from tests.conftest import payload


def _start(user_id: int, text: str = "/start", first_name: str = "Ann") -> dict:
    return {
        "update_id": 1,
        "message": {
            "message_id": 10,
            "from": {"id": user_id, "first_name": first_name, "username": f"user{user_id}"},
            "chat": {"id": user_id, "type": "private"},
            "text": text,
        },
    }


def _pre_checkout(amount: int, raw_payload: str) -> dict:
    return {
        "update_id": 2,
        "pre_checkout_query": {
            "id": "pcq-1",
            "from": {"id": 5},
            "currency": "XTR",
            "total_amount": amount,
            "invoice_payload": raw_payload,
        },
    }


def _paid(amount: int, raw_payload: str, charge_id: str = "tg_charge_1") -> dict:
    return {
        "update_id": 3,
        "message": {
            "message_id": 11,
            "from": {"id": 5},
            "chat": {"id": 5},
            "successful_payment": {
                "currency": "XTR",
                "total_amount": amount,
                "invoice_payload": raw_payload,
                "telegram_payment_charge_id": charge_id,
                "provider_payment_charge_id": "",
            },
        },
    }


class TestStart:

    async def test_start_sends_play_button(self, update_handler: UpdateHandler, mock_bot, ledger: AccountLedger):
        await update_handler.handle_update(_start(7))
        mock_bot.send_play_button.assert_awaited_once_with(7, "Ann")
        acct = await ledger.get_account(7)
        assert acct["username"] == "user7"

    async def test_start_with_referral(self, update_handler: UpdateHandler, ledger: AccountLedger, mock_bot):
        await update_handler.handle_update(_start(7, f"/start {encode_referral_code(3)}"))
        assert (await ledger.get_account(3))["invites"] == 1
        assert (await ledger.get_account(7))["balance"] == 200
        mock_bot.send_play_button.assert_awaited_once()

    async def test_start_with_bad_referral_still_greets(self, update_handler: UpdateHandler, mock_bot):
        await update_handler.handle_update(_start(7, "/start !!!"))
        mock_bot.send_play_button.assert_awaited_once()

    async def test_start_with_oversized_referral_still_greets(
        self, update_handler: UpdateHandler, ledger: AccountLedger, mock_bot,
    ):
        await update_handler.handle_update(_start(7, "/start " + "z" * 20))
        mock_bot.send_play_button.assert_awaited_once_with(7, "Ann")
        assert (await ledger.get_account(7))["balance"] == 0

    async def test_greets_when_referral_handling_raises(self, update_handler: UpdateHandler, mock_bot):
        with patch.object(update_handler._referrals, "handle_referral", AsyncMock(side_effect=OverflowError("too big"))):
            await update_handler.handle_update(_start(7, "/start 3"))
        mock_bot.send_play_button.assert_awaited_once_with(7, "Ann")

    async def test_any_message_greets(self, update_handler: UpdateHandler, mock_bot, ledger):
        await update_handler.handle_update(_start(7, "hello"))
        mock_bot.send_play_button.assert_awaited_once_with(7, "Ann")
        assert await ledger.get_account(7) is None

    async def test_bot_added(self, update_handler: UpdateHandler, mock_bot):
        await update_handler.handle_update({
            "update_id": 4,
            "my_chat_member": {"chat": {"id": 99}, "from": {"id": 99, "first_name": "Zo"}},
        })
        mock_bot.send_play_button.assert_awaited_once_with(99, "Zo")

    async def test_counter(self, update_handler: UpdateHandler):
        await update_handler.handle_update({"update_id": 9})
        assert update_handler.updates_processed == 1


class TestPreCheckout:

    async def test_approved(self, update_handler: UpdateHandler, mock_bot):
        await update_handler.handle_update(_pre_checkout(700, payload(5, "tier", "plus")))
        mock_bot.answer_pre_checkout_query.assert_awaited_once_with("pcq-1", True, None)

    async def test_rejected_with_message(self, update_handler: UpdateHandler, mock_bot, sample_config):
        await update_handler.handle_update(_pre_checkout(1, payload(5, "tier", "plus")))
        mock_bot.answer_pre_checkout_query.assert_awaited_once_with(
            "pcq-1", False, sample_config.payments.precheckout_error_message,
        )

    async def test_answered_even_when_validation_raises(self, update_handler: UpdateHandler, mock_bot):
        with patch.object(update_handler._payments, "validate_pre_checkout", MagicMock(side_effect=RuntimeError("boom"))):
            await update_handler.handle_update(_pre_checkout(700, payload(5, "tier", "plus")))
        mock_bot.answer_pre_checkout_query.assert_awaited_once()
        assert mock_bot.answer_pre_checkout_query.call_args[0][1] is False


class TestSuccessfulPayment:

    async def test_grant_applied(self, update_handler: UpdateHandler, ledger: AccountLedger, mock_bot):
        await update_handler.handle_update(_paid(2100, payload(5, "tier", "prem")))
        assert (await ledger.get_account(5))["tier"] == "prem"
        mock_bot.send_message.assert_awaited_once()
        mock_bot.send_play_button.assert_not_awaited()

    async def test_redelivery_applied_once(self, update_handler: UpdateHandler, ledger: AccountLedger):
        update = _paid(900, payload(5, "bundle", "maxi"))
        await update_handler.handle_update(update)
        await update_handler.handle_update(update)
        acct = await ledger.get_account(5)
        assert acct["balance"] == 8000
        assert acct["golden_tickets"] == 10
