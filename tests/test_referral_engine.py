"""Tests for ReferralEngine — invite codes, dual rewards and roll-forward."""

from __future__ import annotations

import asyncio
import sqlite3
from unittest.mock import AsyncMock, patch

import pytest

from roffle_economy.database import GameDatabase
from roffle_economy.ledger import AccountLedger
from roffle_economy.referral_engine import ReferralEngine, decode_referral_code, encode_referral_code
from roffle_economy.results import ErrorCode


class TestCodes:

    @pytest.mark.parametrize("account_id,code", [(1, "1"), (35, "z"), (36, "10"), (123456789, "21i3v9")])
    def test_encode(self, account_id, code):
        assert encode_referral_code(account_id) == code

    def test_encode_rejects_non_positive(self):
        with pytest.raises(ValueError):
            encode_referral_code(0)

    def test_encode_rejects_beyond_64_bit(self):
        with pytest.raises(ValueError):
            encode_referral_code(2**63)

    def test_largest_id_roundtrips(self):
        assert encode_referral_code(2**63 - 1) == "1y2p0ij32e8e7"
        assert decode_referral_code("1y2p0ij32e8e7") == 2**63 - 1

    @pytest.mark.parametrize("code", ["1y2p0ij32e8e8", "z" * 13, "z" * 20, "1" * 5000])
    def test_decode_out_of_range(self, code):
        assert decode_referral_code(code) is None

    def test_decode_roundtrip_case_insensitive(self):
        assert decode_referral_code("21I3V9") == 123456789
        assert decode_referral_code("  z ") == 35

    @pytest.mark.parametrize("code", ["", "0", "000", "ab-c", "12.5", "héllo", None, 42])
    def test_decode_invalid(self, code):
        assert decode_referral_code(code) is None


class TestHandleReferral:

    async def test_both_sides_rewarded(self, referral_engine: ReferralEngine, ledger: AccountLedger):
        result = await referral_engine.handle_referral(encode_referral_code(10), 20)
        assert result.ok
        assert result["referrer_id"] == 10
        assert result["credited"] == {"referrer": True, "referred": True}

        referrer = await ledger.get_account(10)
        referred = await ledger.get_account(20)
        assert referrer["balance"] == 200
        assert referrer["spins_left"] == 40
        assert referrer["invites"] == 1
        assert referred["balance"] == 200
        assert referred["spins_left"] == 40
        assert referred["invites"] == 0

    async def test_self_referral(self, referral_engine: ReferralEngine, ledger: AccountLedger):
        result = await referral_engine.handle_referral(encode_referral_code(10), 10)
        assert result.error is ErrorCode.SELF_REFERRAL
        assert await ledger.get_account(10) is None

    async def test_invalid_code(self, referral_engine: ReferralEngine):
        result = await referral_engine.handle_referral("not a code!", 10)
        assert result.error is ErrorCode.INVALID_REFERRAL_CODE

    async def test_oversized_code(self, referral_engine: ReferralEngine, ledger: AccountLedger):
        result = await referral_engine.handle_referral("z" * 20, 10)
        assert result.error is ErrorCode.INVALID_REFERRAL_CODE
        assert await ledger.get_account(10) is None

    async def test_replay_rewards_once(self, referral_engine: ReferralEngine, ledger: AccountLedger):
        code = encode_referral_code(10)
        await referral_engine.handle_referral(code, 20)
        again = await referral_engine.handle_referral(code, 20)
        assert again.error is ErrorCode.DUPLICATE_REFERRAL
        assert (await ledger.get_account(10))["balance"] == 200
        assert (await ledger.get_account(20))["balance"] == 200

    async def test_concurrent_replays_reward_once(self, referral_engine: ReferralEngine, ledger: AccountLedger):
        code = encode_referral_code(10)
        results = await asyncio.gather(*(referral_engine.handle_referral(code, 20) for _ in range(5)))
        assert sum(1 for r in results if r.ok) == 1
        assert (await ledger.get_account(10))["balance"] == 200
        assert (await ledger.get_account(10))["invites"] == 1

    async def test_referrer_collects_from_many(self, referral_engine: ReferralEngine, ledger: AccountLedger):
        code = encode_referral_code(10)
        for referred in (21, 22, 23):
            assert (await referral_engine.handle_referral(code, referred)).ok
        referrer = await ledger.get_account(10)
        assert referrer["balance"] == 600
        assert referrer["invites"] == 3

    async def test_store_down_before_record(self, referral_engine: ReferralEngine, database: GameDatabase):
        with patch.object(database, "get_referral", AsyncMock(side_effect=sqlite3.OperationalError("locked"))):
            result = await referral_engine.handle_referral(encode_referral_code(10), 20)
        assert result.error is ErrorCode.PERSISTENCE_FAILURE
        assert await database.count_referrals(10) == 0


class TestReconciliation:

    async def test_partial_failure_rolled_forward(
        self, referral_engine: ReferralEngine, ledger: AccountLedger, database: GameDatabase,
    ):
        real_credit = database.credit_referral_side

        async def flaky_credit(referral_id, side, *args, **kwargs):
            if side == "referred":
                raise sqlite3.OperationalError("disk I/O error")
            return await real_credit(referral_id, side, *args, **kwargs)

        with patch.object(database, "credit_referral_side", AsyncMock(side_effect=flaky_credit)):
            result = await referral_engine.handle_referral(encode_referral_code(10), 20)

        assert not result.ok
        assert result.error is ErrorCode.PERSISTENCE_FAILURE
        assert result["credited"] == {"referrer": True, "referred": False}
        assert result["pending_reconciliation"] is True
        assert (await ledger.get_account(10))["balance"] == 200
        assert await ledger.get_account(20) is None

        credited = await referral_engine.reconcile_pending()
        assert credited == 1
        assert (await ledger.get_account(20))["balance"] == 200
        assert (await ledger.get_account(10))["balance"] == 200
        assert await database.get_uncredited_referrals() == []

    async def test_reconcile_nothing_pending(self, referral_engine: ReferralEngine):
        assert await referral_engine.reconcile_pending() == 0

    async def test_reconcile_store_down(self, referral_engine: ReferralEngine, database: GameDatabase):
        with patch.object(
            database, "get_uncredited_referrals", AsyncMock(side_effect=sqlite3.OperationalError("locked")),
        ):
            assert await referral_engine.reconcile_pending() == 0
