"""Referral engine — decode invite codes and credit both sides exactly once.

Invite codes are the referrer's account id in base 36 (the mini-app builds
the share link the same way). A claim never raises: onboarding must carry
on whether or not the referral counted.

Each side of a referral is credited in its own transaction that also flips
that side's ``*_credited`` flag, so a reward is applied at most once per
side. A side left uncredited by a store failure is picked up again by
reconcile_pending().
"""

from __future__ import annotations

import logging
import sqlite3
import string
from typing import TYPE_CHECKING, Awaitable, TypeVar

from .ledger import LedgerDelta
from .results import ActionResult, ErrorCode, PersistenceFailure

if TYPE_CHECKING:
    from .config import GameConfig
    from .database import GameDatabase
    from .ledger import AccountLedger


T = TypeVar("T")

_BASE36_DIGITS = string.digits + string.ascii_lowercase

# Largest id an INTEGER column can hold.
MAX_ACCOUNT_ID = 2**63 - 1
MAX_CODE_LENGTH = 13


def encode_referral_code(account_id: int) -> str:
    """Base-36 invite code for *account_id*."""
    if not 0 < account_id <= MAX_ACCOUNT_ID:
        raise ValueError("account_id must be a positive 64-bit integer")
    digits: list[str] = []
    n = account_id
    while n:
        n, rem = divmod(n, 36)
        digits.append(_BASE36_DIGITS[rem])
    return "".join(reversed(digits))


def decode_referral_code(code: object) -> int | None:
    """Referrer id encoded in *code*, or None if it is not a positive base-36 number."""
    if not isinstance(code, str):
        return None
    code = code.strip().lower()
    if not code or len(code) > MAX_CODE_LENGTH or not all(c in _BASE36_DIGITS for c in code):
        return None
    value = int(code, 36)
    return value if 0 < value <= MAX_ACCOUNT_ID else None


class ReferralEngine:
    """Validates referral claims and applies the dual reward."""

    def __init__(
        self,
        config: GameConfig,
        database: GameDatabase,
        ledger: AccountLedger,
        logger: logging.Logger,
    ) -> None:
        self._config = config
        self._db = database
        self._ledger = ledger
        self._logger = logger

    def update_config(self, new_config: GameConfig) -> None:
        """Hot-swap the config reference."""
        self._config = new_config

    def _reward_delta(self, side: str) -> LedgerDelta:
        cfg = self._config.referral
        return LedgerDelta(
            balance=cfg.reward_coins,
            spins=cfg.reward_spins,
            invites=1 if side == "referrer" else 0,
        )

    # ══════════════════════════════════════════════════════════
    #  Claim
    # ══════════════════════════════════════════════════════════

    async def handle_referral(self, code: object, referred_id: int) -> ActionResult:
        """Process a referral claim from *referred_id*."""
        referrer_id = decode_referral_code(code)
        if referrer_id is None:
            self._logger.debug("Ignoring undecodable referral code %r", code)
            return ActionResult.failure(ErrorCode.INVALID_REFERRAL_CODE)

        if referrer_id == referred_id:
            self._logger.debug("Ignoring self-referral from %d", referred_id)
            return ActionResult.failure(ErrorCode.SELF_REFERRAL)

        try:
            existing = await self._ledger_call(self._db.get_referral(referrer_id, referred_id))
            if existing:
                return ActionResult.failure(ErrorCode.DUPLICATE_REFERRAL, referrer_id=referrer_id)
            referral_id = await self._ledger_call(self._db.insert_referral(referrer_id, referred_id))
        except PersistenceFailure:
            return ActionResult.failure(ErrorCode.PERSISTENCE_FAILURE)

        if referral_id is None:
            # Lost the race against an identical claim.
            return ActionResult.failure(ErrorCode.DUPLICATE_REFERRAL, referrer_id=referrer_id)

        self._logger.info("Referral #%d recorded: %d → %d", referral_id, referrer_id, referred_id)

        credited = {
            "referrer": await self._credit_side(referral_id, "referrer", referrer_id),
            "referred": await self._credit_side(referral_id, "referred", referred_id),
        }
        if not all(credited.values()):
            return ActionResult.failure(
                ErrorCode.PERSISTENCE_FAILURE,
                referrer_id=referrer_id,
                credited=credited,
                pending_reconciliation=True,
            )
        return ActionResult.success(referrer_id=referrer_id, credited=credited)

    async def _ledger_call(self, awaitable: Awaitable[T]) -> T:
        try:
            return await awaitable
        except sqlite3.Error as e:
            self._logger.error("Referral store access failed: %s", e)
            raise PersistenceFailure("referral store access failed") from e

    async def _credit_side(self, referral_id: int, side: str, account_id: int) -> bool:
        """True once the side holds its reward (now or from an earlier attempt)."""
        try:
            await self._ledger.credit_referral_side(
                referral_id, side, account_id, self._reward_delta(side),
            )
            return True
        except PersistenceFailure:
            self._logger.error(
                "Referral #%d: %s credit for account %d failed; left for reconciliation",
                referral_id, side, account_id,
            )
            return False

    # ══════════════════════════════════════════════════════════
    #  Roll-forward
    # ══════════════════════════════════════════════════════════

    async def reconcile_pending(self, limit: int = 100) -> int:
        """Credit every referral side still missing its reward. Returns sides credited."""
        try:
            pending = await self._ledger_call(self._db.get_uncredited_referrals(limit))
        except PersistenceFailure:
            return 0

        credited = 0
        for row in pending:
            for side, column, account_key in (
                ("referrer", "referrer_credited", "referrer_id"),
                ("referred", "referred_credited", "referred_id"),
            ):
                if row[column]:
                    continue
                if await self._credit_side(row["id"], side, row[account_key]):
                    credited += 1

        if credited:
            self._logger.warning("Referral reconciliation credited %d pending side(s)", credited)
        return credited
