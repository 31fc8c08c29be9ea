"""Wheel resolver — turns a spin request into a persisted prize.

One secure draw per request. A turbo request (x5, x10, ...) replays that
single outcome N times instead of drawing N segments; the mini-app animates
one wheel stop for the whole batch.
"""

from __future__ import annotations

import logging
import secrets
from typing import TYPE_CHECKING, Callable

from .ledger import LedgerDelta
from .results import ActionResult, ErrorCode, PersistenceFailure

if TYPE_CHECKING:
    from .catalog import Catalog
    from .config import GameConfig
    from .ledger import AccountLedger


class WheelResolver:
    """Resolves spins against the payout table and the account ledger."""

    def __init__(
        self,
        config: GameConfig,
        ledger: AccountLedger,
        catalog: Catalog,
        logger: logging.Logger,
        randbelow: Callable[[int], int] = secrets.randbelow,
    ) -> None:
        self._config = config
        self._ledger = ledger
        self._catalog = catalog
        self._logger = logger
        self._randbelow = randbelow

    def update_config(self, new_config: GameConfig, catalog: Catalog) -> None:
        """Hot-swap the config and catalog references."""
        self._config = new_config
        self._catalog = catalog

    def draw_segment(self) -> int:
        """Uniform segment index in [0, segments)."""
        return self._randbelow(self._catalog.segments)

    async def resolve_spin(self, account_id: int, requested_multiplier: object = 1) -> ActionResult:
        """Spin the wheel for *account_id*.

        Unsupported multipliers silently degrade to 1. Returns
        NO_SPINS_AVAILABLE without touching the account when it holds fewer
        spins than the multiplier, and PERSISTENCE_FAILURE (prize discarded)
        when the ledger write fails.
        """
        multiplier = self._catalog.coerce_multiplier(requested_multiplier)

        try:
            account = await self._ledger.get_or_create(account_id)
        except PersistenceFailure:
            return ActionResult.failure(ErrorCode.PERSISTENCE_FAILURE)

        if account["spins_left"] < multiplier:
            self._logger.debug(
                "Spin refused: account=%d spins_left=%d multiplier=%d",
                account_id, account["spins_left"], multiplier,
            )
            return ActionResult.failure(
                ErrorCode.NO_SPINS_AVAILABLE,
                spins_left=account["spins_left"],
                multiplier=multiplier,
            )

        index = self.draw_segment()
        base_prize = self._catalog.payouts[index]
        tier = account["tier"]
        prize = self._catalog.final_prize(index, tier, multiplier)

        try:
            updated = await self._ledger.apply_delta(
                account_id,
                LedgerDelta(balance=prize, spins=-multiplier),
                tx_type="spin",
                reason=f"Spin x{multiplier}: segment {index}",
                metadata={"index": index, "base": base_prize, "tier": tier, "multiplier": multiplier},
                require_spins=multiplier,
            )
        except PersistenceFailure:
            self._logger.warning(
                "Spin prize discarded for account=%d (segment %d, %d coins)",
                account_id, index, prize,
            )
            return ActionResult.failure(ErrorCode.PERSISTENCE_FAILURE)

        if updated is None:
            # Another spin consumed the credits between read and write.
            return ActionResult.failure(ErrorCode.NO_SPINS_AVAILABLE, multiplier=multiplier)

        return ActionResult.success(
            index=index,
            base_prize=base_prize,
            prize=prize,
            multiplier=multiplier,
            balance=updated["balance"],
            spins_left=updated["spins_left"],
        )
