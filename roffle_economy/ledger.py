"""Account ledger — the only path through which account state changes.

Lost updates are ruled out by delegating all arithmetic to the store: a
delta becomes one guarded ``UPDATE ... SET balance = balance + ?`` inside
a single transaction (see GameDatabase._apply_delta_on). Store errors are
raised as PersistenceFailure so callers never report a prize or reward
that was not persisted.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, TypeVar

from .results import ActionResult, ErrorCode, PersistenceFailure

if TYPE_CHECKING:
    from .catalog import Catalog
    from .config import GameConfig
    from .database import GameDatabase


T = TypeVar("T")


@dataclass(frozen=True)
class LedgerDelta:
    """Additive change to an account. ``tier`` replaces rather than adds."""

    balance: int = 0
    spins: int = 0
    tickets: int = 0
    invites: int = 0
    tier: str | None = None

    @property
    def is_empty(self) -> bool:
        return not (self.balance or self.spins or self.tickets or self.invites) and self.tier is None


def account_view(account: dict[str, Any]) -> dict[str, Any]:
    """Public projection of an account row."""
    return {
        "account_id": account["account_id"],
        "balance": account["balance"],
        "spins_left": account["spins_left"],
        "golden_tickets": account["golden_tickets"],
        "tier": account["tier"],
        "invites": account["invites"],
    }


class AccountLedger:
    """Owns every read-modify-write against an account."""

    def __init__(
        self,
        config: GameConfig,
        database: GameDatabase,
        catalog: Catalog,
        logger: logging.Logger,
    ) -> None:
        self._config = config
        self._db = database
        self._catalog = catalog
        self._logger = logger

    def update_config(self, new_config: GameConfig, catalog: Catalog) -> None:
        """Hot-swap the config and catalog references."""
        self._config = new_config
        self._catalog = catalog

    @property
    def catalog(self) -> Catalog:
        return self._catalog

    async def _guard(self, op: str, awaitable: Awaitable[T]) -> T:
        try:
            return await awaitable
        except sqlite3.Error as e:
            self._logger.error("Ledger %s failed: %s", op, e)
            raise PersistenceFailure(f"{op} failed") from e

    # ══════════════════════════════════════════════════════════
    #  Reads
    # ══════════════════════════════════════════════════════════

    async def get_account(self, account_id: int) -> dict | None:
        return await self._guard("read", self._db.get_account(account_id))

    async def get_or_create(self, account_id: int) -> dict:
        """Point read; inserts the default row on a miss."""
        defaults = self._config.defaults
        return await self._guard(
            "get_or_create",
            self._db.get_or_create_account(
                account_id, defaults.starting_spins, defaults.starting_tier,
            ),
        )

    # ══════════════════════════════════════════════════════════
    #  Mutations
    # ══════════════════════════════════════════════════════════

    async def apply_delta(
        self,
        account_id: int,
        delta: LedgerDelta,
        tx_type: str,
        reason: str | None = None,
        metadata: dict | None = None,
        require_spins: int = 0,
        tier: str | None = None,
        tier_from: tuple[str, ...] = (),
    ) -> dict | None:
        """Apply *delta* atomically. Returns the new row, or None if a guard refused it.

        *tier* is the account's tier as last read; it selects the spin
        ceiling when the catalog clamps spin grants.
        """
        updated = await self._guard(
            "apply_delta",
            self._db.apply_delta(
                account_id,
                delta,
                tx_type,
                reason=reason,
                metadata=json.dumps(metadata) if metadata else None,
                require_spins=require_spins,
                spin_ceiling=self._catalog.spin_ceiling(tier),
                tier_from=tier_from,
            ),
        )
        if updated is not None:
            self._logger.info(
                "Ledger %s: account=%d balance%+d spins%+d tickets%+d%s",
                tx_type, account_id, delta.balance, delta.spins, delta.tickets,
                f" tier={delta.tier}" if delta.tier else "",
            )
        return updated

    async def credit_referral_side(
        self, referral_id: int, side: str, account_id: int, delta: LedgerDelta,
    ) -> dict | None:
        """Credit one side of a referral exactly once (None if already credited)."""
        defaults = self._config.defaults
        ceiling = None
        if self._catalog.spin_cap_policy == "clamp":
            account = await self.get_or_create(account_id)
            ceiling = self._catalog.spin_ceiling(account["tier"])
        updated = await self._guard(
            "referral_credit",
            self._db.credit_referral_side(
                referral_id, side, account_id, delta,
                starting_spins=defaults.starting_spins,
                starting_tier=defaults.starting_tier,
                spin_ceiling=ceiling,
            ),
        )
        if updated is not None:
            self._logger.info(
                "Referral #%d credited %s account=%d (+%d coins, +%d spins)",
                referral_id, side, account_id, delta.balance, delta.spins,
            )
        return updated

    async def record_purchase(
        self,
        charge_id: str,
        buyer_id: int,
        item_type: str,
        item_id: str,
        amount: int,
        delta: LedgerDelta | None = None,
        tier_from: tuple[str, ...] = (),
        inventory_item: tuple[str, str] | None = None,
    ) -> dict[str, Any]:
        """Mark a provider charge processed and apply its grant in one transaction."""
        defaults = self._config.defaults
        ceiling = None
        if delta is not None and delta.spins > 0 and self._catalog.spin_cap_policy == "clamp":
            account = await self.get_or_create(buyer_id)
            ceiling = self._catalog.spin_ceiling(account["tier"])
        return await self._guard(
            "record_purchase",
            self._db.process_payment(
                charge_id, buyer_id, item_type, item_id, amount,
                delta=delta,
                tier_from=tier_from,
                inventory_item=inventory_item,
                spin_ceiling=ceiling,
                starting_spins=defaults.starting_spins,
                starting_tier=defaults.starting_tier,
            ),
        )

    # ══════════════════════════════════════════════════════════
    #  Grants
    # ══════════════════════════════════════════════════════════

    async def grant_reward(
        self,
        account_id: int,
        coins: int = 0,
        spins: int = 0,
        tickets: int = 0,
        reason: str | None = None,
    ) -> ActionResult:
        """Generic reward (or charge, with negative values) as one delta."""
        try:
            account = await self.get_or_create(account_id)
            updated = await self.apply_delta(
                account_id,
                LedgerDelta(balance=coins, spins=spins, tickets=tickets),
                tx_type="reward",
                reason=reason,
                tier=account["tier"],
            )
        except PersistenceFailure:
            return ActionResult.failure(ErrorCode.PERSISTENCE_FAILURE)
        if updated is None:
            return ActionResult.failure(ErrorCode.INSUFFICIENT_BALANCE)
        return ActionResult.success(**account_view(updated))

    async def grant_bundle(self, account_id: int, bundle_id: str) -> ActionResult:
        """Apply a bundle's coins, spins and tickets as one delta."""
        bundle = self._catalog.bundles.get(bundle_id)
        if bundle is None:
            return ActionResult.failure(ErrorCode.UNKNOWN_CATALOG_ITEM, item_id=bundle_id)
        try:
            account = await self.get_or_create(account_id)
            updated = await self.apply_delta(
                account_id,
                LedgerDelta(balance=bundle.coins, spins=bundle.spins, tickets=bundle.tickets),
                tx_type="bundle",
                reason=f"Bundle: {bundle_id}",
                tier=account["tier"],
            )
        except PersistenceFailure:
            return ActionResult.failure(ErrorCode.PERSISTENCE_FAILURE)
        if updated is None:
            return ActionResult.failure(ErrorCode.PERSISTENCE_FAILURE)
        return ActionResult.success(bundle_id=bundle_id, **account_view(updated))

    async def set_tier(self, account_id: int, tier: str) -> ActionResult:
        """Upgrade an account's tier. Downgrades and re-sets are no-ops."""
        if tier not in self._catalog.tiers:
            return ActionResult.failure(ErrorCode.UNKNOWN_CATALOG_ITEM, item_id=tier)
        try:
            account = await self.get_or_create(account_id)
            if not self._catalog.is_upgrade(account["tier"], tier):
                return ActionResult.success(changed=False, **account_view(account))
            updated = await self.apply_delta(
                account_id,
                LedgerDelta(tier=tier),
                tx_type="tier",
                reason=f"Tier set: {tier}",
                tier_from=self._catalog.tiers_below(tier),
            )
            if updated is None:
                # Upgraded concurrently past *tier*
                updated = await self.get_or_create(account_id)
                return ActionResult.success(changed=False, **account_view(updated))
        except PersistenceFailure:
            return ActionResult.failure(ErrorCode.PERSISTENCE_FAILURE)
        return ActionResult.success(changed=True, **account_view(updated))

    async def sync_profile(
        self,
        account_id: int,
        username: str | None = None,
        display_name: str | None = None,
        photo_ref: str | None = None,
    ) -> ActionResult:
        """Refresh the cosmetic profile cache, creating the account if needed."""
        defaults = self._config.defaults
        try:
            account = await self._guard(
                "sync_profile",
                self._db.update_profile(
                    account_id, username, display_name, photo_ref,
                    defaults.starting_spins, defaults.starting_tier,
                ),
            )
        except PersistenceFailure:
            return ActionResult.failure(ErrorCode.PERSISTENCE_FAILURE)
        return ActionResult.success(
            username=account.get("username"),
            display_name=account.get("display_name"),
            **account_view(account),
        )
