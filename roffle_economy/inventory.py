"""Inventory store — cosmetic items (wheel skins, backgrounds) owned per account."""

from __future__ import annotations

import logging
import sqlite3
from typing import TYPE_CHECKING

from .catalog import ItemType
from .results import ActionResult, ErrorCode

if TYPE_CHECKING:
    from .catalog import Catalog
    from .config import GameConfig
    from .database import GameDatabase


class InventoryStore:
    """Grants cosmetic items. Items are never removed."""

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

    async def unlock(self, account_id: int, item_type: str, item_id: str) -> ActionResult:
        """Grant an item; reports ``already_owned`` instead of failing on repeats.

        The existence check keeps the common repeat cheap; the UNIQUE
        constraint decides when two grants race.
        """
        kind = ItemType.parse(item_type)
        if kind is None or not self._catalog.has_skin(kind, item_id):
            return ActionResult.failure(
                ErrorCode.UNKNOWN_CATALOG_ITEM, item_type=item_type, item_id=item_id,
            )

        try:
            if await self._db.has_inventory_item(account_id, kind.value, item_id):
                return ActionResult.success(item_type=kind.value, item_id=item_id, already_owned=True)
            defaults = self._config.defaults
            added = await self._db.add_inventory_item(
                account_id, kind.value, item_id,
                starting_spins=defaults.starting_spins,
                starting_tier=defaults.starting_tier,
            )
        except sqlite3.Error as e:
            self._logger.error("Inventory unlock failed for %d %s:%s: %s", account_id, kind.value, item_id, e)
            return ActionResult.failure(ErrorCode.PERSISTENCE_FAILURE)

        if added:
            self._logger.info("Unlocked %s:%s for account %d", kind.value, item_id, account_id)
        return ActionResult.success(item_type=kind.value, item_id=item_id, already_owned=not added)

    async def owns(self, account_id: int, item_type: str, item_id: str) -> bool:
        kind = ItemType.parse(item_type)
        if kind is None:
            return False
        return await self._db.has_inventory_item(account_id, kind.value, item_id)

    async def list_items(self, account_id: int) -> list[dict]:
        return await self._db.list_inventory(account_id)
