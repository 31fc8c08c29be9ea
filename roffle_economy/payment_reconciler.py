"""Payment reconciler — invoice payloads, pre-checkout validation, confirmed grants.

The payment provider round-trips an opaque payload from invoice creation to
the pre-checkout query and the confirmation event. Payloads are decoded into
a closed PendingPurchase variant; unknown tags are rejected, never defaulted.

Confirmations are applied at most once per provider charge id: the id is
stored in the same transaction as the grant.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from .catalog import ItemType
from .ledger import LedgerDelta, account_view
from .results import (
    ActionResult,
    ErrorCode,
    GameError,
    InvalidPurchasePayload,
    PersistenceFailure,
    UnknownCatalogItem,
)

if TYPE_CHECKING:
    from .bot_client import BotClient
    from .catalog import Catalog
    from .config import GameConfig
    from .database import GameDatabase
    from .ledger import AccountLedger


@dataclass(frozen=True)
class PendingPurchase:
    """What a buyer is paying for, as carried in the invoice payload."""

    buyer_id: int
    item_type: ItemType
    item_id: str

    def to_payload(self) -> str:
        return json.dumps(
            {"tg_id": self.buyer_id, "item_type": self.item_type.value, "item_id": self.item_id},
            separators=(",", ":"),
        )


def _positive_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value)
    if isinstance(value, int) and value > 0:
        return value
    return None


class PaymentReconciler:
    """Validates and applies in-platform purchases."""

    def __init__(
        self,
        config: GameConfig,
        database: GameDatabase,
        ledger: AccountLedger,
        catalog: Catalog,
        logger: logging.Logger,
        bot_client: BotClient | None = None,
    ) -> None:
        self._config = config
        self._db = database
        self._ledger = ledger
        self._catalog = catalog
        self._logger = logger
        self._bot = bot_client

    def update_config(self, new_config: GameConfig, catalog: Catalog) -> None:
        """Hot-swap the config and catalog references."""
        self._config = new_config
        self._catalog = catalog

    # ══════════════════════════════════════════════════════════
    #  Catalog lookups & payloads
    # ══════════════════════════════════════════════════════════

    def price_of(self, item_type: ItemType | str | None, item_id: str | None) -> int:
        return self._catalog.price_of(item_type, item_id)

    def decode_payload(self, payload: str | bytes | dict | None) -> PendingPurchase:
        """Decode an invoice payload.

        Raises InvalidPurchasePayload for malformed JSON, missing fields or
        unrecognised item tags, and UnknownCatalogItem for a well-formed
        payload naming something the catalog does not sell.
        """
        data: Any = payload
        if isinstance(payload, (str, bytes)):
            try:
                data = json.loads(payload)
            except ValueError as e:
                raise InvalidPurchasePayload("payload is not valid JSON") from e
        if not isinstance(data, dict):
            raise InvalidPurchasePayload("payload must be a JSON object")

        buyer_id = _positive_int(data.get("tg_id"))
        if buyer_id is None:
            raise InvalidPurchasePayload("payload has no valid buyer id")
        item_type = ItemType.parse(data.get("item_type"))
        if item_type is None:
            raise InvalidPurchasePayload(f"unrecognised item type {data.get('item_type')!r}")
        item_id = data.get("item_id")
        if not isinstance(item_id, str) or not item_id:
            raise InvalidPurchasePayload("payload has no item id")

        if self.price_of(item_type, item_id) <= 0:
            raise UnknownCatalogItem(f"{item_type.value}:{item_id}")
        return PendingPurchase(buyer_id=buyer_id, item_type=item_type, item_id=item_id)

    def build_invoice(self, buyer_id: int, item_type: str, item_id: str) -> dict[str, Any]:
        """Invoice parameters for createInvoiceLink. Raises UnknownCatalogItem."""
        kind = ItemType.parse(item_type)
        price = self.price_of(kind, item_id)
        if kind is None or price <= 0:
            raise UnknownCatalogItem(f"{item_type}:{item_id}")

        purchase = PendingPurchase(buyer_id=buyer_id, item_type=kind, item_id=item_id)
        title = self._catalog.title_of(kind, item_id)
        return {
            "title": title,
            "description": self._config.payments.invoice_description,
            "payload": purchase.to_payload(),
            "currency": self._config.payments.currency,
            "prices": [{"label": title, "amount": price}],
        }

    async def create_invoice(self, buyer_id: int, item_type: str, item_id: str) -> ActionResult:
        """Build an invoice and ask the provider for a payment link."""
        try:
            invoice = self.build_invoice(buyer_id, item_type, item_id)
        except UnknownCatalogItem:
            return ActionResult.failure(
                ErrorCode.UNKNOWN_CATALOG_ITEM, item_type=item_type, item_id=item_id,
            )
        if self._bot is None:
            return ActionResult.failure(ErrorCode.INVOICE_FAILED)
        link = await self._bot.create_invoice_link(invoice)
        if not link:
            return ActionResult.failure(ErrorCode.INVOICE_FAILED)
        return ActionResult.success(invoice_link=link, amount=invoice["prices"][0]["amount"])

    # ══════════════════════════════════════════════════════════
    #  Pre-checkout
    # ══════════════════════════════════════════════════════════

    def validate_pre_checkout(
        self, claimed_amount: int, payload: str | dict | None, currency: str | None = None,
    ) -> ActionResult:
        """Approve iff *claimed_amount* equals the catalog price of the payload's item.

        Undecodable payloads are rejected unless ``payments.lenient_precheckout``
        is set, in which case they are approved without a price check.
        """
        try:
            purchase = self.decode_payload(payload)
        except InvalidPurchasePayload as e:
            if self._config.payments.lenient_precheckout:
                self._logger.warning("Approving unverifiable pre-checkout (lenient mode): %s", e)
                return ActionResult.success(approved=True, verified=False)
            self._logger.warning("Rejecting pre-checkout with invalid payload: %s", e)
            return ActionResult.failure(ErrorCode.INVALID_PURCHASE_PAYLOAD, approved=False)
        except UnknownCatalogItem as e:
            self._logger.warning("Rejecting pre-checkout for unknown item %s", e)
            return ActionResult.failure(ErrorCode.UNKNOWN_CATALOG_ITEM, approved=False)

        expected = self.price_of(purchase.item_type, purchase.item_id)
        if currency is not None and currency != self._config.payments.currency:
            return ActionResult.failure(ErrorCode.PRICE_MISMATCH, approved=False, expected=expected)
        if isinstance(claimed_amount, bool) or claimed_amount != expected:
            self._logger.warning(
                "Pre-checkout price mismatch for %d %s:%s: claimed %s, expected %d",
                purchase.buyer_id, purchase.item_type.value, purchase.item_id,
                claimed_amount, expected,
            )
            return ActionResult.failure(ErrorCode.PRICE_MISMATCH, approved=False, expected=expected)
        return ActionResult.success(approved=True, verified=True, expected=expected)

    # ══════════════════════════════════════════════════════════
    #  Confirmation
    # ══════════════════════════════════════════════════════════

    async def apply_confirmed_payment(
        self,
        payload: str | dict | None,
        amount_paid: int,
        charge_id: str,
        currency: str | None = None,
    ) -> ActionResult:
        """Apply the grant for a confirmed payment, at most once per *charge_id*."""
        if not charge_id:
            return ActionResult.failure(ErrorCode.INVALID_REQUEST)

        try:
            purchase = self.decode_payload(payload)
        except GameError as e:
            self._logger.error("Confirmed payment %s has unusable payload: %s", charge_id, e)
            return await self._reject(charge_id, None, amount_paid, e.code)

        expected = self.price_of(purchase.item_type, purchase.item_id)
        wrong_currency = currency is not None and currency != self._config.payments.currency
        if amount_paid != expected or wrong_currency:
            self._logger.error(
                "Confirmed payment %s for %d %s:%s paid %s %s, expected %d %s; not granted",
                charge_id, purchase.buyer_id, purchase.item_type.value, purchase.item_id,
                amount_paid, currency or self._config.payments.currency,
                expected, self._config.payments.currency,
            )
            return await self._reject(charge_id, purchase, amount_paid, ErrorCode.PRICE_MISMATCH)

        try:
            outcome = await self._grant(charge_id, purchase, amount_paid)
        except PersistenceFailure:
            return ActionResult.failure(ErrorCode.PERSISTENCE_FAILURE, charge_id=charge_id)

        if outcome["duplicate"]:
            self._logger.info("Payment %s already processed; ignoring replay", charge_id)
            return ActionResult.failure(ErrorCode.DUPLICATE_PAYMENT, charge_id=charge_id)

        granted = outcome["granted"]
        self._logger.info(
            "Payment %s applied: %d bought %s:%s for %d (%s)",
            charge_id, purchase.buyer_id, purchase.item_type.value, purchase.item_id,
            amount_paid, "granted" if granted else "already owned",
        )
        await self._acknowledge(purchase, granted)
        return ActionResult.success(
            charge_id=charge_id,
            item_type=purchase.item_type.value,
            item_id=purchase.item_id,
            granted=granted,
            already_owned=not granted,
            **account_view(outcome["account"]),
        )

    async def _grant(self, charge_id: str, purchase: PendingPurchase, amount: int) -> dict[str, Any]:
        kind = purchase.item_type
        if kind is ItemType.TIER:
            return await self._ledger.record_purchase(
                charge_id, purchase.buyer_id, kind.value, purchase.item_id, amount,
                delta=LedgerDelta(tier=purchase.item_id),
                tier_from=self._catalog.tiers_below(purchase.item_id),
            )
        if kind is ItemType.SKIN_WHEEL or kind is ItemType.SKIN_BACKGROUND:
            return await self._ledger.record_purchase(
                charge_id, purchase.buyer_id, kind.value, purchase.item_id, amount,
                inventory_item=(kind.value, purchase.item_id),
            )
        if kind is ItemType.BUNDLE:
            bundle = self._catalog.bundles[purchase.item_id]
            return await self._ledger.record_purchase(
                charge_id, purchase.buyer_id, kind.value, purchase.item_id, amount,
                delta=LedgerDelta(balance=bundle.coins, spins=bundle.spins, tickets=bundle.tickets),
            )
        raise UnknownCatalogItem(f"{kind}:{purchase.item_id}")

    async def _reject(
        self,
        charge_id: str,
        purchase: PendingPurchase | None,
        amount: int,
        code: ErrorCode,
    ) -> ActionResult:
        """Record a charge that will not be granted so replays stay no-ops."""
        try:
            recorded = await self._db.record_payment(
                charge_id,
                purchase.buyer_id if purchase else None,
                purchase.item_type.value if purchase else None,
                purchase.item_id if purchase else None,
                amount,
                status=code.value,
            )
        except sqlite3.Error as e:
            self._logger.error("Could not record rejected payment %s: %s", charge_id, e)
            return ActionResult.failure(ErrorCode.PERSISTENCE_FAILURE, charge_id=charge_id)
        if not recorded:
            return ActionResult.failure(ErrorCode.DUPLICATE_PAYMENT, charge_id=charge_id)
        return ActionResult.failure(code, charge_id=charge_id)

    async def _acknowledge(self, purchase: PendingPurchase, granted: bool) -> None:
        """Tell the buyer; delivery problems never change the payment outcome."""
        if self._bot is None:
            return
        cfg = self._config.payments
        template = cfg.ack_message if granted else cfg.already_owned_message
        text = template.format(title=self._catalog.title_of(purchase.item_type, purchase.item_id))
        try:
            await self._bot.send_message(purchase.buyer_id, text)
        except Exception:
            self._logger.exception("Failed to send payment acknowledgement to %d", purchase.buyer_id)
