"""Action router — the core-facing entry point for the transport layer.

The webhook / HTTP layer (not part of this package) hands every game action
here as a plain dict ``{"action": ..., ...params}`` and renders the returned
dict as an HTTP response or a bot reply.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from . import __version__
from .ledger import account_view
from .referral_engine import MAX_ACCOUNT_ID
from .results import ActionResult, ErrorCode, GameError

if TYPE_CHECKING:
    from .inventory import InventoryStore
    from .ledger import AccountLedger
    from .payment_reconciler import PaymentReconciler
    from .referral_engine import ReferralEngine
    from .wheel_engine import WheelResolver


class InvalidRequest(ValueError):
    """Missing or malformed action parameters."""


def _int_param(request: dict[str, Any], key: str, *, default: int | None = None, positive: bool = False) -> int:
    value = request.get(key, default)
    if value is None:
        raise InvalidRequest(f"{key} is required")
    if isinstance(value, str):
        try:
            value = int(value.strip())
        except ValueError:
            raise InvalidRequest(f"{key} must be an integer") from None
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidRequest(f"{key} must be an integer")
    if abs(value) > MAX_ACCOUNT_ID:
        raise InvalidRequest(f"{key} is out of range")
    if positive and value <= 0:
        raise InvalidRequest(f"{key} must be positive")
    return value


def _str_param(request: dict[str, Any], key: str) -> str:
    value = request.get(key)
    if not isinstance(value, str) or not value:
        raise InvalidRequest(f"{key} is required")
    return value


class ActionRouter:
    """Dispatches transport actions to the economy engines."""

    def __init__(
        self,
        ledger: AccountLedger,
        wheel: WheelResolver,
        referrals: ReferralEngine,
        payments: PaymentReconciler,
        inventory: InventoryStore,
        logger: logging.Logger | None = None,
    ) -> None:
        self._ledger = ledger
        self._wheel = wheel
        self._referrals = referrals
        self._payments = payments
        self._inventory = inventory
        self._logger = logger or logging.getLogger("roffle.router")
        self.actions_processed = 0

    async def handle(self, request: dict[str, Any]) -> dict[str, Any]:
        """Route one action. Always returns a response dict; never raises."""
        action = request.get("action", "") if isinstance(request, dict) else ""
        handler = self._HANDLER_MAP.get(action)

        if not handler:
            return {
                "ok": False,
                "action": action,
                "error": ErrorCode.INVALID_REQUEST.value,
                "detail": f"Unknown action: {action}",
            }

        try:
            result: ActionResult = await handler(self, request)
        except InvalidRequest as e:
            return {
                "ok": False,
                "action": action,
                "error": ErrorCode.INVALID_REQUEST.value,
                "detail": str(e),
            }
        except GameError as e:
            result = ActionResult.failure(e.code)
        except Exception:
            self._logger.exception("Action handler error for %s", action)
            result = ActionResult.failure(ErrorCode.INTERNAL_ERROR)

        self.actions_processed += 1
        return {"action": action, **result.to_dict()}

    # ══════════════════════════════════════════════════════════
    #  Game actions
    # ══════════════════════════════════════════════════════════

    async def _handle_spin(self, request: dict[str, Any]) -> ActionResult:
        account_id = _int_param(request, "account_id", positive=True)
        return await self._wheel.resolve_spin(account_id, request.get("multiplier", 1))

    async def _handle_referral_claim(self, request: dict[str, Any]) -> ActionResult:
        account_id = _int_param(request, "account_id", positive=True)
        return await self._referrals.handle_referral(request.get("code"), account_id)

    async def _handle_pre_checkout(self, request: dict[str, Any]) -> ActionResult:
        amount = _int_param(request, "amount")
        return self._payments.validate_pre_checkout(
            amount, request.get("payload"), request.get("currency"),
        )

    async def _handle_payment_confirmed(self, request: dict[str, Any]) -> ActionResult:
        amount = _int_param(request, "amount")
        charge_id = _str_param(request, "charge_id")
        return await self._payments.apply_confirmed_payment(
            request.get("payload"), amount, charge_id, request.get("currency"),
        )

    async def _handle_invoice_create(self, request: dict[str, Any]) -> ActionResult:
        account_id = _int_param(request, "account_id", positive=True)
        return await self._payments.create_invoice(
            account_id, _str_param(request, "item_type"), _str_param(request, "item_id"),
        )

    async def _handle_bundle_grant(self, request: dict[str, Any]) -> ActionResult:
        account_id = _int_param(request, "account_id", positive=True)
        return await self._ledger.grant_bundle(account_id, _str_param(request, "bundle_id"))

    async def _handle_reward_grant(self, request: dict[str, Any]) -> ActionResult:
        account_id = _int_param(request, "account_id", positive=True)
        return await self._ledger.grant_reward(
            account_id,
            coins=_int_param(request, "coins", default=0),
            spins=_int_param(request, "spins", default=0),
            tickets=_int_param(request, "tickets", default=0),
            reason=request.get("reason"),
        )

    async def _handle_inventory_unlock(self, request: dict[str, Any]) -> ActionResult:
        account_id = _int_param(request, "account_id", positive=True)
        return await self._inventory.unlock(
            account_id, _str_param(request, "item_type"), _str_param(request, "item_id"),
        )

    async def _handle_tier_set(self, request: dict[str, Any]) -> ActionResult:
        account_id = _int_param(request, "account_id", positive=True)
        return await self._ledger.set_tier(account_id, _str_param(request, "tier"))

    async def _handle_profile_sync(self, request: dict[str, Any]) -> ActionResult:
        account_id = _int_param(request, "account_id", positive=True)
        return await self._ledger.sync_profile(
            account_id,
            username=request.get("username"),
            display_name=request.get("display_name"),
            photo_ref=request.get("photo_ref"),
        )

    async def _handle_account_get(self, request: dict[str, Any]) -> ActionResult:
        account_id = _int_param(request, "account_id", positive=True)
        account = await self._ledger.get_account(account_id)
        if account is None:
            return ActionResult.failure(ErrorCode.ACCOUNT_NOT_FOUND)
        items = await self._inventory.list_items(account_id)
        return ActionResult.success(
            inventory=[{"item_type": i["item_type"], "item_id": i["item_id"]} for i in items],
            **account_view(account),
        )

    async def _handle_ping(self, request: dict[str, Any]) -> ActionResult:
        return ActionResult.success(pong=True, version=__version__)

    _HANDLER_MAP: dict[str, Any] = {
        "spin": _handle_spin,
        "referral.claim": _handle_referral_claim,
        "payment.pre_checkout": _handle_pre_checkout,
        "payment.confirmed": _handle_payment_confirmed,
        "invoice.create": _handle_invoice_create,
        "bundle.grant": _handle_bundle_grant,
        "reward.grant": _handle_reward_grant,
        "inventory.unlock": _handle_inventory_unlock,
        "tier.set": _handle_tier_set,
        "profile.sync": _handle_profile_sync,
        "account.get": _handle_account_get,
        "system.ping": _handle_ping,
    }
