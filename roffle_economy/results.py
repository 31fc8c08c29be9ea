"""Outcome taxonomy and structured results returned to the transport layer.

Engines raise the exceptions below internally and convert them to an
ActionResult at their public boundary; nothing here is meant to escape to
the webhook / HTTP layer as an unhandled fault.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCode(Enum):
    NO_SPINS_AVAILABLE = "no_spins"
    ACCOUNT_NOT_FOUND = "account_not_found"
    PERSISTENCE_FAILURE = "persistence_failure"
    INVALID_PURCHASE_PAYLOAD = "invalid_payload"
    PRICE_MISMATCH = "price_mismatch"
    UNKNOWN_CATALOG_ITEM = "unknown_item"
    DUPLICATE_REFERRAL = "duplicate_referral"
    SELF_REFERRAL = "self_referral"
    INVALID_REFERRAL_CODE = "invalid_referral_code"
    DUPLICATE_PAYMENT = "duplicate_payment"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    INVOICE_FAILED = "invoice_failed"
    INVALID_REQUEST = "invalid_request"
    INTERNAL_ERROR = "internal_error"


# Codes that mean "nothing was applied, try again later".
RETRYABLE = frozenset({
    ErrorCode.PERSISTENCE_FAILURE,
    ErrorCode.INVOICE_FAILED,
    ErrorCode.INTERNAL_ERROR,
})


class GameError(Exception):
    """Base class for economy errors converted to results at the boundary."""

    code: ErrorCode = ErrorCode.INTERNAL_ERROR

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code.value)


class PersistenceFailure(GameError):
    code = ErrorCode.PERSISTENCE_FAILURE


class InvalidPurchasePayload(GameError):
    code = ErrorCode.INVALID_PURCHASE_PAYLOAD


class UnknownCatalogItem(GameError):
    code = ErrorCode.UNKNOWN_CATALOG_ITEM


@dataclass(frozen=True)
class ActionResult:
    """Outcome of one economy operation."""

    ok: bool
    error: ErrorCode | None = None
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def success(cls, **data: Any) -> ActionResult:
        return cls(ok=True, data=data)

    @classmethod
    def failure(cls, code: ErrorCode, **data: Any) -> ActionResult:
        return cls(ok=False, error=code, data=data)

    @property
    def retry(self) -> bool:
        return self.error in RETRYABLE

    def __getitem__(self, key: str) -> Any:
        return self.data[key]

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"ok": self.ok}
        if self.error is not None:
            out["error"] = self.error.value
            if self.retry:
                out["retry"] = True
        out.update(self.data)
        return out
