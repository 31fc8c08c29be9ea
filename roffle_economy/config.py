"""Configuration system for roffle-economy.

All Pydantic models are defined here with defaults that match the live
mini-app. Catalog figures (tiers, bundles, skins) are configuration data;
the payout table shape is fixed in catalog.py and can only be overridden
as a whole.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

from .catalog import SEGMENTS_TOTAL


# ═══════════════════════════════════════════════════════════════
#  Infrastructure
# ═══════════════════════════════════════════════════════════════

class DatabaseConfig(BaseModel):
    path: str = "roffle.db"


class BotConfig(BaseModel):
    """Outbound Bot API settings. Token normally comes from ${BOT_TOKEN}."""
    token: str = ""
    api_base: str = "https://api.telegram.org"
    app_url: str = "https://roffle.vercel.app"
    timeout_seconds: float = 10.0
    play_text: str = "👋 Hey {name}! Tap below to play ROFFLE:"
    play_button_label: str = "🚀 Play ROFFLE"
    default_name: str = "there"


class SchedulerConfig(BaseModel):
    referral_reconcile_enabled: bool = True
    referral_reconcile_interval_seconds: int = 300


# ═══════════════════════════════════════════════════════════════
#  Game economy
# ═══════════════════════════════════════════════════════════════

class AccountDefaultsConfig(BaseModel):
    starting_spins: int = 20
    starting_tier: str = "free"
    spin_cap_policy: str = Field(
        default="uncapped",
        description="'uncapped' or 'clamp' — applied to every spin-granting path",
    )

    @field_validator("spin_cap_policy")
    @classmethod
    def _check_policy(cls, v: str) -> str:
        if v not in ("uncapped", "clamp"):
            raise ValueError("spin_cap_policy must be 'uncapped' or 'clamp'")
        return v


class WheelConfig(BaseModel):
    turbo_multipliers: list[int] = Field(default=[1, 5, 10, 20, 50])
    payouts: list[int] | None = Field(
        default=None,
        description="Full replacement payout table; None uses the standard 25 segments",
    )

    @field_validator("payouts")
    @classmethod
    def _check_payouts(cls, v: list[int] | None) -> list[int] | None:
        if v is None:
            return v
        if len(v) != SEGMENTS_TOTAL:
            raise ValueError(f"payouts must list exactly {SEGMENTS_TOTAL} segments, got {len(v)}")
        if any(p <= 0 for p in v):
            raise ValueError("payouts must be positive")
        return v


class TierConfig(BaseModel):
    multiplier: int
    spin_cap: int
    price: int = 0
    title: str = ""


def _default_tiers() -> dict[str, TierConfig]:
    # Insertion order is upgrade order.
    return {
        "free": TierConfig(multiplier=1, spin_cap=20, price=0, title="Free"),
        "plus": TierConfig(multiplier=2, spin_cap=40, price=700, title="$ROF Premium⚡️"),
        "pro": TierConfig(multiplier=3, spin_cap=60, price=1400, title="$ROF Plus⭐️"),
        "prem": TierConfig(multiplier=5, spin_cap=100, price=2100, title="$ROF Pro👑"),
    }


class BundleConfig(BaseModel):
    price: int
    coins: int = 0
    spins: int = 0
    tickets: int = 0
    title: str = ""


def _default_bundles() -> dict[str, BundleConfig]:
    return {
        "mini": BundleConfig(price=150, coins=1000, spins=20, tickets=1, title="Mini Bundle"),
        "medium": BundleConfig(price=400, coins=3000, spins=60, tickets=3, title="Medium Bundle"),
        "maxi": BundleConfig(price=900, coins=8000, spins=150, tickets=10, title="Maxi Bundle"),
    }


class SkinsConfig(BaseModel):
    """Paid cosmetic items: item id → price."""
    wheel: dict[str, int] = Field(
        default={"neon": 299, "gold": 299, "candy": 299, "cyber": 299},
    )
    background: dict[str, int] = Field(
        default={"galaxy": 299, "sunset": 299, "matrix": 299, "ocean": 299},
    )
    wheel_title: str = "ROFFLE Wheel Skin"
    background_title: str = "ROFFLE Background Skin"


class ReferralConfig(BaseModel):
    reward_coins: int = 200
    reward_spins: int = 20


class PaymentsConfig(BaseModel):
    currency: str = "XTR"
    invoice_description: str = "ROFFLE in-game unlock"
    lenient_precheckout: bool = False
    precheckout_error_message: str = "This item's price changed. Please reopen the shop and try again."
    ack_message: str = "✅ Payment received! {title} has been added to your account."
    already_owned_message: str = "✅ Payment received. You already own {title}."


# ═══════════════════════════════════════════════════════════════
#  Top-Level Game Config
# ═══════════════════════════════════════════════════════════════

class GameConfig(BaseModel):
    """Full service config."""

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    bot: BotConfig = Field(default_factory=BotConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)

    defaults: AccountDefaultsConfig = Field(default_factory=AccountDefaultsConfig)
    wheel: WheelConfig = Field(default_factory=WheelConfig)
    tiers: dict[str, TierConfig] = Field(default_factory=_default_tiers)
    bundles: dict[str, BundleConfig] = Field(default_factory=_default_bundles)
    skins: SkinsConfig = Field(default_factory=SkinsConfig)
    referral: ReferralConfig = Field(default_factory=ReferralConfig)
    payments: PaymentsConfig = Field(default_factory=PaymentsConfig)


# ═══════════════════════════════════════════════════════════════
#  Config Loading
# ═══════════════════════════════════════════════════════════════

def _expand_env_vars(obj: Any) -> Any:
    """Recursively expand ${VAR} and ${VAR:-default} in string values."""
    if isinstance(obj, str):
        return re.sub(
            r"\$\{([^}:]+)(?::-(.*?))?\}",
            lambda m: os.environ.get(m.group(1), m.group(2) or ""),
            obj,
        )
    elif isinstance(obj, dict):
        return {k: _expand_env_vars(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_expand_env_vars(v) for v in obj]
    return obj


def load_config(config_path: str) -> GameConfig:
    """Load and validate YAML config file into GameConfig."""
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ValueError("Config file must contain a YAML mapping at the top level.")

    raw = _expand_env_vars(raw)
    return GameConfig(**raw)
