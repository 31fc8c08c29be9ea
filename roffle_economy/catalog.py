"""Static game catalog — wheel payout table, tiers, bundles and skins.

The payout table is shared bit-for-bit with the mini-app wheel renderer.
Changing its shape requires a synchronised front-end release.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Mapping

if TYPE_CHECKING:
    from .config import GameConfig


SEGMENTS_TOTAL = 25

# 1-indexed wheel positions → base prize. Position 1 is the jackpot; the
# groups below are applied in order and never overwrite a filled slot.
_PAYOUT_GROUPS: tuple[tuple[tuple[int, ...], int], ...] = (
    ((2, 4, 6, 8, 10, 12, 14, 16, 18, 20, 22, 24), 1),
    ((3, 7, 11, 15, 19, 23), 2),
    ((5, 9, 13), 5),
    ((17, 25), 20),
    ((21,), 50),
)
JACKPOT_PRIZE = 100


def build_payout_table() -> tuple[int, ...]:
    """Build the 25-segment payout table (0-indexed)."""
    slots: list[int | None] = [None] * SEGMENTS_TOTAL
    slots[0] = JACKPOT_PRIZE
    for positions, amount in _PAYOUT_GROUPS:
        for pos in positions:
            if slots[pos - 1] is None:
                slots[pos - 1] = amount
    return tuple(s or 0 for s in slots)


PAYOUT_TABLE: tuple[int, ...] = build_payout_table()


class ItemType(str, Enum):
    """Purchasable item kinds carried in invoice payloads."""

    TIER = "tier"
    SKIN_WHEEL = "skin-wheel"
    SKIN_BACKGROUND = "skin-background"
    BUNDLE = "bundle"

    @classmethod
    def parse(cls, tag: object) -> ItemType | None:
        """Map a payload tag to an ItemType; unrecognised tags give None."""
        if not isinstance(tag, str):
            return None
        tag = _LEGACY_TAGS.get(tag, tag)
        try:
            return cls(tag)
        except ValueError:
            return None

    @property
    def is_skin(self) -> bool:
        return self in (ItemType.SKIN_WHEEL, ItemType.SKIN_BACKGROUND)


# Tags the first mini-app release put in invoice payloads.
_LEGACY_TAGS = {"wheel": "skin-wheel", "bg": "skin-background"}


@dataclass(frozen=True)
class TierSpec:
    name: str
    rank: int
    multiplier: int
    spin_cap: int
    price: int
    title: str


@dataclass(frozen=True)
class BundleSpec:
    bundle_id: str
    price: int
    coins: int
    spins: int
    tickets: int
    title: str


@dataclass(frozen=True)
class Catalog:
    """Immutable catalog snapshot injected into every engine."""

    payouts: tuple[int, ...] = PAYOUT_TABLE
    turbo_multipliers: tuple[int, ...] = (1, 5, 10, 20, 50)
    tiers: Mapping[str, TierSpec] = field(default_factory=lambda: MappingProxyType({}))
    bundles: Mapping[str, BundleSpec] = field(default_factory=lambda: MappingProxyType({}))
    skins: Mapping[ItemType, Mapping[str, int]] = field(
        default_factory=lambda: MappingProxyType({}),
    )
    skin_titles: Mapping[ItemType, str] = field(default_factory=lambda: MappingProxyType({}))
    default_tier: str = "free"
    spin_cap_policy: str = "uncapped"

    @classmethod
    def from_config(cls, config: GameConfig) -> Catalog:
        payouts = tuple(config.wheel.payouts) if config.wheel.payouts else PAYOUT_TABLE
        if not payouts:
            raise ValueError("Payout table must not be empty")

        tiers = {
            name: TierSpec(
                name=name,
                rank=rank,
                multiplier=t.multiplier,
                spin_cap=t.spin_cap,
                price=t.price,
                title=t.title or name,
            )
            for rank, (name, t) in enumerate(config.tiers.items())
        }
        if config.defaults.starting_tier not in tiers:
            raise ValueError(
                f"Starting tier '{config.defaults.starting_tier}' is not in the tier catalog"
            )

        bundles = {
            bid: BundleSpec(
                bundle_id=bid,
                price=b.price,
                coins=b.coins,
                spins=b.spins,
                tickets=b.tickets,
                title=b.title or bid,
            )
            for bid, b in config.bundles.items()
        }
        skins = {
            ItemType.SKIN_WHEEL: MappingProxyType(dict(config.skins.wheel)),
            ItemType.SKIN_BACKGROUND: MappingProxyType(dict(config.skins.background)),
        }
        skin_titles = {
            ItemType.SKIN_WHEEL: config.skins.wheel_title,
            ItemType.SKIN_BACKGROUND: config.skins.background_title,
        }
        return cls(
            payouts=payouts,
            turbo_multipliers=tuple(config.wheel.turbo_multipliers) or (1,),
            tiers=MappingProxyType(tiers),
            bundles=MappingProxyType(bundles),
            skins=MappingProxyType(skins),
            skin_titles=MappingProxyType(skin_titles),
            default_tier=config.defaults.starting_tier,
            spin_cap_policy=config.defaults.spin_cap_policy,
        )

    # ══════════════════════════════════════════════════════════
    #  Wheel
    # ══════════════════════════════════════════════════════════

    @property
    def segments(self) -> int:
        return len(self.payouts)

    def coerce_multiplier(self, requested: object) -> int:
        """Turbo multiplier, or 1 when the request is not an offered value."""
        if isinstance(requested, bool):
            return 1
        if isinstance(requested, str) and requested.strip().isdigit():
            requested = int(requested)
        if isinstance(requested, int) and requested in self.turbo_multipliers:
            return requested
        return 1

    def final_prize(self, segment: int, tier: str, multiplier: int) -> int:
        return self.payouts[segment] * self.tier(tier).multiplier * multiplier

    # ══════════════════════════════════════════════════════════
    #  Tiers
    # ══════════════════════════════════════════════════════════

    def tier(self, name: str | None) -> TierSpec:
        """Look up a tier; unknown names fall back to the default tier."""
        spec = self.tiers.get(name or "")
        if spec is None:
            spec = self.tiers[self.default_tier]
        return spec

    def tier_multiplier(self, name: str | None) -> int:
        return self.tier(name).multiplier

    def is_upgrade(self, current: str | None, new: str) -> bool:
        if new not in self.tiers:
            return False
        return self.tiers[new].rank > self.tier(current).rank

    def tiers_below(self, name: str) -> tuple[str, ...]:
        """Tier names strictly below *name* (those it may be upgraded from)."""
        target = self.tiers[name].rank
        return tuple(t.name for t in self.tiers.values() if t.rank < target)

    def spin_ceiling(self, tier: str | None) -> int | None:
        """Upper bound for spin-granting credits, or None when uncapped.

        Every path that adds spin credits (bundles, generic rewards, referral
        rewards) passes its grant through this ceiling. Spin debits are
        never affected.
        """
        if self.spin_cap_policy == "clamp":
            return self.tier(tier).spin_cap
        return None

    # ══════════════════════════════════════════════════════════
    #  Prices
    # ══════════════════════════════════════════════════════════

    def price_of(self, item_type: ItemType | str | None, item_id: str | None) -> int:
        """Catalog price in platform currency; 0 for unknown combinations."""
        if not isinstance(item_type, ItemType):
            item_type = ItemType.parse(item_type)
        if item_type is None or not isinstance(item_id, str):
            return 0
        if item_type is ItemType.TIER:
            spec = self.tiers.get(item_id)
            return spec.price if spec else 0
        if item_type is ItemType.BUNDLE:
            bundle = self.bundles.get(item_id)
            return bundle.price if bundle else 0
        return self.skins.get(item_type, {}).get(item_id, 0)

    def title_of(self, item_type: ItemType, item_id: str) -> str:
        if item_type is ItemType.TIER:
            return self.tiers[item_id].title
        if item_type is ItemType.BUNDLE:
            return self.bundles[item_id].title
        return self.skin_titles.get(item_type, item_id)

    def has_skin(self, item_type: ItemType | str, item_id: str) -> bool:
        if not isinstance(item_type, ItemType):
            item_type = ItemType.parse(item_type)
        if item_type is None or not item_type.is_skin:
            return False
        return item_id in self.skins.get(item_type, {})
