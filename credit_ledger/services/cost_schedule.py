"""
Cost Schedule - static point prices and allocations.

FAIL-CLOSED: any generation type, tier or pack that is not registered here
raises ConfigError. When a new generation type ships it MUST be added to
GENERATION_COSTS or every deduction for it will be refused.
"""

from typing import Dict, Any

from credit_ledger.config import config
from credit_ledger.errors import ConfigError


# Points charged per generation
GENERATION_COSTS: Dict[str, int] = {
    "nanoBananaImage": 5,
    "sora2Video": 20,
    "sora2ProVideo": 80,
}

# Monthly subscription allocation per tier (yearly plans release monthly)
TIER_ALLOCATIONS: Dict[str, int] = {
    "pro": 800,
    "pro_plus": 1600,
}

FREE_TIER = "free"
PAID_TIERS = frozenset(TIER_ALLOCATIONS)
KNOWN_TIERS = PAID_TIERS | {FREE_TIER}

# One-off packs: credited amount is points + bonus
POINTS_PACKS: Dict[str, Dict[str, int]] = {
    "pack_100": {"points": 100, "bonus": 0},
    "pack_200": {"points": 200, "bonus": 20},
    "pack_500": {"points": 500, "bonus": 75},
}


def get_generation_cost(generation_type: str) -> int:
    """
    Cost in points for one generation.

    Raises:
        ConfigError: If generation_type is not registered
    """
    cost = GENERATION_COSTS.get(generation_type)
    if cost is None:
        raise ConfigError("generation type", generation_type)
    return cost


def get_tier_allocation(tier: str) -> int:
    """
    Points granted per billing cycle for a paid tier.

    Raises:
        ConfigError: If tier is unknown or not a paid tier
    """
    allocation = TIER_ALLOCATIONS.get(tier)
    if allocation is None:
        raise ConfigError("paid tier", tier)
    return allocation


def get_points_pack(pack_id: str) -> Dict[str, Any]:
    """
    Pack definition with its total credited points.

    Raises:
        ConfigError: If pack_id is unknown
    """
    pack = POINTS_PACKS.get(pack_id)
    if pack is None:
        raise ConfigError("points pack", pack_id)
    return {
        "id": pack_id,
        "points": pack["points"],
        "bonus": pack["bonus"],
        "total": pack["points"] + pack["bonus"],
    }


def get_signup_bonus() -> int:
    return max(0, config.SIGNUP_BONUS_POINTS)


def is_paid_tier(tier: str) -> bool:
    return tier in PAID_TIERS
