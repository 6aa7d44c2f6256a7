"""
Platform fee calculation for split (Connect) payments.

- get_default_fee_config: fee defaults from the environment
- resolve_fee_config: per-store overrides on top of the defaults
- calculate_fee: application fee in minor units (floor to minimum, then cap)
- get_fee_breakdown: every intermediate quantity, for audit logs
- estimate_net: informational seller payout after processor and platform fees

All money is integer minor units. Rounding is half-up on minor units.
"""

import logging
import math
import os
from dataclasses import replace
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from numbers import Real

from marketpay.models.schemas import FeeConfig, Store, format_minor

logger = logging.getLogger(__name__)

DEFAULT_PERCENTAGE_FEE = "3.3"
DEFAULT_BASE_FEE = "0.33"
DEFAULT_MAX_APPLICATION_FEE = "99.99"
DEFAULT_PROCESSING_PERCENT = "2.9"
DEFAULT_PROCESSING_FIXED = "30"


class TransactionType(str, Enum):
    """Transaction category, carried as a label in fee breakdowns."""
    PRODUCT = "product"
    SERVICE = "service"
    EVENT = "event"
    SUBSCRIPTION = "subscription"
    DONATION = "donation"
    MARKETPLACE = "marketplace"


class StoreTier(str, Enum):
    FREE = "free"
    PREMIUM = "premium"
    ENTERPRISE = "enterprise"


def round_half_up(value) -> int:
    """Round to the nearest integer, halves away from zero (2.5 -> 3)."""
    return int(Decimal(str(value)).to_integral_value(rounding=ROUND_HALF_UP))


def to_minor(amount) -> int:
    """Whole currency units to minor units: 0.33 -> 33."""
    return round_half_up(Decimal(str(amount)) * 100)


def _env_decimal(name: str, default: str) -> Decimal:
    raw = os.getenv(name, default)
    try:
        value = Decimal(str(raw).strip())
    except (InvalidOperation, ValueError):
        logger.warning("Invalid %s=%r, using default %s", name, raw, default)
        return Decimal(default)
    if not value.is_finite() or value < 0:
        logger.warning("Invalid %s=%r, using default %s", name, raw, default)
        return Decimal(default)
    return value


# ── Fee configuration ─────────────────────────────────────

def get_default_fee_config() -> FeeConfig:
    """
    Read the platform fee defaults from the environment.

    STRIPE_PERCENTAGE_FEE is a percent (3.3), STRIPE_BASE_FEE and
    STRIPE_MAX_APPLICATION_FEE are whole currency units (0.33, 99.99).
    """
    percent = _env_decimal("STRIPE_PERCENTAGE_FEE", DEFAULT_PERCENTAGE_FEE)
    base = _env_decimal("STRIPE_BASE_FEE", DEFAULT_BASE_FEE)
    maximum = _env_decimal("STRIPE_MAX_APPLICATION_FEE", DEFAULT_MAX_APPLICATION_FEE)
    return FeeConfig(
        percent_fee_decimal=float(percent / 100),
        base_fee_minor=to_minor(base),
        max_fee_minor=to_minor(maximum),
    )


def _valid_override(value) -> bool:
    # bool is an int subclass; True must not read as 1%
    if not isinstance(value, Real) or isinstance(value, bool):
        return False
    try:
        # nan, inf and ints beyond float range have no minor-unit value
        return math.isfinite(value) and value >= 0
    except OverflowError:
        return False


def _overrides_of(store) -> dict | None:
    if store is None:
        return None
    overrides = store.fee_overrides if isinstance(store, Store) else store.get("fee_overrides")
    return overrides if isinstance(overrides, dict) else None


def resolve_fee_config(store, defaults: FeeConfig | None = None) -> FeeConfig:
    """
    Resolve the effective fee config for a store.

    Starts from defaults (environment when omitted) and applies each of
    percentage_fee, base_fee, fee_minimum and max_application_fee found in the
    store's fee overrides. Percent values are divided by 100, money values are
    converted to minor units. Missing, non-numeric or negative overrides are
    ignored.

    Args:
        store: Store (or store document dict) with optional fee_overrides.
        defaults: Base configuration; never mutated.

    Returns:
        A new FeeConfig.
    """
    config = replace(defaults) if defaults is not None else get_default_fee_config()

    overrides = _overrides_of(store)
    if not overrides:
        return config

    percentage = overrides.get("percentage_fee")
    if _valid_override(percentage):
        config.percent_fee_decimal = float(Decimal(str(percentage)) / 100)

    base = overrides.get("base_fee")
    if _valid_override(base):
        config.base_fee_minor = to_minor(base)

    minimum = overrides.get("fee_minimum")
    if _valid_override(minimum):
        config.fee_minimum_minor = to_minor(minimum)

    maximum = overrides.get("max_application_fee")
    if _valid_override(maximum):
        config.max_fee_minor = to_minor(maximum)

    logger.debug(
        "Resolved fee config (store=%s): percent=%s base=%d minimum=%s max=%d",
        getattr(store, "id", None) if isinstance(store, Store) else store.get("id"),
        config.percent_fee_decimal, config.base_fee_minor,
        config.fee_minimum_minor, config.max_fee_minor,
    )
    return config


def config_source(store) -> str:
    """'store-override' when the store carries fee overrides, else 'env-defaults'."""
    return "store-override" if _overrides_of(store) else "env-defaults"


def store_tier(store) -> str:
    """Tier label from the overrides; unknown tiers read as 'default'."""
    tier = (_overrides_of(store) or {}).get("tier")
    return tier if tier in {t.value for t in StoreTier} else "default"


# ── Fee calculation ───────────────────────────────────────

def _percentage_amount(total_minor: int, config: FeeConfig) -> int:
    return round_half_up(Decimal(str(total_minor)) * Decimal(str(config.percent_fee_decimal)))


def calculate_fee(total_minor: int, config: FeeConfig) -> int:
    """
    Platform application fee in minor units.

    fee = round(total * percent) + base, raised to the minimum (if set),
    then capped at the maximum. The cap is applied last, so a maximum below
    the minimum wins.
    """
    if not total_minor or total_minor < 0:
        return 0

    fee = _percentage_amount(total_minor, config) + config.base_fee_minor

    if config.fee_minimum_minor and fee < config.fee_minimum_minor:
        fee = config.fee_minimum_minor

    if fee > config.max_fee_minor:
        fee = config.max_fee_minor

    return fee


def get_fee_breakdown(
    total_minor: int,
    config: FeeConfig,
    tier: str = "default",
    transaction_type: str = TransactionType.PRODUCT.value,
) -> dict:
    """Every step of calculate_fee for the same inputs, in minor units and display strings."""
    valid_total = bool(total_minor) and total_minor > 0
    percentage_minor = _percentage_amount(total_minor, config) if valid_total else 0
    before_minimum = percentage_minor + config.base_fee_minor if valid_total else 0
    minimum = config.fee_minimum_minor or 0
    minimum_applied = valid_total and bool(minimum) and before_minimum < minimum
    after_minimum = minimum if minimum_applied else before_minimum
    cap_applied = valid_total and after_minimum > config.max_fee_minor
    final_fee = calculate_fee(total_minor, config)

    return {
        "total_minor": total_minor,
        "total_display": format_minor(total_minor),
        "percentage_rate": round(config.percent_fee_decimal * 100, 6),
        "percentage_fee_minor": percentage_minor,
        "percentage_fee_display": format_minor(percentage_minor),
        "base_fee_minor": config.base_fee_minor,
        "base_fee_display": format_minor(config.base_fee_minor),
        "fee_minimum_minor": minimum,
        "fee_minimum_display": format_minor(minimum),
        "base_plus_percentage_minor": before_minimum,
        "base_plus_percentage_display": format_minor(before_minimum),
        "minimum_applied": minimum_applied,
        "cap_applied": cap_applied,
        "final_fee_minor": final_fee,
        "final_fee_display": format_minor(final_fee),
        "final_fee_percent": (
            f"{final_fee / total_minor * 100:.2f}" if valid_total else "0.00"
        ),
        "max_fee_minor": config.max_fee_minor,
        "max_fee_display": format_minor(config.max_fee_minor),
        "store_tier": tier,
        "transaction_type": transaction_type,
    }


# ── Payout estimate ───────────────────────────────────────

def get_processing_fee_assumptions() -> tuple[float, int]:
    """(percent as decimal, fixed minor units) assumed for the processor's own fee."""
    percent = _env_decimal("STRIPE_PROCESSING_PERCENT", DEFAULT_PROCESSING_PERCENT)
    fixed = _env_decimal("STRIPE_PROCESSING_FIXED", DEFAULT_PROCESSING_FIXED)
    return float(percent / 100), round_half_up(fixed)


def estimate_processor_fee(
    total_minor: int,
    processor_percent: float = 0.029,
    processor_fixed_minor: int = 30,
) -> int:
    return round_half_up(Decimal(str(total_minor)) * Decimal(str(processor_percent))) + processor_fixed_minor


def estimate_net(
    total_minor: int,
    platform_fee_minor: int,
    processor_percent: float = 0.029,
    processor_fixed_minor: int = 30,
) -> int:
    """
    Estimated payout to the connected account, never below 0.

    Informational only: it is not sent to the processor and never blocks a
    payment.
    """
    processor_fee = estimate_processor_fee(total_minor, processor_percent, processor_fixed_minor)
    return max(total_minor - processor_fee - platform_fee_minor, 0)
