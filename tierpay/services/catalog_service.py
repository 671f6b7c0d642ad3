"""Tier catalog — prices and ordering for the two membership types.

Pure lookups, no state, no database. Ordinals define the upgrade order:
an upgrade is valid only when the target ordinal is strictly higher.
"""

from decimal import Decimal

from tierpay.services.errors import UnknownTierError, ValidationError

CREATOR_TIERS = {
    "free": {"ordinal": 0, "monthly": Decimal("0.00"), "annual": Decimal("0.00")},
    "premium": {"ordinal": 1, "monthly": Decimal("9.99"), "annual": Decimal("99.00")},
    "professional": {"ordinal": 2, "monthly": Decimal("24.99"), "annual": Decimal("249.00")},
    "elite": {"ordinal": 3, "monthly": Decimal("99.99"), "annual": Decimal("999.00")},
}

MEMBER_TIERS = {
    "welcome": {"ordinal": 1, "monthly": Decimal("2.99"), "annual": Decimal("29.88")},
    "premium": {"ordinal": 2, "monthly": Decimal("9.99"), "annual": Decimal("99.00")},
    "elite": {"ordinal": 3, "monthly": Decimal("19.99"), "annual": Decimal("199.00")},
    "enterprise": {"ordinal": 4, "monthly": Decimal("49.99"), "annual": Decimal("499.00")},
}

CATALOGS = {
    "creator": CREATOR_TIERS,
    "member": MEMBER_TIERS,
}

BILLING_PERIOD_MONTHS = {
    "monthly": 1,
    "annual": 12,
}


def _catalog(subject_type):
    catalog = CATALOGS.get(subject_type)
    if catalog is None:
        raise ValidationError(f"Unknown membership type: {subject_type}")
    return catalog


def _tier(tier_name, subject_type):
    tier = _catalog(subject_type).get(tier_name)
    if tier is None:
        raise UnknownTierError(f"Invalid tier specified: {tier_name}")
    return tier


def get_tier_ordinal(tier_name, subject_type="creator"):
    return _tier(tier_name, subject_type)["ordinal"]


def get_price(tier_name, cycle, subject_type="creator"):
    """Return the Decimal price of a tier for a billing cycle."""
    if cycle not in BILLING_PERIOD_MONTHS:
        raise ValidationError(f"Invalid billing cycle: {cycle}")
    return _tier(tier_name, subject_type)[cycle]


def get_billing_period_months(cycle):
    return BILLING_PERIOD_MONTHS[cycle]


def list_tiers(subject_type="creator"):
    """Tier names in ascending order."""
    catalog = _catalog(subject_type)
    return sorted(catalog, key=lambda name: catalog[name]["ordinal"])


def get_next_tier(tier_name, subject_type="creator"):
    """The tier directly above `tier_name`, or None at the top."""
    tiers = list_tiers(subject_type)
    index = tiers.index(tier_name) if tier_name in tiers else -1
    if index < 0:
        raise UnknownTierError(f"Invalid tier specified: {tier_name}")
    return tiers[index + 1] if index + 1 < len(tiers) else None


def is_valid_upgrade(current_tier, target_tier, subject_type="creator"):
    """True only for a strict upward move. A missing current tier counts as
    below every tier (a first-time member)."""
    target = get_tier_ordinal(target_tier, subject_type)
    if current_tier is None:
        return True
    return target > get_tier_ordinal(current_tier, subject_type)
