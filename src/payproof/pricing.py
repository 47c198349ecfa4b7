"""Attendee pricing: tier lookup and registration totals."""

from __future__ import annotations

import json
import logging
from decimal import Decimal
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

from pydantic import TypeAdapter

from payproof.errors import ValidationFailure
from payproof.models.registration import Attendee, PricingTier

logger = logging.getLogger(__name__)

ZERO = Decimal("0")

DEFAULT_PRICING_TIERS: tuple[PricingTier, ...] = (
    PricingTier(id="regular", name="Regular", price=Decimal("500"), is_active=True),
    PricingTier(
        id="student_senior",
        name="Student / Senior Citizen",
        price=Decimal("300"),
        is_active=True,
    ),
    PricingTier(id="volunteer", name="Volunteer", price=Decimal("0"), is_active=True),
    PricingTier(id="early_bird", name="Early Bird", price=Decimal("210"), is_active=False),
)

_TIER_LIST = TypeAdapter(List[PricingTier])


def load_pricing_tiers(path: Optional[Path] = None) -> List[PricingTier]:
    """Load tiers from a JSON array, or return the built-in tiers."""

    if path is None:
        return list(DEFAULT_PRICING_TIERS)
    with Path(path).open("r", encoding="utf-8") as handle:
        payload = json.load(handle)
    tiers = _TIER_LIST.validate_python(payload)
    logger.info("Loaded %s pricing tiers from %s", len(tiers), path)
    return tiers


def _index(tiers: Iterable[PricingTier]) -> Dict[str, PricingTier]:
    return {tier.id: tier for tier in tiers}


def active_tiers(tiers: Iterable[PricingTier]) -> List[PricingTier]:
    return [tier for tier in tiers if tier.is_active]


def price_for(tier_id: str, tiers: Iterable[PricingTier]) -> Decimal:
    """Return the price of ``tier_id``; unknown tiers price at zero."""

    tier = _index(tiers).get(tier_id)
    if tier is None:
        logger.warning("Unknown pricing tier %r priced at zero", tier_id)
        return ZERO
    return tier.price


def total(attendees: Iterable[Attendee], tiers: Iterable[PricingTier]) -> Decimal:
    """Sum the tier prices of every attendee.

    A zero total means no payment proof is required.
    """

    tiers = list(tiers)
    return sum((price_for(attendee.category, tiers) for attendee in attendees), ZERO)


def require_known_tiers(attendees: Sequence[Attendee], tiers: Iterable[PricingTier]) -> None:
    """Reject attendees whose category is unknown or no longer selectable."""

    index = _index(tiers)
    errors: Dict[str, str] = {}
    for position, attendee in enumerate(attendees):
        tier = index.get(attendee.category)
        field = "primaryAttendee.category" if position == 0 else (
            f"additionalAttendees[{position - 1}].category"
        )
        if tier is None:
            errors[field] = f"Unknown category {attendee.category!r}"
        elif not tier.is_active:
            errors[field] = f"Category {tier.name} is no longer available"
    if errors:
        raise ValidationFailure("One or more attendee categories are invalid.", errors)


__all__ = [
    "DEFAULT_PRICING_TIERS",
    "active_tiers",
    "load_pricing_tiers",
    "price_for",
    "require_known_tiers",
    "total",
]
