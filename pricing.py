"""
Lawnly pricing engine.

``quote`` is a pure function of an address, a date and the job options.
Settings come from the ``pricing_config`` table, with the module defaults
filling any key an operator has not overridden.

    subtotal = (fixed_base_price + sqm * base_price_per_sqm)
               * slope * tier * grass_length
    total    = subtotal * day_surcharge + clippings
    total_with_gst = total * (1 + GST)
"""

import logging
from datetime import date, datetime

logger = logging.getLogger(__name__)

GRASS_LENGTHS = ("short", "medium", "long", "very_long")
SLOPES = ("flat", "mild", "steep")

DEFAULT_SETTINGS = {
    "fixed_base_price": 30.0,
    "base_price_per_sqm": 0.10,
    "slope_mild_multiplier": 1.1,
    "slope_steep_multiplier": 1.25,
    "tier_multiplier": 0.1,
    "grass_length_short": 1.0,
    "grass_length_medium": 1.15,
    "grass_length_long": 1.3,
    "grass_length_very_long": 1.5,
    "clipping_removal_cost": 15.0,
    "saturday_surcharge": 1.1,
    "sunday_surcharge": 1.2,
}

DEFAULT_GST_RATE = 0.10


class QuoteUnavailable(ValueError):
    """The address cannot be priced (rejected, or no lawn area recorded)."""


def _money(value):
    return round(float(value) + 1e-9, 2)


def _as_date(value):
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return datetime.strptime(str(value)[:10], "%Y-%m-%d").date()


def load_settings():
    """Merge persisted PricingConfig rows over DEFAULT_SETTINGS."""
    from models import PricingConfig

    settings = dict(DEFAULT_SETTINGS)
    for row in PricingConfig.query.all():
        try:
            settings[row.key] = float(row.value)
        except (TypeError, ValueError):
            logger.warning("Ignoring non-numeric pricing setting %s=%r", row.key, row.value)
    return settings


def quote(address, scheduled_date, grass_length="short", clippings_removal=False,
          settings=None, gst_rate=DEFAULT_GST_RATE):
    """Price a single mow at *address* on *scheduled_date*.

    Returns a breakdown dict; ``total_with_gst`` is the customer price.
    ``is_preliminary`` is set while the address is still unverified.
    """
    if settings is None:
        settings = load_settings()

    if address.verification_status == "rejected":
        raise QuoteUnavailable("Address has been rejected")
    if not address.square_meters:
        raise QuoteUnavailable("Address lawn area not set")
    if grass_length not in GRASS_LENGTHS:
        raise QuoteUnavailable("Unknown grass length: {}".format(grass_length))

    base_price = float(settings.get("fixed_base_price") or 0)
    area_price = float(address.square_meters) * float(settings.get("base_price_per_sqm") or 0)

    slope_multiplier = 1.0
    if address.slope == "mild":
        slope_multiplier = float(settings.get("slope_mild_multiplier") or 1)
    elif address.slope == "steep":
        slope_multiplier = float(settings.get("slope_steep_multiplier") or 1)

    tiers = max(int(address.tier_count or 1), 1)
    tier_multiplier = 1 + (tiers - 1) * float(settings.get("tier_multiplier") or 0)

    grass_length_multiplier = float(settings.get("grass_length_{}".format(grass_length)) or 1)
    clippings_cost = float(settings.get("clipping_removal_cost") or 0) if clippings_removal else 0.0

    weekday = _as_date(scheduled_date).weekday()
    day_surcharge = 1.0
    if weekday == 5:
        day_surcharge = float(settings.get("saturday_surcharge") or 1)
    elif weekday == 6:
        day_surcharge = float(settings.get("sunday_surcharge") or 1)

    subtotal = (base_price + area_price) * slope_multiplier * tier_multiplier * grass_length_multiplier
    total = _money(subtotal * day_surcharge + clippings_cost)
    gst = _money(total * gst_rate)

    return {
        "base_price": _money(base_price),
        "area_price": _money(area_price),
        "slope_multiplier": slope_multiplier,
        "tier_multiplier": round(tier_multiplier, 4),
        "grass_length_multiplier": grass_length_multiplier,
        "clippings_cost": _money(clippings_cost),
        "day_surcharge": day_surcharge,
        "subtotal": _money(subtotal),
        "total": total,
        "gst": gst,
        "total_with_gst": _money(total + gst),
        "is_preliminary": not address.is_verified,
    }
