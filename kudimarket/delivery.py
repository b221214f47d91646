import re
from enum import Enum

from kudimarket.errors import ValidationError
from kudimarket.money import Money

MAJOR_CITIES = ("accra", "kumasi", "tema", "takoradi", "cape coast", "tamale")
REGIONAL_CAPITALS = (
    "sunyani", "koforidua", "ho", "wa", "bolgatanga",
    "sekondi", "obuasi", "tarkwa", "techiman",
)

DEFAULT_REGIONAL_FEE = Money(1000)
DEFAULT_REMOTE_FEE = Money(2000)


class FeeTier(Enum):
    FREE = "free"
    REGIONAL = "regional"
    REMOTE = "remote"


def _mentions(loc: str, cities, whole_words: bool) -> bool:
    if whole_words:
        return any(re.search(rf"\b{re.escape(city)}\b", loc) for city in cities)
    return any(city in loc for city in cities)


def fee_tier_for(location: str | None, whole_words: bool = False) -> FeeTier:
    """Tier for a city name, matched as a case-insensitive substring.

    Free-form street addresses should pass ``whole_words=True`` so short
    names like "ho" or "wa" do not match inside "Shop" or "Walk".
    """
    if location is None or not str(location).strip():
        raise ValidationError("delivery location is required", field="delivery_address")
    loc = str(location).strip().lower()
    if _mentions(loc, MAJOR_CITIES, whole_words):
        return FeeTier.FREE
    if _mentions(loc, REGIONAL_CAPITALS, whole_words):
        return FeeTier.REGIONAL
    return FeeTier.REMOTE


def delivery_fee_for(location: str | None,
                     regional_fee: Money = DEFAULT_REGIONAL_FEE,
                     remote_fee: Money = DEFAULT_REMOTE_FEE,
                     whole_words: bool = False) -> Money:
    tier = fee_tier_for(location, whole_words)
    if tier is FeeTier.FREE:
        return Money.zero()
    if tier is FeeTier.REGIONAL:
        return regional_fee
    return remote_fee


def fees_from_config(config) -> tuple[Money, Money]:
    return (
        Money.parse(config.get("DELIVERY_FEE_REGIONAL", "10.00")),
        Money.parse(config.get("DELIVERY_FEE_REMOTE", "20.00")),
    )
