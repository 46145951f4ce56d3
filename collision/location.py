# collision/location.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

# broadest first; a tier matches only if every field above it matched too
TIERS = ("country", "province", "city", "district")


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


@dataclass(frozen=True)
class LocationSnapshot:
    country: Optional[str] = None
    province: Optional[str] = None
    city: Optional[str] = None
    district: Optional[str] = None

    def __post_init__(self):
        for field in TIERS:
            object.__setattr__(self, field, _clean(getattr(self, field)))

    @classmethod
    def of(cls, obj) -> "LocationSnapshot":
        """Snapshot of anything carrying country/province/city/district attributes."""
        return cls(
            country=getattr(obj, "country", None),
            province=getattr(obj, "province", None),
            city=getattr(obj, "city", None),
            district=getattr(obj, "district", None),
        )

    def as_dict(self) -> dict:
        return {field: getattr(self, field) for field in TIERS}


def match_tier(a: LocationSnapshot, b: LocationSnapshot) -> Optional[str]:
    """
    Deepest tier at which both snapshots coincide, or None when they do not
    even share a country. Comparison is case-insensitive; a field missing on
    either side stops the walk.
    """
    deepest = None
    for field in TIERS:
        left = getattr(a, field)
        right = getattr(b, field)
        if left is None or right is None:
            break
        if left.casefold() != right.casefold():
            break
        deepest = field
    return deepest
