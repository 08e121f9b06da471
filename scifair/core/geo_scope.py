"""
Geographic scope of an administrator or a publish cohort.

A None field means "all": GeoScope() is national scope, GeoScope(region="X")
covers every county of region X, and so on.
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class GeoScope:
    region: Optional[str] = None
    county: Optional[str] = None
    sub_county: Optional[str] = None

    def contains(self, item: Any) -> bool:
        """True when an object with region/county/sub_county attributes lies inside the scope."""
        if self.region is not None and getattr(item, "region", None) != self.region:
            return False
        if self.county is not None and getattr(item, "county", None) != self.county:
            return False
        if self.sub_county is not None and getattr(item, "sub_county", None) != self.sub_county:
            return False
        return True

    def key(self) -> str:
        return "|".join(part or "*" for part in (self.region, self.county, self.sub_county))

    def overlaps(self, other: "GeoScope") -> bool:
        for mine, theirs in (
            (self.region, other.region),
            (self.county, other.county),
            (self.sub_county, other.sub_county),
        ):
            if mine is not None and theirs is not None and mine != theirs:
                return False
        return True

    def covers(self, other: "GeoScope") -> bool:
        """True when every place inside `other` is also inside this scope."""
        for mine, theirs in (
            (self.region, other.region),
            (self.county, other.county),
            (self.sub_county, other.sub_county),
        ):
            if mine is not None and mine != theirs:
                return False
        return True

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {"region": self.region, "county": self.county, "sub_county": self.sub_county}

    @property
    def label(self) -> str:
        if self.sub_county:
            return f"{self.sub_county} sub-county"
        if self.county:
            return f"{self.county} county"
        if self.region:
            return f"{self.region} region"
        return "national"
