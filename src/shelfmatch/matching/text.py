"""Fuzzy text helpers for brand, size and retailer comparison."""

from __future__ import annotations

import re
from dataclasses import dataclass

_UNIT_PATTERN = r"fl\.?\s*oz|oz|ounces?|lbs?|pounds?|kg|g|grams?|ml|l|liters?|litres?|ct|count|pk|pack"

SIZE_PATTERN = re.compile(
    r"(?P<value>\d+(?:[.,]\d+)?)\s*(?P<unit>" + _UNIT_PATTERN + r")?\b",
    re.IGNORECASE,
)

# A number with OCR placeholders where digits could not be read, e.g. '1? oz' or '__ oz'.
BLURRED_SIZE_PATTERN = re.compile(
    r"(?P<digits>\d*(?:[.,]\d+)?)[?_*#]+[\d?_*#.,]*(?:\s*(?P<unit>" + _UNIT_PATTERN + r")\b)?",
    re.IGNORECASE,
)

# Canonical unit -> (dimension, factor to the dimension's base unit).
# US packaging uses oz for both mass and fluid volume, so oz keeps its own dimension
# and converts to g / ml on demand.
_UNITS: dict[str, tuple[str, float]] = {
    "oz": ("oz", 1.0),
    "lb": ("oz", 16.0),
    "g": ("g", 1.0),
    "kg": ("g", 1000.0),
    "ml": ("ml", 1.0),
    "l": ("ml", 1000.0),
    "ct": ("ct", 1.0),
}
_OZ_TO = {"g": 28.3495, "ml": 29.5735}

_UNIT_ALIASES = {
    "floz": "oz",
    "fl.oz": "oz",
    "oz": "oz",
    "ounce": "oz",
    "ounces": "oz",
    "lb": "lb",
    "lbs": "lb",
    "pound": "lb",
    "pounds": "lb",
    "g": "g",
    "gram": "g",
    "grams": "g",
    "kg": "kg",
    "ml": "ml",
    "l": "l",
    "liter": "l",
    "liters": "l",
    "litre": "l",
    "litres": "l",
    "ct": "ct",
    "count": "ct",
    "pk": "ct",
    "pack": "ct",
}

KNOWN_RETAILERS = (
    "target",
    "walmart",
    "walgreens",
    "cvs",
    "kroger",
    "safeway",
    "albertsons",
    "publix",
    "whole foods",
    "trader joe",
    "costco",
    "sam's club",
    "aldi",
    "lidl",
    "food lion",
    "giant",
    "stop & shop",
)

RETAILER_DOMAINS = {
    "walmart.com": "walmart",
    "target.com": "target",
    "walgreens.com": "walgreens",
    "cvs.com": "cvs",
    "kroger.com": "kroger",
    "safeway.com": "safeway",
    "albertsons.com": "albertsons",
    "publix.com": "publix",
    "wholefoodsmarket.com": "whole foods",
    "traderjoes.com": "trader joe",
    "costco.com": "costco",
    "samsclub.com": "sam's club",
    "aldi.": "aldi",
    "lidl.": "lidl",
    "foodlion.com": "food lion",
    "giantfood.com": "giant",
    "stopandshop.com": "stop & shop",
}


def string_similarity(a: str | None, b: str | None) -> float:
    """Case-insensitive similarity in [0, 1]: exact, containment, then word overlap."""
    if not a or not b:
        return 0.0
    s1 = a.lower().strip()
    s2 = b.lower().strip()
    if not s1 or not s2:
        return 0.0
    if s1 == s2:
        return 1.0
    if s1 in s2 or s2 in s1:
        return 0.8

    words1 = s1.split()
    words2 = s2.split()
    common = [w for w in words1 if w in words2 and len(w) > 2]
    if common:
        overlap = len(common) / max(len(words1), len(words2))
        return 0.5 + overlap * 0.3
    return 0.0


@dataclass(frozen=True)
class ParsedSize:
    value: float
    unit: str | None

    def convert_to(self, unit: str | None) -> float | None:
        """Express this size in another unit, or None when dimensions differ."""
        if self.unit == unit or self.unit is None or unit is None:
            return self.value
        src_dim, src_factor = _UNITS[self.unit]
        dst_dim, dst_factor = _UNITS[unit]
        base = self.value * src_factor
        if src_dim == dst_dim:
            return base / dst_factor
        if src_dim == "oz" and dst_dim in _OZ_TO:
            return base * _OZ_TO[dst_dim] / dst_factor
        if dst_dim == "oz" and src_dim in _OZ_TO:
            return base / _OZ_TO[src_dim] / dst_factor
        return None


def _canonical_unit(raw_unit: str | None) -> str | None:
    if not raw_unit:
        return None
    return _UNIT_ALIASES.get(re.sub(r"\s+", "", raw_unit.lower()))


@dataclass(frozen=True)
class BlurredSize:
    """Leading digits that could still be read, e.g. '1' from '1? oz'."""

    digits: str
    unit: str | None


def parse_size(text: str | None) -> ParsedSize | None:
    """Parse the first numeric measure in text, e.g. '12 fl oz' or '1.5L'."""
    if not text:
        return None
    match = SIZE_PATTERN.search(text)
    if match is None:
        return None
    value = float(match.group("value").replace(",", "."))
    return ParsedSize(value=value, unit=_canonical_unit(match.group("unit")))


def parse_blurred_size(text: str | None) -> BlurredSize | None:
    """Detect a measure whose digits were partly unreadable; None for clean text."""
    if not text:
        return None
    match = BLURRED_SIZE_PATTERN.search(text)
    if match is None or not (match.group("digits") or match.group("unit")):
        return None
    return BlurredSize(digits=match.group("digits").replace(",", "."), unit=_canonical_unit(match.group("unit")))


def _blurred_similarity(blurred: BlurredSize, other_text: str) -> float | None:
    # Readable digits that start the other side's number, in the same unit, earn partial credit.
    other = parse_size(other_text)
    if other is None or not blurred.digits:
        return None
    if blurred.unit is not None and other.unit is not None and blurred.unit != other.unit:
        return None
    if f"{other.value:g}".startswith(blurred.digits):
        return 0.65
    return None


def size_similarity(extracted: str | None, candidate: str | None) -> float | None:
    """Similarity of two measure strings; None when either side is missing.

    Within 0-20% relative difference maps linearly to 1.0-0.0. When numbers cannot be
    compared but one text contains the other, partial credit of 0.65 applies.
    Blurred digits in the extracted reading ('1? oz') earn 0.65 when the readable
    part starts the candidate number, and otherwise count as unreadable (None).
    """
    if not extracted or not candidate:
        return None
    blurred = parse_blurred_size(extracted)
    if blurred is not None:
        return _blurred_similarity(blurred, candidate)

    left = parse_size(extracted)
    right = parse_size(candidate)
    if left is not None and right is not None:
        right_value = right.convert_to(left.unit)
        if right_value is not None:
            biggest = max(left.value, right_value)
            if biggest <= 0:
                return 1.0 if left.value == right_value else 0.0
            diff = abs(left.value - right_value) / biggest
            return max(0.0, 1.0 - diff * 5.0)

    a = extracted.lower().strip()
    b = candidate.lower().strip()
    if a in b or b in a:
        return 0.65
    return 0.0


def sizes_equivalent(a: str | None, b: str | None, tolerance: float = 0.05) -> bool:
    """True when two sizes agree within tolerance after unit conversion."""
    similarity = size_similarity(a, b)
    if similarity is None:
        return False
    return similarity >= 1.0 - tolerance * 5.0


def retailer_from_store_name(store_name: str | None) -> str | None:
    """Map 'Target Store #1234' to 'target'; unknown chains fall back to the first word."""
    if not store_name:
        return None
    normalized = store_name.lower().strip()
    for retailer in KNOWN_RETAILERS:
        if retailer in normalized:
            return retailer
    words = normalized.split()
    return words[0] if words else None


def retailers_from_urls(urls: tuple[str, ...] | list[str]) -> set[str]:
    found: set[str] = set()
    for url in urls:
        lowered = url.lower()
        for domain, retailer in RETAILER_DOMAINS.items():
            if domain in lowered:
                found.add(retailer)
    return found
