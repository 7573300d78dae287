"""Controlled vocabularies for listing attributes (English and French source terms).

Values that match no vocabulary entry are returned unchanged.
"""

from __future__ import annotations

from typing import Any, Optional, Sequence, Tuple

MILES_TO_KM = 1.60934

Vocabulary = Sequence[Tuple[Tuple[str, ...], str]]

BODY_TYPES: Vocabulary = (
    (("fourgon", "minivan", "van"), "Van"),
    (("suv", "vus", "utilitaire sport", "crossover"), "SUV"),
    (("sedan", "berline"), "Sedan"),
    (("truck", "camion", "pickup", "pick-up"), "Truck"),
    (("coupe", "coupé"), "Coupe"),
    (("hatch", "hayon", "bicorps"), "Hatchback"),
    (("wagon", "familiale"), "Wagon"),
    (("convertible", "décapotable", "cabriolet"), "Convertible"),
)

FUEL_TYPES: Vocabulary = (
    (("electric", "électrique", "electrique"), "Electric"),
    (("hybrid", "hybride"), "Hybrid"),
    (("diesel",), "Diesel"),
    (("essence", "gasoline", "petrol", "gas"), "Gasoline"),
)

COLORS: Vocabulary = (
    (("black", "noir"), "Black"),
    (("white", "blanc", "blanche"), "White"),
    (("silver", "argent"), "Silver"),
    (("gray", "grey", "gris"), "Gray"),
    (("red", "rouge"), "Red"),
    (("blue", "bleu"), "Blue"),
    (("green", "vert"), "Green"),
    (("brown", "brun"), "Brown"),
    (("yellow", "jaune"), "Yellow"),
    (("orange",), "Orange"),
    (("beige",), "Beige"),
)

TRANSMISSIONS: Vocabulary = (
    (("auto",), "Automatic"),
    (("manual", "manuelle", "manuel"), "Manual"),
)

DRIVETRAINS: Vocabulary = (
    (("awd", "4x4", "intégrale", "integrale", "all wheel", "all-wheel"), "AWD"),
    (("4wd", "four wheel", "four-wheel"), "4WD"),
    (("fwd", "avant", "front wheel", "front-wheel"), "FWD"),
    (("rwd", "arrière", "arriere", "propulsion", "rear wheel", "rear-wheel"), "RWD"),
)


def _lookup(value: Optional[str], vocabulary: Vocabulary) -> Optional[str]:
    if value is None:
        return None
    text = value.strip()
    if not text:
        return None
    lowered = text.lower()
    for needles, canonical in vocabulary:
        if any(needle in lowered for needle in needles):
            return canonical
    return text


def body_type(value: Optional[str]) -> Optional[str]:
    return _lookup(value, BODY_TYPES)


def fuel_type(value: Optional[str]) -> Optional[str]:
    return _lookup(value, FUEL_TYPES)


def color(value: Optional[str]) -> Optional[str]:
    return _lookup(value, COLORS)


def transmission(value: Optional[str]) -> Optional[str]:
    return _lookup(value, TRANSMISSIONS)


def drivetrain(value: Optional[str]) -> Optional[str]:
    return _lookup(value, DRIVETRAINS)


def odometer_unit(value: Any) -> str:
    if value and str(value).strip().lower().startswith("mi"):
        return "miles"
    return "km"


def odometer_km(value: Optional[int], unit: str = "km") -> Optional[int]:
    """Convert an odometer reading to kilometres, rounding half up."""
    if value is None or value < 0:
        return None
    if unit == "miles":
        return int(value * MILES_TO_KM + 0.5)
    return value
