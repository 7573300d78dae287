"""Field aliases shared by the XML and JSON feed adapters."""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional

FIELD_ALIASES: Dict[str, tuple[str, ...]] = {
    "title": ("title", "name"),
    "make": ("make", "marque"),
    "model": ("model", "modele"),
    "year": ("year", "annee"),
    "price": ("price", "prix", "sale_price", "salePrice"),
    "odometer": ("odometer", "mileage", "kilometers", "kilometres", "km"),
    "odometer_unit": ("odometer_unit", "odometerUnit", "mileage_unit", "unit"),
    "vin": ("vin", "niv"),
    "stock_number": ("stockNumber", "stock_number", "stock"),
    "body_type": ("bodyType", "body_type", "body", "carrosserie"),
    "color": ("color", "exterior_color", "exteriorColor", "couleur"),
    "fuel_type": ("fuelType", "fuel_type", "fuel", "carburant"),
    "transmission": ("transmission",),
    "drivetrain": ("drivetrain", "drive_train", "traction"),
    "engine_size": ("engineSize", "engine_size", "engine", "moteur"),
    "cylinders": ("cylinders", "cylindres"),
    "description": ("description", "comments"),
    "source_url": ("url", "link", "vdp_url", "detail_url"),
}

IMAGE_KEYS = ("images", "photos", "image", "photo", "imageUrls", "image_urls")


def pick(record: Mapping[str, Any], aliases: tuple[str, ...]) -> Any:
    lowered = {str(key).lower(): value for key, value in record.items()}
    for alias in aliases:
        value = lowered.get(alias.lower())
        if value not in (None, ""):
            return value
    return None


def map_fields(record: Mapping[str, Any]) -> Dict[str, Any]:
    fields = {name: pick(record, aliases) for name, aliases in FIELD_ALIASES.items()}
    if fields["odometer_unit"] is None and pick(record, ("miles",)) is not None:
        fields["odometer"] = pick(record, ("miles",))
        fields["odometer_unit"] = "miles"
    return fields


def image_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    images: List[str] = []
    if isinstance(value, Mapping):
        value = [value]
    if not isinstance(value, (list, tuple)):
        return images
    for item in value:
        if isinstance(item, str):
            images.append(item.strip())
        elif isinstance(item, Mapping):
            url: Optional[str] = item.get("url") or item.get("src") or item.get("href")
            if url:
                images.append(str(url).strip())
    return images
