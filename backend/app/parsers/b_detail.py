"""Dealer template with ``b-detail`` attribute rows (``<h4>Label</h4> ... <p>value</p>``)."""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from ._listing_common import (
    RawListing,
    build_listing,
    clean_text,
    compile_field_patterns,
    extract_image_urls,
    extract_links,
    html_to_text,
)
from .url_builder import build_listing_url

if TYPE_CHECKING:
    from backend.app.services.vendor_config import VendorConfig

DEFAULT_FIRST_PAGE = "/fr/inventory/"
DEFAULT_LISTING_TEMPLATE = "/fr/inventory/p/{page}/"
DEFAULT_LINK_PATTERN = r'href="((?:https?://[^/"]+)?/(?:fr|en)/details/p/\d+/[^"]+)"'

ROW_RE = re.compile(r"<h4[^>]*>(.*?)</h4>.*?<p[^>]*>(.*?)</p>", re.IGNORECASE | re.DOTALL)
PRICE_RE = re.compile(r"b-detail__head-price-num[^>]*>\s*\$?\s*([0-9][0-9,\s]*)", re.IGNORECASE)
TITLE_RE = re.compile(r"<h1[^>]*>(.*?)</h1>", re.IGNORECASE | re.DOTALL)
DETAIL_ID_RE = re.compile(r"/p/(\d+)/")
URL_YEAR_RE = re.compile(r"/((?:19|20)\d{2})-")

LABELS: Dict[str, str] = {
    "make": "make",
    "marque": "make",
    "model": "model",
    "modèle": "model",
    "year": "year",
    "année": "year",
    "mileage": "odometer",
    "kilometres": "odometer",
    "kilomètres": "odometer",
    "kilométrage": "odometer",
    "odomètre": "odometer",
    "body type": "body_type",
    "carrosserie": "body_type",
    "engine": "engine_size",
    "moteur": "engine_size",
    "cylinders": "cylinders",
    "cylindres": "cylinders",
    "transmission": "transmission",
    "drivetrain": "drivetrain",
    "traction": "drivetrain",
    "entraînement": "drivetrain",
    "exterior color": "color",
    "couleur extérieure": "color",
    "couleur": "color",
    "fuel type": "fuel_type",
    "carburant": "fuel_type",
    "type de carburant": "fuel_type",
    "vin": "vin",
    "vin number": "vin",
    "niv": "vin",
    "numéro d'identification": "vin",
}


def parse_attribute_rows(html: str) -> Dict[str, str]:
    """Map every recognised ``<h4>`` label to the text of the ``<p>`` that follows it."""
    rows: Dict[str, str] = {}
    for match in ROW_RE.finditer(html):
        label = (clean_text(match.group(1)) or "").lower().rstrip(":").strip()
        value = clean_text(match.group(2))
        field = LABELS.get(label)
        if field and value and field not in rows:
            rows[field] = value
    return rows


def _engine_size(raw: Optional[str]) -> Optional[str]:
    if not raw:
        return None
    if re.fullmatch(r"\d+(?:[.,]\d+)?", raw):
        return f"{raw.replace(',', '.')}L"
    return raw


class BDetailAdapter:
    name = "B_DETAIL"

    def listing_url(self, config: "VendorConfig", page: int) -> str:
        return build_listing_url(
            config,
            page,
            default_template=DEFAULT_LISTING_TEMPLATE,
            default_first_page=DEFAULT_FIRST_PAGE,
        )

    def extract_detail_links(self, html: str, config: "VendorConfig") -> List[str]:
        pattern = re.compile(config.link_pattern or DEFAULT_LINK_PATTERN, re.IGNORECASE)
        return extract_links(html, config.base_url, pattern, config.link_path_segments)

    def parse_detail(self, html: str, url: str, config: "VendorConfig") -> Optional[RawListing]:
        if not html:
            return None
        fields: Dict[str, Any] = dict(parse_attribute_rows(html))

        overrides = compile_field_patterns(config.field_patterns)
        if overrides:
            text = html_to_text(html)
            for name, pattern in overrides.items():
                match = pattern.search(text)
                if match:
                    fields[name] = match.group(1).strip()

        if "price" not in fields:
            price_match = PRICE_RE.search(html)
            if price_match:
                fields["price"] = price_match.group(1)

        if "year" not in fields:
            year_match = URL_YEAR_RE.search(url)
            if year_match:
                fields["year"] = year_match.group(1)

        if "engine_size" in fields:
            fields["engine_size"] = _engine_size(fields["engine_size"])

        id_match = DETAIL_ID_RE.search(url)
        if id_match and "stock_number" not in fields:
            fields["stock_number"] = id_match.group(1)

        title_match = TITLE_RE.search(html)
        title = clean_text(title_match.group(1)) if title_match else None
        if title:
            fields["title"] = title
        if fields.get("year") and fields.get("make") and fields.get("model"):
            fields["description"] = f"{fields['year']} {fields['make']} {fields['model']}"

        fields["images"] = extract_image_urls(html, config.base_url, config.max_images)
        return build_listing(
            fields,
            vendor_id=config.vendor_id,
            source_url=url,
            field_defaults=config.field_defaults,
        )


ADAPTER = BDetailAdapter()
