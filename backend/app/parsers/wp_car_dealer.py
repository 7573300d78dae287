"""WordPress car-dealer theme parser (inline ``Label: value`` detail pages)."""

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
    first_match,
    html_to_text,
)
from .url_builder import build_listing_url

if TYPE_CHECKING:
    from backend.app.services.vendor_config import VendorConfig

DEFAULT_LISTING_TEMPLATE = "/cars/?paged={page}&cars_pp={per_page}"
DEFAULT_LINK_PATTERN = r'href="((?:https?://[^/"]+)?/cars/[^"]+/)"'
DEFAULT_PATH_SEGMENTS = 4

TITLE_PATTERNS = (
    re.compile(r"<h1[^>]*>(.*?)</h1>", re.IGNORECASE | re.DOTALL),
    re.compile(r"<h2[^>]*>(.*?)</h2>", re.IGNORECASE | re.DOTALL),
)
TITLE_PARTS_RE = re.compile(r"((?:19|20)\d{2})\s+(\S+)\s+(.+)")


def _label(names: str) -> re.Pattern[str]:
    return re.compile(rf"(?:{names})\s*[:#]\s*([^\n]+)", re.IGNORECASE)


FIELD_PATTERNS: Dict[str, List[re.Pattern[str]]] = {
    "price": [
        re.compile(r"(?:Prix|Price|Sale Price)\s*:?\s*\$?\s*([0-9][0-9, \u00a0]*(?:\.[0-9]{2})?)", re.IGNORECASE),
        re.compile(r"\$\s*([0-9][0-9, \u00a0]*(?:\.[0-9]{2})?)"),
        re.compile(r"([0-9]{1,3}(?:[ ,\u00a0][0-9]{3})+)\s*\$"),
    ],
    "vin": [re.compile(r"(?:VIN|NIV)\s*[:#]?\s*([A-HJ-NPR-Z0-9]{17})", re.IGNORECASE)],
    "stock_number": [re.compile(r"(?:Numéro de stock|Stock)\s*[:#]+\s*([A-Z0-9-]+)", re.IGNORECASE)],
    "odometer": [
        re.compile(r"(\d{1,3}(?:[ ,\u00a0]?\d{3})*)\s*(km|kilom[eè]tres?|miles?|mi)\b", re.IGNORECASE),
    ],
    "transmission": [_label(r"Transmission|Boîte(?: de vitesses)?")],
    "drivetrain": [_label(r"Drivetrain|Entraînement|Traction")],
    "fuel_type": [_label(r"Fuel Type|Type de carburant|Carburant")],
    "body_type": [_label(r"Body Style|Body Type|Type de carrosserie|Carrosserie")],
    "color": [_label(r"Exterior Color|Couleur extérieure|Extérieur|Couleur")],
    "engine_size": [_label(r"Engine|Moteur")],
    "cylinders": [_label(r"Cylinders|Cylindres")],
}


class WpCarDealerAdapter:
    name = "WP_CAR_DEALER"

    def listing_url(self, config: "VendorConfig", page: int) -> str:
        return build_listing_url(config, page, default_template=DEFAULT_LISTING_TEMPLATE)

    def extract_detail_links(self, html: str, config: "VendorConfig") -> List[str]:
        pattern = re.compile(config.link_pattern or DEFAULT_LINK_PATTERN, re.IGNORECASE)
        segments = config.link_path_segments or DEFAULT_PATH_SEGMENTS
        links = []
        for url in extract_links(html, config.base_url, pattern):
            path = re.sub(r"^https?://[^/]+", "", url)
            if len(path.split("/")) == segments:
                links.append(url)
        return links

    def parse_detail(self, html: str, url: str, config: "VendorConfig") -> Optional[RawListing]:
        if not html:
            return None
        text = html_to_text(html)
        overrides = compile_field_patterns(config.field_patterns)
        fields: Dict[str, Any] = {}

        title_match = first_match(html, TITLE_PATTERNS)
        title = clean_text(title_match.group(1)) if title_match else None
        if title:
            fields["title"] = title
            fields["description"] = title
            parts = TITLE_PARTS_RE.match(title)
            if parts:
                fields["year"] = parts.group(1)
                fields["make"] = parts.group(2)
                fields["model"] = parts.group(3)

        for name, defaults in FIELD_PATTERNS.items():
            patterns = [overrides[name]] if name in overrides else defaults
            match = first_match(text, patterns)
            if not match:
                continue
            fields[name] = match.group(1).strip()
            if name == "odometer" and match.lastindex and match.lastindex >= 2:
                fields["odometer_unit"] = match.group(2)

        for name in ("make", "model", "year"):
            if name in overrides:
                match = overrides[name].search(text)
                if match:
                    fields[name] = match.group(1).strip()

        fields["images"] = extract_image_urls(html, config.base_url, config.max_images)
        return build_listing(
            fields,
            vendor_id=config.vendor_id,
            source_url=url,
            field_defaults=config.field_defaults,
        )


ADAPTER = WpCarDealerAdapter()
