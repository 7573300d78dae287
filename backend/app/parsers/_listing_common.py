"""Shared helpers and the listing contract used by every vendor source adapter."""

from __future__ import annotations

import html as html_lib
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence

from backend.app.core.log import get_logger
from backend.app.parsers import normalize

if TYPE_CHECKING:
    from backend.app.services.vendor_config import VendorConfig

logger = get_logger(__name__)

VIN_RE = re.compile(r"^[A-HJ-NPR-Z0-9]{17}$")
PRICE_RE = re.compile(r"([0-9][0-9, \u00a0]*(?:[.,][0-9]{2})?)")
INT_RE = re.compile(r"-?[0-9][0-9, \u00a0]*")
IMAGE_SRC_PATTERNS = (
    re.compile(r"<img[^>]+src=\"([^\"]+)\"", re.IGNORECASE),
    re.compile(r"data-src=\"([^\"]+)\"", re.IGNORECASE),
    re.compile(r"data-lazy-src=\"([^\"]+)\"", re.IGNORECASE),
)
IMAGE_BLOCKLIST = (
    "logo",
    "icon",
    "badge",
    "placeholder",
    "thumb",
    "/wp-content/themes/",
    "/wp-content/plugins/",
    "facebook",
    "twitter",
    "instagram",
)
DEFAULT_MAX_IMAGES = 15

LISTING_FIELDS = (
    "title",
    "make",
    "model",
    "year",
    "price",
    "odometer",
    "odometer_unit",
    "vin",
    "stock_number",
    "body_type",
    "color",
    "fuel_type",
    "transmission",
    "drivetrain",
    "engine_size",
    "cylinders",
    "description",
)


class SourceParseError(Exception):
    """Raised when a whole document cannot be parsed (malformed feed, wrong content type)."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RawListing:
    vendor_id: str
    source_url: str
    make: str
    model: str
    year: int
    price: float
    title: Optional[str] = None
    odometer: Optional[int] = None  # km
    odometer_unit: Optional[str] = None  # unit as found at the source
    vin: Optional[str] = None
    stock_number: Optional[str] = None
    body_type: Optional[str] = None
    color: Optional[str] = None
    fuel_type: Optional[str] = None
    transmission: Optional[str] = None
    drivetrain: Optional[str] = None
    engine_size: Optional[str] = None
    cylinders: Optional[int] = None
    description: Optional[str] = None
    images: List[str] = field(default_factory=list)
    captured_at: datetime = field(default_factory=_utcnow)

    @property
    def label(self) -> str:
        return f"{self.year} {self.make} {self.model}"


@dataclass
class FeedParseResult:
    listings: List[RawListing] = field(default_factory=list)
    skipped: int = 0


class HtmlSourceAdapter(Protocol):
    name: str

    def listing_url(self, config: "VendorConfig", page: int) -> str: ...

    def extract_detail_links(self, html: str, config: "VendorConfig") -> List[str]: ...

    def parse_detail(self, html: str, url: str, config: "VendorConfig") -> Optional[RawListing]: ...


class FeedSourceAdapter(Protocol):
    name: str

    def parse_feed(self, body: str, config: "VendorConfig") -> FeedParseResult: ...


def html_to_text(raw: str) -> str:
    """Flatten markup to text, one tag boundary per line, entities decoded."""
    without_scripts = re.sub(r"<(script|style)[^>]*>.*?</\1>", " ", raw, flags=re.IGNORECASE | re.DOTALL)
    text = re.sub(r"<[^>]+>", "\n", without_scripts)
    text = html_lib.unescape(text)
    lines = (re.sub(r"[ \t\u00a0]+", " ", line).strip() for line in text.splitlines())
    return "\n".join(line for line in lines if line)


def clean_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = html_lib.unescape(re.sub(r"<[^>]+>", " ", str(value)))
    text = re.sub(r"\s+", " ", text).strip()
    return text or None


def parse_price(token: Any) -> Optional[float]:
    if token is None:
        return None
    if isinstance(token, (int, float)):
        return float(token)
    match = PRICE_RE.search(str(token))
    if not match:
        return None
    numeric = re.sub(r"[\s]", "", match.group(1))
    if re.search(r",[0-9]{2}$", numeric) and "." not in numeric:
        numeric = numeric[:-3].replace(",", "") + "." + numeric[-2:]
    else:
        numeric = numeric.replace(",", "")
    try:
        return float(numeric)
    except ValueError:
        return None


def parse_int(token: Any) -> Optional[int]:
    if token is None:
        return None
    if isinstance(token, bool):
        return None
    if isinstance(token, int):
        return token
    if isinstance(token, float):
        return int(token)
    match = INT_RE.search(str(token))
    if not match:
        return None
    try:
        return int(re.sub(r"[,\s]", "", match.group(0)))
    except ValueError:
        return None


def clean_vin(value: Any) -> Optional[str]:
    if not value:
        return None
    vin = re.sub(r"\s+", "", str(value)).upper()
    if not VIN_RE.match(vin):
        return None
    return vin


def first_match(text: str, patterns: Sequence[re.Pattern[str]]) -> Optional[re.Match[str]]:
    for pattern in patterns:
        match = pattern.search(text)
        if match:
            return match
    return None


def compile_field_patterns(overrides: Optional[Mapping[str, str]]) -> Dict[str, re.Pattern[str]]:
    compiled: Dict[str, re.Pattern[str]] = {}
    for name, expression in (overrides or {}).items():
        try:
            compiled[name] = re.compile(expression, re.IGNORECASE)
        except re.error as exc:
            logger.warning("ignoring invalid field pattern for %s: %s", name, exc)
    return compiled


def absolute_url(url: str, base_url: str) -> str:
    url = url.strip()
    if url.startswith("//"):
        return "https:" + url
    if url.startswith("http://") or url.startswith("https://"):
        return url
    base = base_url.rstrip("/")
    if url.startswith("/"):
        return f"{base}{url}"
    return f"{base}/{url}"


def filter_images(urls: Iterable[str], base_url: str, max_images: int = DEFAULT_MAX_IMAGES) -> List[str]:
    """Drop non-vehicle assets, make absolute, de-duplicate and cap."""
    images: List[str] = []
    seen: set[str] = set()
    for candidate in urls:
        if not candidate or candidate.startswith("data:"):
            continue
        lowered = candidate.lower()
        if any(token in lowered for token in IMAGE_BLOCKLIST):
            continue
        url = absolute_url(html_lib.unescape(candidate), base_url)
        if url in seen:
            continue
        seen.add(url)
        images.append(url)
        if len(images) >= max_images:
            break
    return images


def extract_image_urls(html: str, base_url: str, max_images: int = DEFAULT_MAX_IMAGES) -> List[str]:
    found: List[str] = []
    for pattern in IMAGE_SRC_PATTERNS:
        found.extend(match.group(1) for match in pattern.finditer(html))
    return filter_images(found, base_url, max_images)


def extract_links(
    html: str,
    base_url: str,
    pattern: re.Pattern[str],
    path_segments: Optional[int] = None,
) -> List[str]:
    """Collect canonical detail-page links in document order."""
    links: List[str] = []
    seen: set[str] = set()
    for match in pattern.finditer(html):
        path = html_lib.unescape(match.group(1))
        if "?" in path or "#" in path:
            continue
        if path_segments is not None and len(path.split("/")) != path_segments:
            continue
        url = absolute_url(path, base_url)
        if url in seen:
            continue
        seen.add(url)
        links.append(url)
    return links


def build_listing(
    fields: Dict[str, Any],
    *,
    vendor_id: str,
    source_url: str,
    field_defaults: Optional[Mapping[str, Any]] = None,
    captured_at: Optional[datetime] = None,
) -> Optional[RawListing]:
    """Normalize extracted fields into a RawListing, or None when required data is missing.

    Defaults apply only to absent fields. VIN and price are never filled in.
    """
    values = {name: fields.get(name) for name in LISTING_FIELDS}
    for name, default in (field_defaults or {}).items():
        if name in ("vin", "price") or name not in values:
            continue
        if values[name] in (None, ""):
            values[name] = default

    make = clean_text(values["make"])
    model = clean_text(values["model"])
    year = parse_int(values["year"])
    price = parse_price(values["price"])
    if not make or not model or not year:
        logger.debug("skipping %s: missing make/model/year", source_url)
        return None
    if price is None or price <= 0:
        logger.debug("skipping %s: no positive price", source_url)
        return None

    unit = normalize.odometer_unit(values["odometer_unit"])
    odometer = normalize.odometer_km(parse_int(values["odometer"]), unit)
    cylinders = parse_int(values["cylinders"])
    images = [url for url in (fields.get("images") or []) if url]

    return RawListing(
        vendor_id=vendor_id,
        source_url=source_url,
        make=make,
        model=model,
        year=year,
        price=price,
        title=clean_text(values["title"]) or f"{year} {make} {model}",
        odometer=odometer,
        odometer_unit=unit if odometer is not None else None,
        vin=clean_vin(values["vin"]),
        stock_number=clean_text(values["stock_number"]),
        body_type=normalize.body_type(clean_text(values["body_type"])),
        color=normalize.color(clean_text(values["color"])),
        fuel_type=normalize.fuel_type(clean_text(values["fuel_type"])),
        transmission=normalize.transmission(clean_text(values["transmission"])),
        drivetrain=normalize.drivetrain(clean_text(values["drivetrain"])),
        engine_size=clean_text(values["engine_size"]),
        cylinders=cylinders if cylinders and cylinders > 0 else None,
        description=clean_text(values["description"]),
        images=images,
        captured_at=captured_at or _utcnow(),
    )
