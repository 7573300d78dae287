"""Change-detection fingerprints over a fixed subset of listing fields.

The field list, its order and the omission of empty values are part of the
stored format. Changing any of them must come with a new SCHEME_VERSION.
"""

from __future__ import annotations

import hashlib
from typing import Any, List, Optional

from backend.app.core.log import get_logger
from backend.app.parsers._listing_common import RawListing

logger = get_logger(__name__)

SCHEME_VERSION = "v1"
DIGEST_LENGTH = 16
FINGERPRINT_FIELDS = (
    "title",
    "price",
    "year",
    "make",
    "model",
    "odometer",
    "vin",
    "stock_number",
    "transmission",
    "fuel_type",
    "body_type",
    "color",
)
IMAGE_COUNT = 3


def _format(value: Any) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def fingerprint_parts(listing: RawListing) -> List[str]:
    parts: List[str] = []
    for name in FINGERPRINT_FIELDS:
        value = getattr(listing, name)
        if value:
            parts.append(_format(value))
    images = ",".join(url for url in listing.images[:IMAGE_COUNT] if url)
    if images:
        parts.append(images)
    return parts


def fingerprint(listing: RawListing) -> str:
    payload = "|".join(fingerprint_parts(listing))
    digest = hashlib.sha256(payload.encode("utf-8")).hexdigest()[:DIGEST_LENGTH]
    return f"{SCHEME_VERSION}:{digest}"


def scheme_of(value: Optional[str]) -> Optional[str]:
    if not value or ":" not in value:
        return None
    return value.split(":", 1)[0]


class SchemeChangeDetector:
    """Logs, once per run, that stored fingerprints were produced by another scheme."""

    def __init__(self, vendor_id: str):
        self.vendor_id = vendor_id
        self.mismatches = 0
        self._logged = False

    def check(self, stored: Optional[str]) -> bool:
        if not stored or scheme_of(stored) == SCHEME_VERSION:
            return False
        self.mismatches += 1
        if not self._logged:
            self._logged = True
            logger.warning(
                "vendor %s: stored fingerprints use scheme %s, current is %s; affected records will be reclassified as changed",
                self.vendor_id,
                scheme_of(stored) or "unversioned",
                SCHEME_VERSION,
            )
        return True
