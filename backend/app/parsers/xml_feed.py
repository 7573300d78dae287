"""XML vendor feed parser (``<vehicle>`` / ``<car>`` element walk)."""

from __future__ import annotations

import xml.etree.ElementTree as ET
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from backend.app.core.log import get_logger

from ._feed_fields import IMAGE_KEYS, image_list, map_fields
from ._listing_common import FeedParseResult, RawListing, SourceParseError, build_listing, filter_images

if TYPE_CHECKING:
    from backend.app.services.vendor_config import VendorConfig

logger = get_logger(__name__)

VEHICLE_TAGS = {"vehicle", "car"}
IMAGE_TAGS = {"image", "photo", "img"}


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1].lower()


def _element_record(element: ET.Element) -> Dict[str, Any]:
    record: Dict[str, Any] = {}
    images: List[str] = []
    for child in element:
        name = _local(child.tag)
        if name in IMAGE_TAGS and len(child) == 0:
            if child.text and child.text.strip():
                images.append(child.text.strip())
            elif child.get("src") or child.get("url"):
                images.append((child.get("src") or child.get("url") or "").strip())
            continue
        if name in IMAGE_KEYS and len(child):
            for grandchild in child:
                if grandchild.text and grandchild.text.strip():
                    images.append(grandchild.text.strip())
                elif grandchild.get("src") or grandchild.get("url"):
                    images.append((grandchild.get("src") or grandchild.get("url") or "").strip())
            continue
        text = (child.text or "").strip()
        if text and name not in record:
            record[name] = text
        unit = child.get("unit")
        if unit and name in ("odometer", "mileage", "kilometers"):
            record.setdefault("odometer_unit", unit)
    for key, value in element.attrib.items():
        record.setdefault(key.lower(), value)
    record["images"] = images
    return record


class XmlFeedAdapter:
    name = "FEED_XML"

    def parse_feed(self, body: str, config: "VendorConfig") -> FeedParseResult:
        try:
            root = ET.fromstring(body)
        except ET.ParseError as exc:
            raise SourceParseError(f"Invalid XML feed for vendor {config.vendor_id}: {exc}") from exc

        result = FeedParseResult()
        elements = [el for el in root.iter() if _local(el.tag) in VEHICLE_TAGS]
        for index, element in enumerate(elements):
            try:
                listing = self._listing(element, index, config)
            except Exception as exc:
                logger.warning("vendor %s: feed entry %s is malformed: %s", config.vendor_id, index, exc)
                listing = None
            if listing is None:
                result.skipped += 1
                continue
            result.listings.append(listing)

        if result.skipped:
            logger.info("vendor %s: skipped %s incomplete feed entries", config.vendor_id, result.skipped)
        return result

    @staticmethod
    def _listing(element: ET.Element, index: int, config: "VendorConfig") -> Optional[RawListing]:
        record = _element_record(element)
        fields = map_fields(record)
        fields["images"] = filter_images(image_list(record.get("images")), config.base_url, config.max_images)
        source_url = fields.pop("source_url", None) or f"{config.feed_url or config.base_url}#{index}"
        return build_listing(
            fields,
            vendor_id=config.vendor_id,
            source_url=str(source_url),
            field_defaults=config.field_defaults,
        )


ADAPTER = XmlFeedAdapter()
