"""JSON vendor feed parser."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any, List, Mapping, Optional

from backend.app.core.log import get_logger

from ._feed_fields import IMAGE_KEYS, image_list, map_fields, pick
from ._listing_common import FeedParseResult, RawListing, SourceParseError, build_listing, filter_images

if TYPE_CHECKING:
    from backend.app.services.vendor_config import VendorConfig

logger = get_logger(__name__)

CONTAINER_KEYS = ("vehicles", "cars", "inventory", "listings", "data")


def _records(payload: Any) -> List[Any]:
    if isinstance(payload, list):
        return payload
    if isinstance(payload, Mapping):
        for key in CONTAINER_KEYS:
            value = payload.get(key)
            if isinstance(value, list):
                return value
            if isinstance(value, Mapping):
                nested = _records(value)
                if nested:
                    return nested
    return []


class JsonFeedAdapter:
    name = "FEED_JSON"

    def parse_feed(self, body: str, config: "VendorConfig") -> FeedParseResult:
        try:
            payload = json.loads(body)
        except ValueError as exc:
            raise SourceParseError(f"Invalid JSON feed for vendor {config.vendor_id}: {exc}") from exc

        result = FeedParseResult()
        for index, record in enumerate(_records(payload)):
            if not isinstance(record, Mapping):
                result.skipped += 1
                continue
            try:
                listing = self._listing(record, index, config)
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
    def _listing(record: Mapping[str, Any], index: int, config: "VendorConfig") -> Optional[RawListing]:
        fields = map_fields(record)
        fields["images"] = filter_images(image_list(pick(record, IMAGE_KEYS)), config.base_url, config.max_images)
        source_url = fields.pop("source_url", None) or f"{config.feed_url or config.base_url}#{index}"
        return build_listing(
            fields,
            vendor_id=config.vendor_id,
            source_url=str(source_url),
            field_defaults=config.field_defaults,
        )


ADAPTER = JsonFeedAdapter()
