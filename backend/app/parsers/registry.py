from __future__ import annotations

from typing import Dict, Union

from ._listing_common import FeedSourceAdapter, HtmlSourceAdapter
from .b_detail import ADAPTER as B_DETAIL
from .json_feed import ADAPTER as FEED_JSON
from .wp_car_dealer import ADAPTER as WP_CAR_DEALER
from .xml_feed import ADAPTER as FEED_XML

SourceAdapter = Union[HtmlSourceAdapter, FeedSourceAdapter]

HTML_ADAPTERS: Dict[str, HtmlSourceAdapter] = {
    "WP_CAR_DEALER": WP_CAR_DEALER,
    "B_DETAIL": B_DETAIL,
}

FEED_ADAPTERS: Dict[str, FeedSourceAdapter] = {
    "FEED_XML": FEED_XML,
    "FEED_JSON": FEED_JSON,
}


def get_adapter(name: str) -> SourceAdapter:
    key = (name or "").upper()
    adapter = HTML_ADAPTERS.get(key) or FEED_ADAPTERS.get(key)
    if adapter is None:
        raise KeyError(f"No source adapter registered for {name!r}")
    return adapter


def is_feed_adapter(name: str) -> bool:
    return (name or "").upper() in FEED_ADAPTERS
