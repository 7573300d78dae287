from __future__ import annotations

import re
from typing import TYPE_CHECKING, Any, Dict, Optional
from urllib.parse import urljoin

if TYPE_CHECKING:
    from backend.app.services.vendor_config import VendorConfig

PLACEHOLDER_PATTERN = re.compile(r"\{([^}]+)\}")


def build_listing_url(
    config: "VendorConfig",
    page: int,
    *,
    default_template: str,
    default_first_page: Optional[str] = None,
) -> str:
    """Build the URL of one inventory listing page.

    Placeholders supported: {page}, {per_page}, {base_url}.
    Page 1 uses `first_page_path` when the vendor (or adapter) defines one.
    Relative templates are resolved against the vendor base URL.
    """
    if page < 1:
        raise ValueError(f"Page numbers start at 1, got {page}")
    first_page = config.first_page_path or default_first_page
    tpl = first_page if page == 1 and first_page else (config.listing_path_template or default_template)

    tokens: Dict[str, Any] = {
        "page": page,
        "per_page": config.items_per_page,
        "base_url": config.base_url.rstrip("/"),
    }
    missing: set[str] = set()

    def replace(match: re.Match[str]) -> str:
        key = match.group(1)
        value = tokens.get(key)
        if value is None or value == "":
            missing.add(key)
            return ""
        return str(value)

    url = PLACEHOLDER_PATTERN.sub(replace, tpl)
    if missing:
        raise ValueError(f"Missing placeholder token(s) {missing} for vendor {config.vendor_id} ({tpl})")

    if not url.startswith("http"):
        return urljoin(config.base_url.rstrip("/") + "/", url.lstrip("/"))
    return url
